# routers/audit.py — Read-only access to the audit trail, activity feed and log buffer
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Principal, require_permission
from database import get_db_session
from http_client import pagination_headers
from logging_system import LogCategory, LogLevel, get_logger
from models import AuditLog, Activity
from permissions import P

router = APIRouter(prefix="/api/v1/audit", tags=["Audit"])
logger = get_logger()

can_view_audit = require_permission(P["ADMIN"]["VIEW_AUDIT_LOG"])


def audit_to_dict(a: AuditLog) -> dict:
    return {
        "id": a.id,
        "user_id": a.user_id,
        "user_name": a.user_name,
        "action": a.action,
        "entity_type": a.entity_type,
        "entity_id": a.entity_id,
        "old_value": a.old_value,
        "new_value": a.new_value,
        "metadata": a.audit_metadata,
        "ip_address": a.ip_address,
        "user_agent": a.user_agent,
        "request_id": a.request_id,
        "success": a.success,
        "error_message": a.error_message,
        "duration": a.duration,
        "timestamp": a.timestamp.isoformat() if a.timestamp else None,
    }


def activity_to_dict(a: Activity) -> dict:
    return {
        "id": a.id,
        "user_id": a.user_id,
        "action": a.action,
        "entity_type": a.entity_type,
        "entity_id": a.entity_id,
        "project_id": a.project_id,
        "description": a.description,
        "metadata": a.activity_metadata,
        "timestamp": a.timestamp.isoformat() if a.timestamp else None,
    }


@router.get("/logs")
async def list_audit_logs(
    response: Response,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    success: Optional[bool] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    user: Principal = Depends(can_view_audit),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(AuditLog)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)
    if success is not None:
        stmt = stmt.where(AuditLog.success.is_(success))
    if since:
        stmt = stmt.where(AuditLog.timestamp >= since)
    if until:
        stmt = stmt.where(AuditLog.timestamp <= until)

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    result = await db.execute(
        stmt.order_by(AuditLog.timestamp.desc()).offset((page - 1) * limit).limit(limit)
    )
    response.headers.update(pagination_headers(total, page, limit))
    return [audit_to_dict(a) for a in result.scalars().all()]


@router.get("/activities")
async def list_activities(
    response: Response,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    user: Principal = Depends(can_view_audit),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Activity)
    if user_id:
        stmt = stmt.where(Activity.user_id == user_id)
    if project_id:
        stmt = stmt.where(Activity.project_id == project_id)
    if entity_type:
        stmt = stmt.where(Activity.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(Activity.entity_id == entity_id)

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    result = await db.execute(
        stmt.order_by(Activity.timestamp.desc()).offset((page - 1) * limit).limit(limit)
    )
    response.headers.update(pagination_headers(total, page, limit))
    return [activity_to_dict(a) for a in result.scalars().all()]


@router.get("/buffer")
async def recent_log_entries(
    level: Optional[LogLevel] = None,
    category: Optional[LogCategory] = None,
    correlation_id: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    user: Principal = Depends(require_permission(P["ADMIN"]["VIEW_METRICS"])),
):
    """Most recent entries from the in-process structured log buffer"""
    entries = logger.get_logs(
        level=level, category=category, correlation_id=correlation_id,
        search=search, limit=limit,
    )
    return [e.to_dict() for e in entries]
