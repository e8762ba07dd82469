# routers/notifications.py — In-app notifications for the current user
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy import select, func, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Principal, get_current_user
from database import get_db_session
from http_client import pagination_headers
from models import Notification, NotificationType, utcnow, new_uuid
from permissions import P

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


# --- Schemas ---

class NotificationCreate(BaseModel):
    user_id: Optional[str] = None  # defaults to the caller
    type: NotificationType = NotificationType.CUSTOM
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)
    data: Optional[Dict[str, Any]] = None
    action_url: Optional[str] = None
    action_label: Optional[str] = None


def notification_to_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "user_id": n.user_id,
        "type": n.type.value if n.type else None,
        "title": n.title,
        "message": n.message,
        "data": n.data,
        "read": bool(n.read),
        "read_at": n.read_at.isoformat() if n.read_at else None,
        "action_url": n.action_url,
        "action_label": n.action_label,
        "expires_at": n.expires_at.isoformat() if n.expires_at else None,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


def _not_expired():
    return (Notification.expires_at.is_(None)) | (Notification.expires_at > utcnow())


async def _get_own(db: AsyncSession, user: Principal, notification_id: str) -> Notification:
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user.id,
        )
    )
    notification = result.scalar_one_or_none()
    if not notification:
        raise HTTPException(404, "Notification not found")
    return notification


# ============================================================
# LIST
# ============================================================

@router.get("")
async def list_notifications(
    response: Response,
    unread_only: bool = Query(default=False),
    type: Optional[NotificationType] = Query(None),
    limit: int = Query(default=50, ge=1, le=200),
    page: int = Query(default=1, ge=1),
    db: AsyncSession = Depends(get_db_session),
    user: Principal = Depends(get_current_user),
):
    query = select(Notification).where(Notification.user_id == user.id, _not_expired())
    if unread_only:
        query = query.where(Notification.read.is_(False))
    if type:
        query = query.where(Notification.type == type)

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
    result = await db.execute(
        query.order_by(Notification.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    response.headers.update(pagination_headers(total, page, limit))
    return [notification_to_dict(n) for n in result.scalars().all()]


# ============================================================
# COUNT
# ============================================================

@router.get("/count")
async def notification_count(
    db: AsyncSession = Depends(get_db_session),
    user: Principal = Depends(get_current_user),
):
    rows = await db.execute(
        select(Notification.type, func.count(Notification.id))
        .where(Notification.user_id == user.id, Notification.read.is_(False), _not_expired())
        .group_by(Notification.type)
    )
    by_type = {t.value: count for t, count in rows.all()}
    return {"unread": sum(by_type.values()), "by_type": by_type}


# ============================================================
# CREATE
# ============================================================

@router.post("", status_code=201)
async def create_notification(
    data: NotificationCreate,
    db: AsyncSession = Depends(get_db_session),
    user: Principal = Depends(get_current_user),
):
    """Notify yourself, or anyone with notification:manage_all"""
    recipient = data.user_id or user.id
    if recipient != user.id and not user.has_permission(P["NOTIFICATION"]["MANAGE_ALL"]):
        raise HTTPException(status_code=403, detail="Missing required permission: notification:manage_all")

    notification = Notification(
        id=new_uuid(), user_id=recipient,
        type=data.type, title=data.title, message=data.message, data=data.data,
        action_url=data.action_url, action_label=data.action_label,
    )
    db.add(notification)
    await db.commit()
    await db.refresh(notification)
    return notification_to_dict(notification)


# ============================================================
# MARK READ
# ============================================================

@router.post("/read-all")
async def mark_all_read(
    db: AsyncSession = Depends(get_db_session),
    user: Principal = Depends(get_current_user),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.read.is_(False))
        .values(read=True, read_at=utcnow())
    )
    await db.commit()
    return {"marked": result.rowcount}


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: Principal = Depends(get_current_user),
):
    notification = await _get_own(db, user, notification_id)
    if not notification.read:
        notification.read = True
        notification.read_at = utcnow()
        await db.commit()
    return notification_to_dict(notification)


# ============================================================
# DELETE
# ============================================================

@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: Principal = Depends(get_current_user),
):
    notification = await _get_own(db, user, notification_id)
    await db.delete(notification)
    await db.commit()
    return {"status": "deleted"}


@router.delete("")
async def clear_read_notifications(
    db: AsyncSession = Depends(get_db_session),
    user: Principal = Depends(get_current_user),
):
    result = await db.execute(
        delete(Notification).where(Notification.user_id == user.id, Notification.read.is_(True))
    )
    await db.commit()
    return {"deleted": result.rowcount}
