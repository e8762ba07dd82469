# routers/users.py — User management: listing, profile updates, role assignment
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Principal, get_current_user, require_permission, load_user, serialize_user
from database import get_db_session
from http_client import pagination_headers
from models import User, Role
from permissions import P
from services import get_roles, record_audit, commit_or_conflict

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class UserUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    avatar: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


class RoleAssignment(BaseModel):
    roles: List[str] = Field(..., min_length=1)


# --- Helpers ---

async def _get_user_or_404(db: AsyncSession, user_id: str) -> User:
    user = await load_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _merge_preferences(current: Optional[dict], changes: dict) -> dict:
    merged = dict(current or {})
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


# --- Endpoints ---

@router.get("")
async def list_users(
    response: Response,
    user: Principal = Depends(require_permission(P["USER"]["VIEW"])),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=50, ge=1, le=200),
    page: int = Query(default=1, ge=1),
    role: Optional[str] = None,
    search: Optional[str] = None,
    active_only: bool = True,
):
    """List users with pagination headers"""
    stmt = select(User)
    if active_only:
        stmt = stmt.where(User.is_active.is_(True))
    if role:
        stmt = stmt.where(User.roles.any(Role.name == role))
    if search:
        pattern = f"%{search.lower()}%"
        stmt = stmt.where(
            func.lower(User.email).like(pattern)
            | func.lower(User.first_name).like(pattern)
            | func.lower(User.last_name).like(pattern)
        )

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    result = await db.execute(
        stmt.order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    users = result.scalars().all()

    response.headers.update(pagination_headers(total, page, limit))
    return [serialize_user(u) for u in users]


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    if user_id != user.id and not user.has_permission(P["USER"]["VIEW"]):
        raise HTTPException(status_code=403, detail="Missing required permission: user:view")
    return serialize_user(await _get_user_or_404(db, user_id))


@router.patch("/{user_id}")
async def update_user(
    user_id: str,
    data: UserUpdate,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Users may edit their own profile; others need user:update"""
    if user_id != user.id and not user.has_permission(P["USER"]["UPDATE"]):
        raise HTTPException(status_code=403, detail="Missing required permission: user:update")

    target = await _get_user_or_404(db, user_id)
    changes = data.model_dump(exclude_unset=True)
    if "preferences" in changes:
        target.preferences = _merge_preferences(target.preferences, changes.pop("preferences") or {})
    for field, value in changes.items():
        setattr(target, field, value)

    record_audit(db, user, "USER_UPDATE", "user", user_id, new_value=data.model_dump(exclude_unset=True), request=request)
    await db.commit()
    return serialize_user(target)


@router.put("/{user_id}/roles")
async def assign_roles(
    user_id: str,
    data: RoleAssignment,
    request: Request,
    user: Principal = Depends(require_permission(P["USER"]["MANAGE_ROLES"])),
    db: AsyncSession = Depends(get_db_session),
):
    """Replace a user's global roles"""
    target = await _get_user_or_404(db, user_id)
    old_roles = sorted(r.name for r in target.roles)
    if "super_admin" in data.roles and not user.has_role("super_admin"):
        raise HTTPException(status_code=403, detail="Only super admins can grant super_admin")

    target.roles = await get_roles(db, data.roles)
    record_audit(
        db, user, "USER_ROLES_CHANGE", "user", user_id,
        old_value=old_roles, new_value=sorted(data.roles), request=request,
    )
    await commit_or_conflict(db)
    return serialize_user(target)


@router.post("/{user_id}/deactivate")
async def deactivate_user(
    user_id: str,
    request: Request,
    user: Principal = Depends(require_permission(P["USER"]["DELETE"])),
    db: AsyncSession = Depends(get_db_session),
):
    if user_id == user.id:
        raise HTTPException(status_code=400, detail="Cannot deactivate your own account")
    target = await _get_user_or_404(db, user_id)
    target.is_active = False
    target.refresh_token = None
    record_audit(db, user, "USER_DEACTIVATE", "user", user_id, request=request)
    await db.commit()
    return {"status": "deactivated", "id": user_id}


@router.post("/{user_id}/activate")
async def activate_user(
    user_id: str,
    request: Request,
    user: Principal = Depends(require_permission(P["USER"]["UPDATE"])),
    db: AsyncSession = Depends(get_db_session),
):
    target = await _get_user_or_404(db, user_id)
    target.is_active = True
    record_audit(db, user, "USER_ACTIVATE", "user", user_id, request=request)
    await db.commit()
    return {"status": "activated", "id": user_id}
