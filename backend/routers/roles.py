# routers/roles.py — Permission catalog and persisted roles
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Principal, get_current_user, require_permission
from database import get_db_session
from models import Role, Permission, new_uuid
from permissions import (
    P, PERMISSIONS, PERMISSION_GROUPS, ROLE_PERMISSIONS, RESOURCE_PERMISSIONS,
    ALL_PERMISSIONS,
)
from services import record_audit, commit_or_conflict

router = APIRouter(prefix="/api/v1/roles", tags=["Roles"])


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=50, pattern=r"^[a-z][a-z0-9_]*$")
    description: Optional[str] = None
    permissions: List[str] = []


class RolePermissionsUpdate(BaseModel):
    permissions: List[str]


def _role_to_dict(role: Role) -> dict:
    return {
        "id": role.id,
        "name": role.name,
        "description": role.description,
        "is_active": role.is_active,
        "is_system": role.is_system,
        "permissions": sorted(p.name for p in role.permissions),
    }


async def _permissions_by_name(db: AsyncSession, names: List[str]) -> List[Permission]:
    unknown = set(names) - ALL_PERMISSIONS
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown permissions: {', '.join(sorted(unknown))}")
    if not names:
        return []
    result = await db.execute(select(Permission).where(Permission.name.in_(names)))
    return list(result.scalars().all())


@router.get("/permissions")
async def permission_catalog(user: Principal = Depends(get_current_user)):
    """The closed permission catalog, display groups and role tables"""
    return {
        "permissions": {resource: dict(actions) for resource, actions in PERMISSIONS.items()},
        "groups": list(PERMISSION_GROUPS),
        "roles": {role.value: sorted(perms) for role, perms in ROLE_PERMISSIONS.items()},
        "project_roles": {
            role.value: sorted(perms) for role, perms in RESOURCE_PERMISSIONS["PROJECT"].items()
        },
    }


@router.get("")
async def list_roles(
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(select(Role).order_by(Role.name))
    return [_role_to_dict(r) for r in result.scalars().all()]


@router.post("", status_code=201)
async def create_role(
    data: RoleCreate,
    request: Request,
    user: Principal = Depends(require_permission(P["USER"]["MANAGE_ROLES"])),
    db: AsyncSession = Depends(get_db_session),
):
    role = Role(
        id=new_uuid(),
        name=data.name,
        description=data.description,
        is_system=False,
        permissions=await _permissions_by_name(db, data.permissions),
    )
    db.add(role)
    record_audit(db, user, "ROLE_CREATE", "role", role.id, new_value=sorted(data.permissions), request=request)
    await commit_or_conflict(db, "Role already exists")
    return _role_to_dict(role)


@router.put("/{role_id}/permissions")
async def update_role_permissions(
    role_id: str,
    data: RolePermissionsUpdate,
    request: Request,
    user: Principal = Depends(require_permission(P["USER"]["MANAGE_ROLES"])),
    db: AsyncSession = Depends(get_db_session),
):
    role = await db.get(Role, role_id)
    if not role:
        raise HTTPException(status_code=404, detail="Role not found")
    if role.is_system:
        raise HTTPException(status_code=400, detail="System roles mirror the permission catalog and cannot be edited")

    old = sorted(p.name for p in role.permissions)
    role.permissions = await _permissions_by_name(db, data.permissions)
    record_audit(db, user, "ROLE_UPDATE", "role", role_id, old_value=old, new_value=sorted(data.permissions), request=request)
    await db.commit()
    return _role_to_dict(role)


@router.delete("/{role_id}", status_code=204)
async def delete_role(
    role_id: str,
    request: Request,
    user: Principal = Depends(require_permission(P["USER"]["MANAGE_ROLES"])),
    db: AsyncSession = Depends(get_db_session),
):
    role = await db.get(Role, role_id)
    if not role:
        raise HTTPException(status_code=404, detail="Role not found")
    if role.is_system:
        raise HTTPException(status_code=400, detail="System roles cannot be deleted")
    await db.delete(role)
    record_audit(db, user, "ROLE_DELETE", "role", role_id, old_value=role.name, request=request)
    await db.commit()
