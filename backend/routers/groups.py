# routers/groups.py — User groups
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Principal, get_current_user, load_user
from database import get_db_session
from models import Group, User, group_members, new_uuid
from permissions import P
from services import record_audit

router = APIRouter(prefix="/api/v1/groups", tags=["Groups"])


class GroupCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = None
    visibility: str = Field(default="private", pattern="^(public|private)$")
    join_approval: bool = True
    allow_invites: bool = False


class GroupMemberAdd(BaseModel):
    user_id: str


def _group_to_dict(group: Group) -> dict:
    return {
        "id": group.id,
        "name": group.name,
        "description": group.description,
        "is_active": group.is_active,
        "owner_id": group.owner_id,
        "settings": group.settings,
        "members": [{"id": m.id, "email": m.email, "full_name": m.full_name} for m in group.members],
    }


async def _get_managed_group(db: AsyncSession, group_id: str, user: Principal) -> Group:
    group = await db.get(Group, group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    if group.owner_id != user.id and not user.has_permission(P["USER"]["MANAGE_GROUPS"]):
        raise HTTPException(status_code=403, detail="Only the group owner can manage this group")
    return group


@router.post("", status_code=201)
async def create_group(
    data: GroupCreate,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    owner = await load_user(db, user.id)
    group = Group(
        id=new_uuid(),
        name=data.name,
        description=data.description,
        owner_id=user.id,
        settings={
            "visibility": data.visibility,
            "join_approval": data.join_approval,
            "allow_invites": data.allow_invites,
        },
        members=[owner],
    )
    db.add(group)
    record_audit(db, user, "GROUP_CREATE", "group", group.id, request=request)
    await db.commit()
    return _group_to_dict(group)


@router.get("")
async def list_groups(
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Groups the caller owns or belongs to, plus public groups"""
    stmt = select(Group).where(Group.is_active.is_(True)).order_by(Group.name)
    if not user.has_permission(P["USER"]["MANAGE_GROUPS"]):
        member_of = select(group_members.c.group_id).where(group_members.c.user_id == user.id)
        stmt = stmt.where(or_(
            Group.owner_id == user.id,
            Group.id.in_(member_of),
            Group.settings["visibility"].as_string() == "public",
        ))
    result = await db.execute(stmt)
    return [_group_to_dict(g) for g in result.scalars().all()]


@router.post("/{group_id}/members", status_code=201)
async def add_group_member(
    group_id: str,
    data: GroupMemberAdd,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    group = await _get_managed_group(db, group_id, user)
    member = await db.get(User, data.user_id)
    if not member:
        raise HTTPException(status_code=404, detail="User not found")
    if any(m.id == member.id for m in group.members):
        raise HTTPException(status_code=409, detail="User is already a member of this group")

    group.members.append(member)
    record_audit(db, user, "GROUP_MEMBER_ADD", "group", group_id, new_value={"user_id": member.id}, request=request)
    await db.commit()
    return _group_to_dict(group)


@router.delete("/{group_id}/members/{user_id}")
async def remove_group_member(
    group_id: str,
    user_id: str,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    group = await _get_managed_group(db, group_id, user)
    if user_id == group.owner_id:
        raise HTTPException(status_code=400, detail="The group owner cannot be removed")
    remaining = [m for m in group.members if m.id != user_id]
    if len(remaining) == len(group.members):
        raise HTTPException(status_code=404, detail="User is not a member of this group")

    group.members = remaining
    record_audit(db, user, "GROUP_MEMBER_REMOVE", "group", group_id, old_value={"user_id": user_id}, request=request)
    await db.commit()
    return _group_to_dict(group)
