# routers/projects.py — Projects, membership and project-scoped permissions
import copy
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    Principal, ProjectAccess, get_current_user, require_permission,
    project_access, can_see_all_projects, visible_project_ids_clause, load_user,
)
from database import get_db_session
from http_client import pagination_headers
from models import (
    Project, ProjectMember, ProjectRole, ProjectStatus, ProjectVisibility,
    Activity, NotificationType, DEFAULT_PROJECT_SETTINGS, new_uuid, utcnow,
)
from permissions import P, ALL_PERMISSIONS
from services import (
    record_audit, record_activity, notify, commit_or_conflict, refresh_project_metrics,
)

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])

PROJECT_KEY_PATTERN = r"^[A-Z]{2,10}$"


# ── Schemas ──────────────────────────────────────────────────

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    key: str = Field(..., pattern=PROJECT_KEY_PATTERN)
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    visibility: ProjectVisibility = ProjectVisibility.PRIVATE
    settings: Dict[str, Any] = {}


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    visibility: Optional[ProjectVisibility] = None
    settings: Optional[Dict[str, Any]] = None


class ProjectArchive(BaseModel):
    reason: Optional[str] = None


class MemberAdd(BaseModel):
    user_id: str
    role: ProjectRole = ProjectRole.MEMBER
    permissions: Optional[List[str]] = None


class MemberUpdate(BaseModel):
    role: Optional[ProjectRole] = None
    permissions: Optional[List[str]] = None
    is_active: Optional[bool] = None


# ── Helpers ──────────────────────────────────────────────────

def project_to_dict(p: Project) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "key": p.key,
        "description": p.description,
        "status": p.status.value if p.status else None,
        "visibility": p.visibility.value if p.visibility else None,
        "owner_id": p.owner_id,
        "settings": p.settings,
        "metrics": p.metrics,
        "archived_at": p.archived_at.isoformat() if p.archived_at else None,
        "archived_by": p.archived_by,
        "archive_reason": p.archive_reason,
        "created_at": p.created_at.isoformat() if p.created_at else None,
        "updated_at": p.updated_at.isoformat() if p.updated_at else None,
    }


def member_to_dict(m: ProjectMember) -> dict:
    return {
        "id": m.id,
        "project_id": m.project_id,
        "user_id": m.user_id,
        "email": m.user.email if m.user else None,
        "full_name": m.user.full_name if m.user else None,
        "role": m.role.value if m.role else None,
        "permissions": m.permissions or [],
        "is_active": m.is_active,
        "invited_by": m.invited_by,
        "joined_at": m.joined_at.isoformat() if m.joined_at else None,
    }


def _validate_grants(grants: Optional[List[str]], granter: Principal) -> Optional[List[str]]:
    """Grants must be catalog permissions the granting principal already holds in this project."""
    if grants is None:
        return None
    unknown = set(grants) - ALL_PERMISSIONS
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown permissions: {', '.join(sorted(unknown))}")
    beyond = set(grants) - granter.permissions
    if beyond:
        raise HTTPException(status_code=403, detail=f"Cannot grant permissions you do not hold: {', '.join(sorted(beyond))}")
    return sorted(set(grants))


async def _get_member_or_404(db: AsyncSession, project_id: str, user_id: str) -> ProjectMember:
    result = await db.execute(
        select(ProjectMember).where(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == user_id,
        )
    )
    member = result.scalar_one_or_none()
    if not member:
        raise HTTPException(status_code=404, detail="Member not found")
    return member


# ── Projects ─────────────────────────────────────────────────

@router.post("", status_code=201)
async def create_project(
    data: ProjectCreate,
    request: Request,
    user: Principal = Depends(require_permission(P["PROJECT"]["CREATE"])),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a project; the creator becomes its OWNER member"""
    existing = await db.execute(select(Project.id).where(Project.key == data.key))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail=f"Project key {data.key} is already in use")

    project = Project(
        id=new_uuid(),
        name=data.name,
        key=data.key,
        description=data.description,
        status=data.status,
        visibility=data.visibility,
        owner_id=user.id,
    )
    if data.settings:
        project.settings = {**copy.deepcopy(DEFAULT_PROJECT_SETTINGS), **data.settings}
    db.add(project)
    db.add(ProjectMember(project_id=project.id, user_id=user.id, role=ProjectRole.OWNER, invited_by=user.id))

    record_audit(db, user, "PROJECT_CREATE", "project", project.id, new_value={"key": data.key, "name": data.name}, request=request)
    record_activity(db, user, "created", "project", project.id, project_id=project.id, description=f"Created project {data.key}", request=request)
    await commit_or_conflict(db, f"Project key {data.key} is already in use")
    return project_to_dict(project)


@router.get("")
async def list_projects(
    response: Response,
    user: Principal = Depends(require_permission(P["PROJECT"]["VIEW"])),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[ProjectStatus] = None,
    include_archived: bool = False,
    search: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
):
    """Projects the caller is a member of, plus public ones"""
    stmt = select(Project)
    if not can_see_all_projects(user):
        stmt = stmt.where(visible_project_ids_clause(user))
    if status:
        stmt = stmt.where(Project.status == status)
    elif not include_archived:
        stmt = stmt.where(Project.status != ProjectStatus.ARCHIVED)
    if search:
        pattern = f"%{search.lower()}%"
        stmt = stmt.where(func.lower(Project.name).like(pattern) | func.lower(Project.key).like(pattern))

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    result = await db.execute(
        stmt.order_by(Project.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    response.headers.update(pagination_headers(total, page, limit))
    return [project_to_dict(p) for p in result.scalars().all()]


@router.get("/{project_id}")
async def get_project(access: ProjectAccess = Depends(project_access(P["PROJECT"]["VIEW"]))):
    return project_to_dict(access.project)


@router.patch("/{project_id}")
async def update_project(
    data: ProjectUpdate,
    request: Request,
    access: ProjectAccess = Depends(project_access(P["PROJECT"]["UPDATE"])),
    db: AsyncSession = Depends(get_db_session),
):
    project = access.project
    changes = data.model_dump(exclude_unset=True)

    if "settings" in changes:
        if not access.principal.has_permission(P["PROJECT"]["MANAGE_SETTINGS"]):
            raise HTTPException(status_code=403, detail="Missing required permission: project:manage_settings")
        project.settings = {**(project.settings or {}), **(changes.pop("settings") or {})}
    if changes.get("status") == ProjectStatus.ARCHIVED:
        raise HTTPException(status_code=400, detail="Use the archive endpoint to archive a project")

    old = {field: getattr(project, field) for field in changes}
    for field, value in changes.items():
        setattr(project, field, value)

    record_audit(db, access.principal, "PROJECT_UPDATE", "project", project.id, old_value=old, new_value=changes, request=request)
    record_activity(db, access.principal, "updated", "project", project.id, project_id=project.id, metadata={"fields": sorted(changes)})
    await db.commit()
    return project_to_dict(project)


@router.post("/{project_id}/archive")
async def archive_project(
    data: ProjectArchive,
    request: Request,
    access: ProjectAccess = Depends(project_access(P["PROJECT"]["ARCHIVE"])),
    db: AsyncSession = Depends(get_db_session),
):
    project = access.project
    if project.status == ProjectStatus.ARCHIVED:
        raise HTTPException(status_code=400, detail="Project is already archived")

    previous = project.status
    project.status = ProjectStatus.ARCHIVED
    project.archived_at = utcnow()
    project.archived_by = access.principal.id
    project.archive_reason = data.reason

    members = await db.execute(
        select(ProjectMember.user_id).where(ProjectMember.project_id == project.id, ProjectMember.is_active.is_(True))
    )
    for member_id in members.scalars().all():
        notify(
            db, member_id, NotificationType.PROJECT_ARCHIVED,
            title=f"{project.key} archived",
            message=f"Project {project.name} was archived",
            data={"project_id": project.id, "reason": data.reason},
            action_url=f"/projects/{project.id}",
            exclude=access.principal.id,
        )

    record_audit(db, access.principal, "PROJECT_ARCHIVE", "project", project.id, old_value={"status": previous}, new_value={"status": project.status, "reason": data.reason}, request=request)
    await db.commit()
    return project_to_dict(project)


@router.post("/{project_id}/restore")
async def restore_project(
    request: Request,
    access: ProjectAccess = Depends(project_access(P["PROJECT"]["ARCHIVE"])),
    db: AsyncSession = Depends(get_db_session),
):
    project = access.project
    if project.status != ProjectStatus.ARCHIVED:
        raise HTTPException(status_code=400, detail="Project is not archived")
    project.status = ProjectStatus.ACTIVE
    project.archived_at = None
    project.archived_by = None
    project.archive_reason = None
    record_audit(db, access.principal, "PROJECT_RESTORE", "project", project.id, request=request)
    await db.commit()
    return project_to_dict(project)


@router.delete("/{project_id}", status_code=204)
async def delete_project(
    request: Request,
    access: ProjectAccess = Depends(project_access(P["PROJECT"]["DELETE"])),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a project with its members, sprints, tasks, comments and attachments"""
    project = access.project
    record_audit(db, access.principal, "PROJECT_DELETE", "project", project.id, old_value={"key": project.key, "name": project.name}, request=request)
    await db.delete(project)
    await db.commit()


@router.get("/{project_id}/permissions")
async def my_project_permissions(access: ProjectAccess = Depends(project_access())):
    """The caller's effective permissions inside this project"""
    return {
        "project_id": access.project.id,
        "project_role": access.principal.project_role,
        "global_roles": list(access.principal.roles),
        "permissions": sorted(access.principal.permissions),
    }


@router.post("/{project_id}/metrics/refresh")
async def refresh_metrics(
    access: ProjectAccess = Depends(project_access(P["PROJECT"]["VIEW"])),
    db: AsyncSession = Depends(get_db_session),
):
    metrics = await refresh_project_metrics(db, access.project)
    await db.commit()
    return metrics


@router.get("/{project_id}/activities")
async def project_activities(
    access: ProjectAccess = Depends(project_access(P["PROJECT"]["VIEW"])),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=50, ge=1, le=200),
):
    result = await db.execute(
        select(Activity)
        .where(Activity.project_id == access.project.id)
        .order_by(Activity.timestamp.desc())
        .limit(limit)
    )
    return [
        {
            "id": a.id,
            "user_id": a.user_id,
            "action": a.action,
            "entity_type": a.entity_type,
            "entity_id": a.entity_id,
            "description": a.description,
            "metadata": a.activity_metadata,
            "timestamp": a.timestamp.isoformat() if a.timestamp else None,
        }
        for a in result.scalars().all()
    ]


# ── Members ──────────────────────────────────────────────────

@router.get("/{project_id}/members")
async def list_members(
    access: ProjectAccess = Depends(project_access(P["PROJECT"]["VIEW"])),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(
        select(ProjectMember)
        .where(ProjectMember.project_id == access.project.id)
        .order_by(ProjectMember.joined_at)
    )
    return [member_to_dict(m) for m in result.scalars().all()]


@router.post("/{project_id}/members", status_code=201)
async def add_member(
    data: MemberAdd,
    request: Request,
    access: ProjectAccess = Depends(project_access(P["PROJECT"]["MANAGE_MEMBERS"])),
    db: AsyncSession = Depends(get_db_session),
):
    project = access.project
    new_user = await load_user(db, data.user_id)
    if not new_user:
        raise HTTPException(status_code=404, detail="User not found")
    if data.role == ProjectRole.OWNER and access.principal.project_role != ProjectRole.OWNER.value:
        raise HTTPException(status_code=403, detail="Only the project owner can add another owner")

    existing = await db.execute(
        select(ProjectMember.id).where(ProjectMember.project_id == project.id, ProjectMember.user_id == data.user_id)
    )
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail="User is already a member of this project")

    member = ProjectMember(
        id=new_uuid(),
        project_id=project.id,
        user_id=data.user_id,
        role=data.role,
        permissions=_validate_grants(data.permissions, access.principal),
        invited_by=access.principal.id,
    )
    member.user = new_user
    db.add(member)
    notify(
        db, data.user_id, NotificationType.PROJECT_MEMBER_ADDED,
        title=f"Added to {project.key}",
        message=f"You were added to {project.name} as {data.role.value}",
        data={"project_id": project.id, "role": data.role},
        action_url=f"/projects/{project.id}",
        exclude=access.principal.id,
    )
    record_audit(db, access.principal, "PROJECT_MEMBER_ADD", "project", project.id, new_value={"user_id": data.user_id, "role": data.role}, request=request)
    record_activity(db, access.principal, "member_added", "project", project.id, project_id=project.id, metadata={"user_id": data.user_id})
    await commit_or_conflict(db, "User is already a member of this project")
    return member_to_dict(member)


@router.patch("/{project_id}/members/{user_id}")
async def update_member(
    user_id: str,
    data: MemberUpdate,
    request: Request,
    access: ProjectAccess = Depends(project_access(P["PROJECT"]["MANAGE_MEMBERS"])),
    db: AsyncSession = Depends(get_db_session),
):
    project = access.project
    member = await _get_member_or_404(db, project.id, user_id)
    changes = data.model_dump(exclude_unset=True)

    if user_id == project.owner_id and changes.get("role", ProjectRole.OWNER) != ProjectRole.OWNER:
        raise HTTPException(status_code=400, detail="The project owner's role cannot be changed")
    if user_id == project.owner_id and changes.get("is_active") is False:
        raise HTTPException(status_code=400, detail="The project owner cannot be deactivated")
    if user_id == access.principal.id:
        raise HTTPException(status_code=403, detail="You cannot change your own membership")
    if changes.get("role") == ProjectRole.OWNER and access.principal.project_role != ProjectRole.OWNER.value:
        raise HTTPException(status_code=403, detail="Only the project owner can grant ownership")

    old = {"role": member.role, "permissions": member.permissions, "is_active": member.is_active}
    if "role" in changes:
        member.role = changes["role"]
    if "permissions" in changes:
        member.permissions = _validate_grants(changes["permissions"], access.principal)
    if "is_active" in changes:
        member.is_active = changes["is_active"]

    if "role" in changes and old["role"] != member.role:
        notify(
            db, user_id, NotificationType.PROJECT_ROLE_CHANGED,
            title=f"Role changed in {project.key}",
            message=f"Your role in {project.name} is now {member.role.value}",
            data={"project_id": project.id, "role": member.role},
            exclude=access.principal.id,
        )
    record_audit(db, access.principal, "PROJECT_MEMBER_UPDATE", "project", project.id, old_value=old, new_value=changes, metadata={"user_id": user_id}, request=request)
    await db.commit()
    return member_to_dict(member)


@router.delete("/{project_id}/members/{user_id}", status_code=204)
async def remove_member(
    user_id: str,
    request: Request,
    access: ProjectAccess = Depends(project_access(P["PROJECT"]["MANAGE_MEMBERS"])),
    db: AsyncSession = Depends(get_db_session),
):
    project = access.project
    if user_id == project.owner_id:
        raise HTTPException(status_code=400, detail="The project owner cannot be removed")
    member = await _get_member_or_404(db, project.id, user_id)
    await db.delete(member)
    notify(
        db, user_id, NotificationType.PROJECT_MEMBER_REMOVED,
        title=f"Removed from {project.key}",
        message=f"You were removed from {project.name}",
        data={"project_id": project.id},
        exclude=access.principal.id,
    )
    record_audit(db, access.principal, "PROJECT_MEMBER_REMOVE", "project", project.id, old_value={"user_id": user_id}, request=request)
    await db.commit()
