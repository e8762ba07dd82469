# services.py — Write-path invariants for Scrum PM
# - Pre-persist password hashing (never store plaintext)
# - Role/permission catalog seeding
# - Acyclic task/comment trees (parent-id index walk)
# - Task keys, metrics, burndown snapshots
# - Audit trail, activity feed and notification writers

import os
import re
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional, Iterable, Dict, Any, List

import bcrypt
from fastapi import HTTPException, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from logging_system import LogCategory, TimedOperation, get_current_context, get_logger
from models import (
    User, Role, Permission, Project, Task, Comment, Sprint, Notification,
    Activity, AuditLog, GlobalRole, TaskStatus, DependencyType, NotificationType, utcnow,
)
from permissions import ALL_PERMISSIONS, ROLE_PERMISSIONS, split_permission

logger = get_logger("services")

BCRYPT_PREFIX = "$2"
BCRYPT_HASH = re.compile(r"\$2[aby]\$\d{2}\$[./A-Za-z0-9]{53}")
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

ROLE_DESCRIPTIONS = {
    GlobalRole.SUPER_ADMIN: "Full system access",
    GlobalRole.ADMIN: "Administrative access without impersonation or system management",
    GlobalRole.PROJECT_OWNER: "Owns and manages projects",
    GlobalRole.TEAM_MEMBER: "Works on tasks and sprints",
    GlobalRole.VIEWER: "Read-only access",
}


# ============================================================
# PASSWORDS
# ============================================================

def is_password_hash(value: Optional[str]) -> bool:
    return bool(value) and BCRYPT_HASH.fullmatch(value) is not None


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    if not is_password_hash(password_hash):
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed hash
        return False


def prepare_password(value: str) -> str:
    """Pre-persist step: hash ``value`` unless it is already a bcrypt hash."""
    if is_password_hash(value):
        return value
    return hash_password(value)


def set_user_password(user: User, password: str) -> None:
    user.password = prepare_password(password)
    user.password_reset_token = None
    user.password_reset_expires = None


# ============================================================
# USERS & ROLES
# ============================================================

async def get_roles(db: AsyncSession, names: Iterable[str]) -> List[Role]:
    wanted = sorted({str(getattr(n, "value", n)) for n in names})
    if not wanted:
        return []
    result = await db.execute(select(Role).where(Role.name.in_(wanted)))
    roles = list(result.scalars().all())
    missing = set(wanted) - {r.name for r in roles}
    if missing:
        raise HTTPException(status_code=400, detail=f"Unknown roles: {', '.join(sorted(missing))}")
    return roles


async def create_user(
    db: AsyncSession,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    roles: Iterable[str] = (GlobalRole.TEAM_MEMBER,),
    is_active: bool = True,
) -> User:
    existing = await db.execute(select(User.id).where(User.email == email))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail="User already exists")

    user = User(
        email=email,
        password=prepare_password(password),
        first_name=first_name,
        last_name=last_name,
        is_active=is_active,
        roles=await get_roles(db, roles),
    )
    db.add(user)
    await commit_or_conflict(db, "User already exists")
    await db.refresh(user)
    return user


async def seed_access_control(db: AsyncSession) -> None:
    """Write the permission catalog and system roles. Safe to run repeatedly."""
    with TimedOperation(logger, "seed access control", category=LogCategory.DATABASE):
        result = await db.execute(select(Permission))
        by_name: Dict[str, Permission] = {p.name: p for p in result.scalars().all()}

        created = 0
        for name in sorted(ALL_PERMISSIONS - set(by_name)):
            resource, action = split_permission(name)
            perm = Permission(name=name, resource=resource, action=action, description=f"{action} {resource}")
            db.add(perm)
            by_name[name] = perm
            created += 1
        await db.flush()

        result = await db.execute(select(Role).where(Role.name.in_([r.value for r in GlobalRole])))
        roles = {r.name: r for r in result.scalars().all()}
        for role_enum in GlobalRole:
            wanted = [by_name[p] for p in sorted(ROLE_PERMISSIONS[role_enum])]
            role = roles.get(role_enum.value)
            if role is None:
                db.add(Role(
                    name=role_enum.value,
                    description=ROLE_DESCRIPTIONS[role_enum],
                    is_system=True,
                    permissions=wanted,
                ))
            elif {p.name for p in role.permissions} != {p.name for p in wanted}:
                role.permissions = wanted
        await db.flush()

        if created:
            logger.info("Seeded access control", metadata={"permissions_created": created})


# ============================================================
# PERSISTENCE HELPERS
# ============================================================

async def commit_or_conflict(db: AsyncSession, detail: str = "Resource already exists") -> None:
    """Commit, mapping unique/foreign key violations to 409."""
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        logger.warn("Integrity violation", metadata={"detail": detail, "error": str(exc.orig)})
        raise HTTPException(status_code=409, detail=detail)


def jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [jsonable(v) for v in value]
    return value


# ============================================================
# TREES
# ============================================================

def _ensure_no_cycle(index: Dict[str, Optional[str]], node_id: str, parent_id: str, label: str) -> None:
    seen = set()
    current: Optional[str] = parent_id
    while current is not None:
        if current == node_id or current in seen:
            raise HTTPException(status_code=400, detail=f"Setting this parent would create a {label} cycle")
        seen.add(current)
        current = index.get(current)


async def ensure_acyclic_task_parent(db: AsyncSession, task: Task, parent_id: Optional[str]) -> None:
    if parent_id is None:
        return
    if parent_id == task.id:
        raise HTTPException(status_code=400, detail="A task cannot be its own parent")
    rows = await db.execute(select(Task.id, Task.parent_id).where(Task.project_id == task.project_id))
    index = {row_id: row_parent for row_id, row_parent in rows.all()}
    if parent_id not in index:
        raise HTTPException(status_code=400, detail="Parent task must belong to the same project")
    _ensure_no_cycle(index, task.id, parent_id, "task")


async def ensure_acyclic_comment_parent(db: AsyncSession, comment: Comment, parent_id: Optional[str]) -> None:
    if parent_id is None:
        return
    if comment.id is not None and parent_id == comment.id:
        raise HTTPException(status_code=400, detail="A comment cannot reply to itself")
    rows = await db.execute(select(Comment.id, Comment.parent_id).where(Comment.task_id == comment.task_id))
    index = {row_id: row_parent for row_id, row_parent in rows.all()}
    if parent_id not in index:
        raise HTTPException(status_code=400, detail="Parent comment must belong to the same task")
    if comment.id is not None:
        _ensure_no_cycle(index, comment.id, parent_id, "comment")


def _blocking_edges(task_id: str, dependencies: Iterable[Dict[str, Any]]):
    for dep in dependencies or []:
        if dep.get("type") == DependencyType.BLOCKS.value:
            yield task_id, dep["task_id"]
        elif dep.get("type") == DependencyType.IS_BLOCKED_BY.value:
            yield dep["task_id"], task_id


async def ensure_acyclic_dependency(db: AsyncSession, task: Task, target_id: str, dep_type: DependencyType) -> None:
    """Reject a BLOCKS / IS_BLOCKED_BY link that would close a blocking loop."""
    if dep_type not in (DependencyType.BLOCKS, DependencyType.IS_BLOCKED_BY):
        return
    rows = await db.execute(select(Task.id, Task.dependencies).where(Task.project_id == task.project_id))
    graph: Dict[str, set] = {}
    for row_id, deps in rows.all():
        for src, dst in _blocking_edges(row_id, deps):
            graph.setdefault(src, set()).add(dst)

    src, dst = (task.id, target_id) if dep_type == DependencyType.BLOCKS else (target_id, task.id)
    stack, seen = [dst], set()
    while stack:
        node = stack.pop()
        if node == src:
            raise HTTPException(status_code=400, detail="Circular dependency detected")
        if node in seen:
            continue
        seen.add(node)
        stack.extend(graph.get(node, ()))


# ============================================================
# TASKS, SPRINTS, PROJECT METRICS
# ============================================================

def next_task_key(project: Project) -> str:
    project.task_counter = (project.task_counter or 0) + 1
    return f"{project.key}-{project.task_counter}"


def append_task_activity(
    task: Task,
    user_id: Optional[str],
    action: str,
    field: Optional[str] = None,
    old_value: Any = None,
    new_value: Any = None,
    comment: Optional[str] = None,
) -> Dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "action": getattr(action, "value", action),
        "field": field,
        "old_value": jsonable(old_value),
        "new_value": jsonable(new_value),
        "comment": comment,
        "timestamp": utcnow().isoformat(),
    }
    # JSON columns only notice reassignment
    task.activity = [*(task.activity or []), entry]
    return entry


async def refresh_project_metrics(db: AsyncSession, project: Project) -> Dict[str, Any]:
    rows = await db.execute(select(Task.status, Task.story_points).where(Task.project_id == project.id))
    metrics = dict(project.metrics or {})
    total = completed = in_progress = points = done_points = 0
    for status, story_points in rows.all():
        total += 1
        points += story_points or 0
        if status == TaskStatus.DONE:
            completed += 1
            done_points += story_points or 0
        elif status in (TaskStatus.IN_PROGRESS, TaskStatus.IN_REVIEW, TaskStatus.TESTING):
            in_progress += 1
    metrics.update(
        total_tasks=total,
        completed_tasks=completed,
        in_progress_tasks=in_progress,
        total_story_points=points,
        completed_story_points=done_points,
        sprint_progress=round(completed / total * 100) if total else 0,
    )
    project.metrics = metrics
    return metrics


async def refresh_sprint_points(db: AsyncSession, sprint: Sprint) -> None:
    rows = await db.execute(select(Task.status, Task.story_points).where(Task.sprint_id == sprint.id))
    total = completed = 0
    for status, story_points in rows.all():
        total += story_points or 0
        if status == TaskStatus.DONE:
            completed += story_points or 0
    sprint.total_story_points = total
    sprint.completed_story_points = completed


def _ideal_points(sprint: Sprint, on: date) -> float:
    total_days = (sprint.end_date - sprint.start_date).days
    if total_days <= 0:
        return 0
    elapsed = min(max((on - sprint.start_date).days, 0), total_days)
    return round(sprint.total_story_points * (1 - elapsed / total_days), 2)


async def snapshot_burndown(db: AsyncSession, sprint: Sprint, on: Optional[date] = None) -> Dict[str, Any]:
    """Append (or replace) today's burndown entry for ``sprint``."""
    previous_total = sprint.total_story_points or 0
    await refresh_sprint_points(db, sprint)
    on = on or utcnow().date()
    total = sprint.total_story_points or 0
    entry = {
        "date": on.isoformat(),
        "remaining_points": total - (sprint.completed_story_points or 0),
        "completed_points": sprint.completed_story_points or 0,
        "ideal_points": _ideal_points(sprint, on),
        "added_points": max(total - previous_total, 0),
        "removed_points": max(previous_total - total, 0),
    }
    history = [e for e in (sprint.burndown_data or []) if e.get("date") != entry["date"]]
    sprint.burndown_data = [*history, entry]
    return entry


# ============================================================
# AUDIT, ACTIVITY, NOTIFICATIONS
# ============================================================

def _client_info(request: Optional[Request]) -> Dict[str, Optional[str]]:
    if request is None:
        return {"ip_address": None, "user_agent": None}
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def record_audit(
    db: AsyncSession,
    actor,
    action: str,
    entity_type: str,
    entity_id: str,
    old_value: Any = None,
    new_value: Any = None,
    metadata: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
    success: bool = True,
    error_message: Optional[str] = None,
) -> AuditLog:
    """Stage a write-once audit row; the caller's commit persists it."""
    context = get_current_context()
    entry = AuditLog(
        user_id=actor.id if actor else "system",
        user_name=actor.full_name if actor else "system",
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        old_value=jsonable(old_value),
        new_value=jsonable(new_value),
        audit_metadata=jsonable(metadata),
        request_id=context.request_id if context else None,
        duration=int(context.elapsed_ms) if context else None,
        success=success,
        error_message=error_message,
        **_client_info(request),
    )
    db.add(entry)
    logger.audit(action, entity_type, str(entity_id), success=success)
    return entry


def record_activity(
    db: AsyncSession,
    actor,
    action: str,
    entity_type: str,
    entity_id: str,
    project_id: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> Activity:
    entry = Activity(
        user_id=actor.id if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        project_id=project_id,
        description=description,
        activity_metadata=jsonable(metadata),
        **_client_info(request),
    )
    db.add(entry)
    return entry


def notify(
    db: AsyncSession,
    user_id: Optional[str],
    type: NotificationType,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    action_url: Optional[str] = None,
    action_label: Optional[str] = None,
    exclude: Optional[str] = None,
) -> Optional[Notification]:
    """Stage a notification for ``user_id``; actors are not notified of their own actions."""
    if not user_id or user_id == exclude:
        return None
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        data=jsonable(data),
        action_url=action_url,
        action_label=action_label,
    )
    db.add(notification)
    return notification
