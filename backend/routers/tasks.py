# routers/tasks.py — Tasks: board moves, assignment, subtask trees, dependencies, watchers
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Principal, ProjectAccess, get_current_user, project_access, authorize_project, get_membership
from database import get_db_session
from http_client import pagination_headers
from models import (
    Task, Sprint, Comment, Attachment, TaskType, TaskPriority, TaskStatus,
    TaskAction, DependencyType, NotificationType, SprintStatus, new_uuid, utcnow,
)
from permissions import P
from services import (
    next_task_key, append_task_activity, ensure_acyclic_task_parent,
    ensure_acyclic_dependency, refresh_project_metrics, refresh_sprint_points,
    record_audit, record_activity, notify, commit_or_conflict,
)

router = APIRouter(tags=["Tasks"])

# Field-specific activity actions; everything else is UPDATED
FIELD_ACTIONS = {
    "priority": TaskAction.PRIORITY_CHANGED,
    "story_points": TaskAction.STORY_POINTS_CHANGED,
    "actual_hours": TaskAction.TIME_LOGGED,
}


# ── Schemas ──────────────────────────────────────────────────

class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    type: TaskType = TaskType.TASK
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.TODO
    story_points: Optional[int] = Field(default=None, ge=0)
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    assignee_id: Optional[str] = None
    sprint_id: Optional[str] = None
    parent_id: Optional[str] = None
    labels: List[str] = []
    due_date: Optional[datetime] = None
    custom_fields: Optional[Dict[str, Any]] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = None
    type: Optional[TaskType] = None
    priority: Optional[TaskPriority] = None
    story_points: Optional[int] = Field(default=None, ge=0)
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    actual_hours: Optional[float] = Field(default=None, ge=0)
    labels: Optional[List[str]] = None
    due_date: Optional[datetime] = None
    position: Optional[int] = None
    custom_fields: Optional[Dict[str, Any]] = None
    resolution: Optional[str] = None


class TaskMove(BaseModel):
    status: TaskStatus
    position: Optional[int] = None
    blocked_reason: Optional[str] = None


class TaskAssign(BaseModel):
    assignee_id: Optional[str] = None


class TaskParent(BaseModel):
    parent_id: Optional[str] = None


class DependencyAdd(BaseModel):
    task_id: str
    type: DependencyType


class WatcherAdd(BaseModel):
    user_id: Optional[str] = None  # defaults to the caller


# ── Helpers ──────────────────────────────────────────────────

def task_to_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "key": t.key,
        "project_id": t.project_id,
        "sprint_id": t.sprint_id,
        "parent_id": t.parent_id,
        "title": t.title,
        "description": t.description,
        "type": t.type.value if t.type else None,
        "priority": t.priority.value if t.priority else None,
        "status": t.status.value if t.status else None,
        "story_points": t.story_points,
        "estimated_hours": t.estimated_hours,
        "actual_hours": t.actual_hours,
        "assignee_id": t.assignee_id,
        "reporter_id": t.reporter_id,
        "labels": t.labels or [],
        "custom_fields": t.custom_fields,
        "position": t.position,
        "due_date": t.due_date.isoformat() if t.due_date else None,
        "started_at": t.started_at.isoformat() if t.started_at else None,
        "completed_at": t.completed_at.isoformat() if t.completed_at else None,
        "blocked_reason": t.blocked_reason,
        "resolution": t.resolution,
        "dependencies": t.dependencies or [],
        "watchers": t.watchers or [],
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
    }


async def load_task(db: AsyncSession, user: Principal, task_id: str, *required: str):
    task = await db.get(Task, task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    access = await authorize_project(db, user, task.project_id, *required)
    return task, access


async def _ensure_assignable(db: AsyncSession, project_id: str, user_id: str) -> None:
    membership = await get_membership(db, project_id, user_id)
    if membership is None or not membership.is_active:
        raise HTTPException(status_code=400, detail="Assignee must be an active member of the project")


async def _ensure_sprint_in_project(db: AsyncSession, sprint_id: str, project_id: str) -> Sprint:
    sprint = await db.get(Sprint, sprint_id)
    if not sprint or sprint.project_id != project_id:
        raise HTTPException(status_code=400, detail="Sprint must belong to the same project")
    if sprint.status in (SprintStatus.COMPLETED, SprintStatus.CANCELLED):
        raise HTTPException(status_code=400, detail="Cannot add tasks to a closed sprint")
    return sprint


def _add_watcher(task: Task, user_id: Optional[str]) -> None:
    if user_id and user_id not in (task.watchers or []):
        task.watchers = [*(task.watchers or []), user_id]


def _notify_watchers(db: AsyncSession, task: Task, actor_id: str, type: NotificationType, title: str, message: str) -> None:
    for watcher_id in task.watchers or []:
        notify(
            db, watcher_id, type, title=title, message=message,
            data={"task_id": task.id, "task_key": task.key, "project_id": task.project_id},
            action_url=f"/tasks/{task.id}",
            exclude=actor_id,
        )


async def _refresh_rollups(db: AsyncSession, task: Task, project, *sprint_ids: Optional[str]) -> None:
    await db.flush()
    await refresh_project_metrics(db, project)
    for sprint_id in {s for s in sprint_ids if s}:
        sprint = await db.get(Sprint, sprint_id)
        if sprint:
            await refresh_sprint_points(db, sprint)


# ── Project-scoped ───────────────────────────────────────────

@router.post("/api/v1/projects/{project_id}/tasks", status_code=201)
async def create_task(
    data: TaskCreate,
    request: Request,
    access: ProjectAccess = Depends(project_access(P["TASK"]["CREATE"])),
    db: AsyncSession = Depends(get_db_session),
):
    project = access.project
    settings = project.settings or {}
    if settings.get("require_estimates") and data.story_points is None:
        raise HTTPException(status_code=400, detail="This project requires a story point estimate")
    scale = settings.get("story_point_scale")
    if data.story_points is not None and scale and data.story_points not in scale:
        raise HTTPException(status_code=400, detail=f"Story points must be one of {scale}")
    if data.parent_id and settings.get("allow_subtasks") is False:
        raise HTTPException(status_code=400, detail="This project does not allow subtasks")

    if data.assignee_id:
        if not access.principal.has_permission(P["TASK"]["ASSIGN"]):
            raise HTTPException(status_code=403, detail="Missing required permission: task:assign")
        await _ensure_assignable(db, project.id, data.assignee_id)
    if data.sprint_id:
        await _ensure_sprint_in_project(db, data.sprint_id, project.id)

    task = Task(
        id=new_uuid(),
        project_id=project.id,
        key=next_task_key(project),
        title=data.title,
        description=data.description,
        type=data.type,
        priority=data.priority,
        status=data.status,
        story_points=data.story_points,
        estimated_hours=data.estimated_hours,
        assignee_id=data.assignee_id,
        reporter_id=access.principal.id,
        sprint_id=data.sprint_id,
        labels=data.labels,
        due_date=data.due_date,
        custom_fields=data.custom_fields,
        dependencies=[],
        watchers=[],
        activity=[],
    )
    if data.parent_id:
        await ensure_acyclic_task_parent(db, task, data.parent_id)
        task.parent_id = data.parent_id
    if data.status == TaskStatus.IN_PROGRESS:
        task.started_at = utcnow()
    if data.status == TaskStatus.DONE:
        task.completed_at = utcnow()

    _add_watcher(task, access.principal.id)
    _add_watcher(task, data.assignee_id)
    append_task_activity(task, access.principal.id, TaskAction.CREATED)
    db.add(task)

    if data.assignee_id:
        notify(
            db, data.assignee_id, NotificationType.TASK_ASSIGNED,
            title=f"{task.key} assigned to you", message=task.title,
            data={"task_id": task.id, "task_key": task.key, "project_id": project.id},
            action_url=f"/tasks/{task.id}",
            exclude=access.principal.id,
        )
    record_activity(db, access.principal, "created", "task", task.id, project_id=project.id, description=f"Created {task.key}", request=request)
    await commit_or_conflict(db, f"Task key {task.key} is already in use")

    await _refresh_rollups(db, task, project, data.sprint_id)
    await db.commit()
    return task_to_dict(task)


@router.get("/api/v1/projects/{project_id}/tasks")
async def list_tasks(
    response: Response,
    status: Optional[TaskStatus] = None,
    type: Optional[TaskType] = None,
    priority: Optional[TaskPriority] = None,
    sprint_id: Optional[str] = None,
    backlog: bool = False,
    assignee_id: Optional[str] = None,
    parent_id: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=100, ge=1, le=500),
    access: ProjectAccess = Depends(project_access(P["TASK"]["VIEW"])),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Task).where(Task.project_id == access.project.id)
    if status:
        stmt = stmt.where(Task.status == status)
    if type:
        stmt = stmt.where(Task.type == type)
    if priority:
        stmt = stmt.where(Task.priority == priority)
    if backlog:
        stmt = stmt.where(Task.sprint_id.is_(None))
    elif sprint_id:
        stmt = stmt.where(Task.sprint_id == sprint_id)
    if assignee_id:
        stmt = stmt.where(Task.assignee_id == assignee_id)
    if parent_id:
        stmt = stmt.where(Task.parent_id == parent_id)
    if search:
        pattern = f"%{search.lower()}%"
        stmt = stmt.where(func.lower(Task.title).like(pattern) | func.lower(Task.key).like(pattern))

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    result = await db.execute(
        stmt.order_by(Task.position, Task.created_at).offset((page - 1) * limit).limit(limit)
    )
    response.headers.update(pagination_headers(total, page, limit))
    return [task_to_dict(t) for t in result.scalars().all()]


# ── Task-scoped ──────────────────────────────────────────────

@router.get("/api/v1/tasks/{task_id}")
async def get_task(
    task_id: str,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, _ = await load_task(db, user, task_id, P["TASK"]["VIEW"])
    subtasks = await db.execute(select(Task.id, Task.key, Task.title, Task.status).where(Task.parent_id == task.id))
    comment_count = (await db.execute(select(func.count(Comment.id)).where(Comment.task_id == task.id))).scalar() or 0
    attachment_count = (await db.execute(select(func.count(Attachment.id)).where(Attachment.task_id == task.id))).scalar() or 0
    return {
        **task_to_dict(task),
        "subtasks": [
            {"id": s_id, "key": key, "title": title, "status": status.value}
            for s_id, key, title, status in subtasks.all()
        ],
        "comment_count": comment_count,
        "attachment_count": attachment_count,
    }


@router.patch("/api/v1/tasks/{task_id}")
async def update_task(
    task_id: str,
    data: TaskUpdate,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, access = await load_task(db, user, task_id, P["TASK"]["UPDATE"])
    changes = data.model_dump(exclude_unset=True)

    changed = []
    for field, value in changes.items():
        old = getattr(task, field)
        if old == value:
            continue
        setattr(task, field, value)
        append_task_activity(task, access.principal.id, FIELD_ACTIONS.get(field, TaskAction.UPDATED), field, old, value)
        changed.append(field)

    if changed:
        _notify_watchers(
            db, task, access.principal.id, NotificationType.TASK_UPDATED,
            title=f"{task.key} updated", message=f"Changed: {', '.join(changed)}",
        )
        if "story_points" in changed:
            await _refresh_rollups(db, task, access.project, task.sprint_id)
    await db.commit()
    return task_to_dict(task)


@router.post("/api/v1/tasks/{task_id}/move")
async def move_task(
    task_id: str,
    data: TaskMove,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Move a task across board columns"""
    task, access = await load_task(db, user, task_id, P["TASK"]["MOVE"])
    actor = access.principal.id
    old_status = task.status

    if data.position is not None:
        task.position = data.position
    if data.status == old_status:
        await db.commit()
        return task_to_dict(task)

    if data.status == TaskStatus.BLOCKED and not data.blocked_reason:
        raise HTTPException(status_code=400, detail="A blocked task needs a blocked_reason")

    task.status = data.status
    append_task_activity(task, actor, TaskAction.STATUS_CHANGED, "status", old_status, data.status)

    if data.status == TaskStatus.IN_PROGRESS and task.started_at is None:
        task.started_at = utcnow()
    if data.status == TaskStatus.DONE:
        task.completed_at = utcnow()
        append_task_activity(task, actor, TaskAction.COMPLETED)
        _notify_watchers(db, task, actor, NotificationType.TASK_COMPLETED, f"{task.key} completed", task.title)
    elif old_status == TaskStatus.DONE:
        task.completed_at = None
        append_task_activity(task, actor, TaskAction.REOPENED)
    if data.status == TaskStatus.BLOCKED:
        task.blocked_reason = data.blocked_reason
        append_task_activity(task, actor, TaskAction.BLOCKED, comment=data.blocked_reason)
        _notify_watchers(db, task, actor, NotificationType.TASK_BLOCKED, f"{task.key} blocked", data.blocked_reason)
    elif old_status == TaskStatus.BLOCKED:
        task.blocked_reason = None
        append_task_activity(task, actor, TaskAction.UNBLOCKED)
        _notify_watchers(db, task, actor, NotificationType.TASK_UNBLOCKED, f"{task.key} unblocked", task.title)

    record_activity(
        db, access.principal, "status_changed", "task", task.id, project_id=task.project_id,
        metadata={"from": old_status, "to": data.status},
    )
    await _refresh_rollups(db, task, access.project, task.sprint_id)
    await db.commit()
    return task_to_dict(task)


@router.post("/api/v1/tasks/{task_id}/assign")
async def assign_task(
    task_id: str,
    data: TaskAssign,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, access = await load_task(db, user, task_id, P["TASK"]["ASSIGN"])
    if data.assignee_id and data.assignee_id == task.assignee_id:
        raise HTTPException(status_code=409, detail="Task is already assigned to this user")

    previous = task.assignee_id
    if data.assignee_id:
        await _ensure_assignable(db, task.project_id, data.assignee_id)
        task.assignee_id = data.assignee_id
        _add_watcher(task, data.assignee_id)
        append_task_activity(task, access.principal.id, TaskAction.ASSIGNED, "assignee_id", previous, data.assignee_id)
        notify(
            db, data.assignee_id, NotificationType.TASK_ASSIGNED,
            title=f"{task.key} assigned to you", message=task.title,
            data={"task_id": task.id, "task_key": task.key, "project_id": task.project_id},
            action_url=f"/tasks/{task.id}",
            exclude=access.principal.id,
        )
    else:
        task.assignee_id = None
        append_task_activity(task, access.principal.id, TaskAction.UNASSIGNED, "assignee_id", previous, None)

    await db.commit()
    return task_to_dict(task)


@router.put("/api/v1/tasks/{task_id}/parent")
async def set_task_parent(
    task_id: str,
    data: TaskParent,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Re-parent a task; loops in the subtask tree are rejected"""
    task, access = await load_task(db, user, task_id, P["TASK"]["UPDATE"])
    await ensure_acyclic_task_parent(db, task, data.parent_id)

    previous = task.parent_id
    task.parent_id = data.parent_id
    append_task_activity(task, access.principal.id, TaskAction.UPDATED, "parent_id", previous, data.parent_id)
    await db.commit()
    return task_to_dict(task)


@router.post("/api/v1/tasks/{task_id}/dependencies", status_code=201)
async def add_dependency(
    task_id: str,
    data: DependencyAdd,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, access = await load_task(db, user, task_id, P["TASK"]["UPDATE"])
    if data.task_id == task.id:
        raise HTTPException(status_code=400, detail="A task cannot depend on itself")
    target = await db.get(Task, data.task_id)
    if not target or target.project_id != task.project_id:
        raise HTTPException(status_code=400, detail="Dependency must be a task in the same project")
    if any(d.get("task_id") == data.task_id for d in task.dependencies or []):
        raise HTTPException(status_code=409, detail="Dependency already exists")

    await ensure_acyclic_dependency(db, task, data.task_id, data.type)
    task.dependencies = [*(task.dependencies or []), {"task_id": data.task_id, "type": data.type.value}]
    append_task_activity(task, access.principal.id, TaskAction.UPDATED, "dependencies", None, {"task_id": data.task_id, "type": data.type})
    await db.commit()
    return task_to_dict(task)


@router.delete("/api/v1/tasks/{task_id}/dependencies/{target_id}")
async def remove_dependency(
    task_id: str,
    target_id: str,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, access = await load_task(db, user, task_id, P["TASK"]["UPDATE"])
    remaining = [d for d in task.dependencies or [] if d.get("task_id") != target_id]
    if len(remaining) == len(task.dependencies or []):
        raise HTTPException(status_code=404, detail="Dependency not found")
    task.dependencies = remaining
    append_task_activity(task, access.principal.id, TaskAction.UPDATED, "dependencies", {"task_id": target_id}, None)
    await db.commit()
    return task_to_dict(task)


@router.post("/api/v1/tasks/{task_id}/watchers")
async def add_watcher(
    task_id: str,
    data: WatcherAdd,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    watcher_id = data.user_id or user.id
    required = (P["TASK"]["VIEW"],) if watcher_id == user.id else (P["TASK"]["UPDATE"],)
    task, _ = await load_task(db, user, task_id, *required)
    if watcher_id != user.id:
        await _ensure_assignable(db, task.project_id, watcher_id)
    _add_watcher(task, watcher_id)
    await db.commit()
    return {"task_id": task.id, "watchers": task.watchers}


@router.delete("/api/v1/tasks/{task_id}/watchers/{user_id}")
async def remove_watcher(
    task_id: str,
    user_id: str,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    required = (P["TASK"]["VIEW"],) if user_id == user.id else (P["TASK"]["UPDATE"],)
    task, _ = await load_task(db, user, task_id, *required)
    task.watchers = [w for w in task.watchers or [] if w != user_id]
    await db.commit()
    return {"task_id": task.id, "watchers": task.watchers}


@router.get("/api/v1/tasks/{task_id}/activity")
async def task_activity(
    task_id: str,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, _ = await load_task(db, user, task_id, P["TASK"]["VIEW"])
    return list(reversed(task.activity or []))


@router.delete("/api/v1/tasks/{task_id}", status_code=204)
async def delete_task(
    task_id: str,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a task with its comments and attachments; subtasks are detached"""
    task, access = await load_task(db, user, task_id, P["TASK"]["DELETE"])
    sprint_id = task.sprint_id
    record_audit(db, access.principal, "TASK_DELETE", "task", task.id, old_value={"key": task.key, "title": task.title}, request=request)
    await db.delete(task)
    await _refresh_rollups(db, task, access.project, sprint_id)
    await db.commit()
