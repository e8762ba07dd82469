# routers/sprints.py — Sprint lifecycle, burndown and retrospectives
from datetime import date
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Principal, ProjectAccess, get_current_user, project_access, authorize_project
from database import get_db_session
from models import (
    Sprint, SprintStatus, Task, TaskStatus, ProjectMember, NotificationType,
    TaskAction, new_uuid, utcnow,
)
from permissions import P
from services import (
    record_audit, record_activity, notify, snapshot_burndown, refresh_sprint_points,
    append_task_activity,
)

router = APIRouter(tags=["Sprints"])

OPEN_STATUSES = (SprintStatus.PLANNING, SprintStatus.ACTIVE, SprintStatus.REVIEW)


# ── Schemas ──────────────────────────────────────────────────

class SprintCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=100)
    goal: Optional[str] = Field(default=None, max_length=500)
    start_date: date
    end_date: date
    planned_velocity: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date <= self.start_date:
            raise ValueError("End date must be after start date")
        return self


class SprintUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=3, max_length=100)
    goal: Optional[str] = Field(default=None, max_length=500)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    planned_velocity: Optional[int] = Field(default=None, ge=0)


class SprintComplete(BaseModel):
    move_incomplete_to: Optional[str] = None  # sprint id; backlog when omitted


class SprintCancel(BaseModel):
    reason: Optional[str] = None


class SprintTasks(BaseModel):
    task_ids: List[str] = Field(..., min_length=1)


class Retrospective(BaseModel):
    what_went_well: List[str] = []
    what_went_wrong: List[str] = []
    action_items: List[str] = []
    team_mood: Optional[int] = Field(default=None, ge=1, le=5)
    notes: Optional[str] = None


# ── Helpers ──────────────────────────────────────────────────

def sprint_to_dict(s: Sprint) -> dict:
    return {
        "id": s.id,
        "project_id": s.project_id,
        "name": s.name,
        "goal": s.goal,
        "start_date": s.start_date.isoformat() if s.start_date else None,
        "end_date": s.end_date.isoformat() if s.end_date else None,
        "status": s.status.value if s.status else None,
        "created_by": s.created_by,
        "velocity": s.velocity,
        "planned_velocity": s.planned_velocity,
        "completed_story_points": s.completed_story_points,
        "total_story_points": s.total_story_points,
        "burndown_data": s.burndown_data or [],
        "retrospective": s.retrospective,
        "started_at": s.started_at.isoformat() if s.started_at else None,
        "completed_at": s.completed_at.isoformat() if s.completed_at else None,
        "cancelled_at": s.cancelled_at.isoformat() if s.cancelled_at else None,
        "cancellation_reason": s.cancellation_reason,
    }


async def _load_sprint(db: AsyncSession, user: Principal, sprint_id: str, *required: str):
    sprint = await db.get(Sprint, sprint_id)
    if not sprint:
        raise HTTPException(status_code=404, detail="Sprint not found")
    access = await authorize_project(db, user, sprint.project_id, *required)
    return sprint, access


def _require_status(sprint: Sprint, *allowed: SprintStatus) -> None:
    if sprint.status not in allowed:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid state transition: sprint is {sprint.status.value}",
        )


async def _release_open_tasks(db: AsyncSession, sprint: Sprint, target_sprint_id: Optional[str] = None) -> int:
    """Move the sprint's unfinished tasks to ``target_sprint_id`` (backlog when None)."""
    result = await db.execute(
        update(Task)
        .where(Task.sprint_id == sprint.id, Task.status.notin_([TaskStatus.DONE, TaskStatus.CANCELLED]))
        .values(sprint_id=target_sprint_id)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


async def _notify_members(db: AsyncSession, project_id: str, actor_id: str, **kwargs) -> None:
    members = await db.execute(
        select(ProjectMember.user_id).where(ProjectMember.project_id == project_id, ProjectMember.is_active.is_(True))
    )
    for member_id in members.scalars().all():
        notify(db, member_id, exclude=actor_id, **kwargs)


# ── Project-scoped ───────────────────────────────────────────

@router.post("/api/v1/projects/{project_id}/sprints", status_code=201)
async def create_sprint(
    data: SprintCreate,
    request: Request,
    access: ProjectAccess = Depends(project_access(P["SPRINT"]["CREATE"])),
    db: AsyncSession = Depends(get_db_session),
):
    sprint = Sprint(
        id=new_uuid(),
        project_id=access.project.id,
        name=data.name,
        goal=data.goal,
        start_date=data.start_date,
        end_date=data.end_date,
        planned_velocity=data.planned_velocity,
        created_by=access.principal.id,
        burndown_data=[],
    )
    db.add(sprint)
    record_audit(db, access.principal, "SPRINT_CREATE", "sprint", sprint.id, new_value={"name": data.name}, request=request)
    record_activity(db, access.principal, "created", "sprint", sprint.id, project_id=access.project.id, description=f"Created sprint {data.name}")
    await db.commit()
    return sprint_to_dict(sprint)


@router.get("/api/v1/projects/{project_id}/sprints")
async def list_sprints(
    status: Optional[SprintStatus] = None,
    access: ProjectAccess = Depends(project_access(P["SPRINT"]["VIEW"])),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Sprint).where(Sprint.project_id == access.project.id)
    if status:
        stmt = stmt.where(Sprint.status == status)
    result = await db.execute(stmt.order_by(Sprint.start_date))
    return [sprint_to_dict(s) for s in result.scalars().all()]


# ── Sprint-scoped ────────────────────────────────────────────

@router.get("/api/v1/sprints/{sprint_id}")
async def get_sprint(
    sprint_id: str,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    sprint, _ = await _load_sprint(db, user, sprint_id, P["SPRINT"]["VIEW"])
    tasks = await db.execute(select(Task.id, Task.key, Task.status, Task.story_points).where(Task.sprint_id == sprint.id))
    return {
        **sprint_to_dict(sprint),
        "tasks": [
            {"id": t_id, "key": key, "status": status.value, "story_points": points}
            for t_id, key, status, points in tasks.all()
        ],
    }


@router.patch("/api/v1/sprints/{sprint_id}")
async def update_sprint(
    sprint_id: str,
    data: SprintUpdate,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    sprint, access = await _load_sprint(db, user, sprint_id, P["SPRINT"]["UPDATE"])
    _require_status(sprint, *OPEN_STATUSES)
    changes = data.model_dump(exclude_unset=True)

    start = changes.get("start_date", sprint.start_date)
    end = changes.get("end_date", sprint.end_date)
    if end <= start:
        raise HTTPException(status_code=400, detail="End date must be after start date")

    old = {field: getattr(sprint, field) for field in changes}
    for field, value in changes.items():
        setattr(sprint, field, value)

    record_audit(db, access.principal, "SPRINT_UPDATE", "sprint", sprint.id, old_value=old, new_value=changes, request=request)
    await db.commit()
    return sprint_to_dict(sprint)


@router.post("/api/v1/sprints/{sprint_id}/start")
async def start_sprint(
    sprint_id: str,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    sprint, access = await _load_sprint(db, user, sprint_id, P["SPRINT"]["START"])
    _require_status(sprint, SprintStatus.PLANNING)

    active = await db.execute(
        select(Sprint.id).where(
            Sprint.project_id == sprint.project_id,
            Sprint.status == SprintStatus.ACTIVE,
        )
    )
    if active.first():
        raise HTTPException(status_code=409, detail="A sprint is already active for this project")

    sprint.status = SprintStatus.ACTIVE
    sprint.started_at = utcnow()
    await snapshot_burndown(db, sprint)

    await _notify_members(
        db, sprint.project_id, access.principal.id,
        type=NotificationType.SPRINT_STARTED,
        title=f"Sprint {sprint.name} started",
        message=sprint.goal or f"Sprint {sprint.name} is now active",
        data={"sprint_id": sprint.id, "project_id": sprint.project_id},
        action_url=f"/sprints/{sprint.id}",
    )
    record_audit(db, access.principal, "SPRINT_START", "sprint", sprint.id, request=request)
    record_activity(db, access.principal, "started", "sprint", sprint.id, project_id=sprint.project_id)
    await db.commit()
    return sprint_to_dict(sprint)


@router.post("/api/v1/sprints/{sprint_id}/review")
async def review_sprint(
    sprint_id: str,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    sprint, access = await _load_sprint(db, user, sprint_id, P["SPRINT"]["UPDATE"])
    _require_status(sprint, SprintStatus.ACTIVE)
    sprint.status = SprintStatus.REVIEW
    record_audit(db, access.principal, "SPRINT_REVIEW", "sprint", sprint.id, request=request)
    await db.commit()
    return sprint_to_dict(sprint)


@router.post("/api/v1/sprints/{sprint_id}/complete")
async def complete_sprint(
    sprint_id: str,
    data: SprintComplete,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    sprint, access = await _load_sprint(db, user, sprint_id, P["SPRINT"]["COMPLETE"])
    _require_status(sprint, SprintStatus.ACTIVE, SprintStatus.REVIEW)

    if data.move_incomplete_to:
        target = await db.get(Sprint, data.move_incomplete_to)
        if not target or target.project_id != sprint.project_id or target.id == sprint.id:
            raise HTTPException(status_code=400, detail="Target sprint must be another sprint in the same project")
        _require_status(target, SprintStatus.PLANNING, SprintStatus.ACTIVE)

    await snapshot_burndown(db, sprint)
    sprint.velocity = sprint.completed_story_points or 0
    sprint.status = SprintStatus.COMPLETED
    sprint.completed_at = utcnow()
    moved = await _release_open_tasks(db, sprint, data.move_incomplete_to)

    project = access.project
    completed = await db.execute(
        select(Sprint.velocity).where(
            Sprint.project_id == project.id,
            Sprint.status == SprintStatus.COMPLETED,
            Sprint.id != sprint.id,
        )
    )
    velocities = [v or 0 for v in completed.scalars().all()] + [sprint.velocity]
    project.metrics = {
        **(project.metrics or {}),
        "current_velocity": sprint.velocity,
        "average_velocity": round(sum(velocities) / len(velocities), 2),
    }

    await _notify_members(
        db, sprint.project_id, access.principal.id,
        type=NotificationType.SPRINT_COMPLETED,
        title=f"Sprint {sprint.name} completed",
        message=f"Velocity {sprint.velocity}; {moved} unfinished task(s) moved",
        data={"sprint_id": sprint.id, "velocity": sprint.velocity, "moved_tasks": moved},
        action_url=f"/sprints/{sprint.id}",
    )
    record_audit(db, access.principal, "SPRINT_COMPLETE", "sprint", sprint.id, new_value={"velocity": sprint.velocity, "moved_tasks": moved}, request=request)
    record_activity(db, access.principal, "completed", "sprint", sprint.id, project_id=sprint.project_id)
    await db.commit()
    return {**sprint_to_dict(sprint), "moved_tasks": moved}


@router.post("/api/v1/sprints/{sprint_id}/cancel")
async def cancel_sprint(
    sprint_id: str,
    data: SprintCancel,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Cancel a sprint; unfinished tasks go back to the backlog"""
    sprint, access = await _load_sprint(db, user, sprint_id, P["SPRINT"]["CANCEL"])
    _require_status(sprint, *OPEN_STATUSES)

    sprint.status = SprintStatus.CANCELLED
    sprint.cancelled_at = utcnow()
    sprint.cancellation_reason = data.reason
    moved = await _release_open_tasks(db, sprint)

    record_audit(db, access.principal, "SPRINT_CANCEL", "sprint", sprint.id, new_value={"reason": data.reason, "moved_tasks": moved}, request=request)
    await db.commit()
    return {**sprint_to_dict(sprint), "moved_tasks": moved}


@router.delete("/api/v1/sprints/{sprint_id}", status_code=204)
async def delete_sprint(
    sprint_id: str,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a sprint; its tasks return to the backlog"""
    sprint, access = await _load_sprint(db, user, sprint_id, P["SPRINT"]["DELETE"])
    if sprint.status == SprintStatus.ACTIVE:
        raise HTTPException(status_code=400, detail="Cannot delete an active sprint")

    record_audit(db, access.principal, "SPRINT_DELETE", "sprint", sprint.id, old_value={"name": sprint.name}, request=request)
    await db.delete(sprint)
    await db.commit()


# ── Sprint backlog ───────────────────────────────────────────

@router.post("/api/v1/sprints/{sprint_id}/tasks")
async def add_tasks_to_sprint(
    sprint_id: str,
    data: SprintTasks,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    sprint, access = await _load_sprint(db, user, sprint_id, P["SPRINT"]["MANAGE_TASKS"])
    _require_status(sprint, SprintStatus.PLANNING, SprintStatus.ACTIVE)

    result = await db.execute(select(Task).where(Task.id.in_(data.task_ids)))
    tasks = result.scalars().all()
    if len(tasks) != len(set(data.task_ids)):
        raise HTTPException(status_code=404, detail="One or more tasks not found")
    for task in tasks:
        if task.project_id != sprint.project_id:
            raise HTTPException(status_code=400, detail=f"Task {task.key} belongs to another project")
        if task.status == TaskStatus.DONE:
            raise HTTPException(status_code=400, detail=f"Cannot move a completed task ({task.key})")

    for task in tasks:
        if task.sprint_id != sprint.id:
            append_task_activity(task, access.principal.id, TaskAction.MOVED_TO_SPRINT, "sprint_id", task.sprint_id, sprint.id)
            task.sprint_id = sprint.id
    await db.flush()
    await refresh_sprint_points(db, sprint)
    await db.commit()
    return sprint_to_dict(sprint)


@router.delete("/api/v1/sprints/{sprint_id}/tasks/{task_id}")
async def remove_task_from_sprint(
    sprint_id: str,
    task_id: str,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    sprint, access = await _load_sprint(db, user, sprint_id, P["SPRINT"]["MANAGE_TASKS"])
    task = await db.get(Task, task_id)
    if not task or task.sprint_id != sprint.id:
        raise HTTPException(status_code=404, detail="Task is not in this sprint")

    append_task_activity(task, access.principal.id, TaskAction.REMOVED_FROM_SPRINT, "sprint_id", sprint.id, None)
    task.sprint_id = None
    await db.flush()
    await refresh_sprint_points(db, sprint)
    await db.commit()
    return sprint_to_dict(sprint)


# ── Burndown & retrospective ─────────────────────────────────

@router.get("/api/v1/sprints/{sprint_id}/burndown")
async def get_burndown(
    sprint_id: str,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    sprint, _ = await _load_sprint(db, user, sprint_id, P["SPRINT"]["VIEW"])
    return {
        "sprint_id": sprint.id,
        "total_story_points": sprint.total_story_points,
        "completed_story_points": sprint.completed_story_points,
        "burndown_data": sprint.burndown_data or [],
    }


@router.post("/api/v1/sprints/{sprint_id}/burndown/snapshot")
async def take_burndown_snapshot(
    sprint_id: str,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    sprint, _ = await _load_sprint(db, user, sprint_id, P["SPRINT"]["UPDATE"])
    _require_status(sprint, SprintStatus.ACTIVE, SprintStatus.REVIEW)
    entry = await snapshot_burndown(db, sprint)
    await db.commit()
    return entry


@router.put("/api/v1/sprints/{sprint_id}/retrospective")
async def save_retrospective(
    sprint_id: str,
    data: Retrospective,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    sprint, access = await _load_sprint(db, user, sprint_id, P["SPRINT"]["UPDATE"])
    _require_status(sprint, SprintStatus.REVIEW, SprintStatus.COMPLETED)
    sprint.retrospective = data.model_dump()
    record_audit(db, access.principal, "SPRINT_RETROSPECTIVE", "sprint", sprint.id, request=request)
    await db.commit()
    return sprint_to_dict(sprint)
