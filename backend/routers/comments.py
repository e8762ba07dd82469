# routers/comments.py — Task comments: threads, mentions, reactions
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Principal, get_current_user, authorize_project, get_membership
from database import get_db_session
from http_client import pagination_headers
from models import Comment, Task, TaskAction, NotificationType, new_uuid, utcnow
from permissions import P
from routers.tasks import load_task
from services import (
    append_task_activity, ensure_acyclic_comment_parent, notify,
    record_activity, record_audit,
)

router = APIRouter(tags=["Comments"])


# --- Schemas ---

class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)
    parent_id: Optional[str] = None
    mentions: List[str] = []


class CommentUpdate(BaseModel):
    content: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    mentions: Optional[List[str]] = None
    parent_id: Optional[str] = None


class ReactionAdd(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=32)


# --- Helpers ---

def comment_to_dict(c: Comment) -> dict:
    return {
        "id": c.id,
        "task_id": c.task_id,
        "author_id": c.author_id,
        "parent_id": c.parent_id,
        "content": c.content,
        "mentions": c.mentions or [],
        "reactions": c.reactions or [],
        "edited": bool(c.edited),
        "edited_at": c.edited_at.isoformat() if c.edited_at else None,
        "edited_by": c.edited_by,
        "created_at": c.created_at.isoformat() if c.created_at else None,
        "updated_at": c.updated_at.isoformat() if c.updated_at else None,
    }


async def _load_comment(db: AsyncSession, user: Principal, comment_id: str, *required: str):
    comment = await db.get(Comment, comment_id)
    if not comment:
        raise HTTPException(status_code=404, detail="Comment not found")
    task = await db.get(Task, comment.task_id)
    access = await authorize_project(db, user, task.project_id, *required)
    return comment, task, access


async def _notify_mentions(db: AsyncSession, task: Task, comment: Comment, user_ids: List[str], actor_id: str) -> None:
    """Only active project members are notified of a mention."""
    for user_id in dict.fromkeys(user_ids):
        membership = await get_membership(db, task.project_id, user_id)
        if membership is None or not membership.is_active:
            continue
        notify(
            db, user_id, NotificationType.MENTIONED_IN_COMMENT,
            title=f"You were mentioned on {task.key}",
            message=comment.content[:200],
            data={"task_id": task.id, "comment_id": comment.id, "project_id": task.project_id},
            action_url=f"/tasks/{task.id}",
            exclude=actor_id,
        )


# --- Endpoints ---

@router.post("/api/v1/tasks/{task_id}/comments", status_code=201)
async def create_comment(
    task_id: str,
    data: CommentCreate,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, access = await load_task(db, user, task_id, P["TASK"]["COMMENT"])
    comment = Comment(
        id=new_uuid(),
        task_id=task.id,
        author_id=access.principal.id,
        content=data.content,
        mentions=list(dict.fromkeys(data.mentions)),
        reactions=[],
    )
    await ensure_acyclic_comment_parent(db, comment, data.parent_id)
    comment.parent_id = data.parent_id
    db.add(comment)

    append_task_activity(task, access.principal.id, TaskAction.COMMENT_ADDED, comment=comment.id)
    mentioned = set(comment.mentions)
    for watcher_id in task.watchers or []:
        if watcher_id in mentioned:
            continue
        notify(
            db, watcher_id, NotificationType.TASK_COMMENTED,
            title=f"New comment on {task.key}", message=data.content[:200],
            data={"task_id": task.id, "comment_id": comment.id, "project_id": task.project_id},
            action_url=f"/tasks/{task.id}",
            exclude=access.principal.id,
        )
    await _notify_mentions(db, task, comment, comment.mentions, access.principal.id)
    record_activity(db, access.principal, "commented", "comment", comment.id, project_id=task.project_id, request=request)
    await db.commit()
    return comment_to_dict(comment)


@router.get("/api/v1/tasks/{task_id}/comments")
async def list_comments(
    task_id: str,
    response: Response,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Comments oldest first; replies carry their ``parent_id``"""
    task, _ = await load_task(db, user, task_id, P["TASK"]["VIEW"])
    stmt = select(Comment).where(Comment.task_id == task.id)
    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    result = await db.execute(
        stmt.order_by(Comment.created_at).offset((page - 1) * limit).limit(limit)
    )
    response.headers.update(pagination_headers(total, page, limit))
    return [comment_to_dict(c) for c in result.scalars().all()]


@router.patch("/api/v1/comments/{comment_id}")
async def update_comment(
    comment_id: str,
    data: CommentUpdate,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    comment, task, access = await _load_comment(db, user, comment_id, P["TASK"]["COMMENT"])
    if comment.author_id != access.principal.id:
        raise HTTPException(status_code=403, detail="Only the author can edit a comment")

    changes = data.model_dump(exclude_unset=True)
    if "parent_id" in changes:
        await ensure_acyclic_comment_parent(db, comment, data.parent_id)
        comment.parent_id = data.parent_id
    if data.content is not None and data.content != comment.content:
        comment.content = data.content
        comment.edited = True
        comment.edited_at = utcnow()
        comment.edited_by = access.principal.id
    if data.mentions is not None:
        added = [m for m in dict.fromkeys(data.mentions) if m not in (comment.mentions or [])]
        comment.mentions = list(dict.fromkeys(data.mentions))
        await _notify_mentions(db, task, comment, added, access.principal.id)

    await db.commit()
    return comment_to_dict(comment)


@router.delete("/api/v1/comments/{comment_id}", status_code=204)
async def delete_comment(
    comment_id: str,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Authors delete their own comments; others need task:delete. Replies are kept."""
    comment, task, access = await _load_comment(db, user, comment_id, P["TASK"]["VIEW"])
    if comment.author_id != access.principal.id and not access.principal.has_permission(P["TASK"]["DELETE"]):
        raise HTTPException(status_code=403, detail="Missing required permission: task:delete")

    record_audit(
        db, access.principal, "COMMENT_DELETE", "comment", comment.id,
        old_value={"task_id": task.id, "content": comment.content}, request=request,
    )
    await db.delete(comment)
    await db.commit()


@router.post("/api/v1/comments/{comment_id}/reactions")
async def toggle_reaction(
    comment_id: str,
    data: ReactionAdd,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Add the caller's reaction, or remove it when already present"""
    comment, _, access = await _load_comment(db, user, comment_id, P["TASK"]["COMMENT"])
    reactions = list(comment.reactions or [])
    mine = [r for r in reactions if r["user_id"] == access.principal.id and r["emoji"] == data.emoji]
    if mine:
        reactions = [r for r in reactions if r not in mine]
    else:
        reactions.append({"user_id": access.principal.id, "emoji": data.emoji, "timestamp": utcnow().isoformat()})
    comment.reactions = reactions
    await db.commit()
    return {"id": comment.id, "reactions": comment.reactions}


@router.delete("/api/v1/comments/{comment_id}/reactions/{emoji}")
async def remove_reaction(
    comment_id: str,
    emoji: str,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    comment, _, access = await _load_comment(db, user, comment_id, P["TASK"]["COMMENT"])
    comment.reactions = [
        r for r in comment.reactions or []
        if not (r["user_id"] == access.principal.id and r["emoji"] == emoji)
    ]
    await db.commit()
    return {"id": comment.id, "reactions": comment.reactions}
