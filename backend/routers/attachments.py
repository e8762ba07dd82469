# routers/attachments.py — Attachment metadata for tasks and comments
import os
import uuid
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Principal, get_current_user, authorize_project
from database import get_db_session
from models import Attachment, Comment, Task, TaskAction, new_uuid
from permissions import P
from routers.tasks import load_task
from services import append_task_activity, record_activity, record_audit

router = APIRouter(tags=["Attachments"])

# Storage location is recorded, bytes are uploaded out of band
STORAGE_ROOT = os.getenv("ATTACHMENT_STORAGE_ROOT", "/data/attachments")
MAX_ATTACHMENT_SIZE = int(os.getenv("MAX_ATTACHMENT_SIZE", str(50 * 1024 * 1024)))


class AttachmentCreate(BaseModel):
    original_name: str = Field(..., min_length=1, max_length=255)
    mime_type: str = Field(..., min_length=1, max_length=255)
    size: int = Field(..., ge=0)
    url: str = Field(..., min_length=1)
    thumbnail_url: Optional[str] = None
    comment_id: Optional[str] = None
    media_metadata: Optional[Dict[str, Any]] = None


def attachment_to_dict(a: Attachment) -> dict:
    return {
        "id": a.id,
        "task_id": a.task_id,
        "comment_id": a.comment_id,
        "uploaded_by": a.uploaded_by,
        "filename": a.filename,
        "original_name": a.original_name,
        "mime_type": a.mime_type,
        "size": a.size,
        "url": a.url,
        "path": a.path,
        "thumbnail_url": a.thumbnail_url,
        "media_metadata": a.media_metadata,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }


def _stored_filename(original_name: str) -> str:
    _, ext = os.path.splitext(original_name)
    return f"{uuid.uuid4().hex}{ext.lower()}"


@router.post("/api/v1/tasks/{task_id}/attachments", status_code=201)
async def add_attachment(
    task_id: str,
    data: AttachmentCreate,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, access = await load_task(db, user, task_id, P["TASK"]["ATTACH_FILES"])
    if data.size > MAX_ATTACHMENT_SIZE:
        raise HTTPException(status_code=400, detail=f"Attachments are limited to {MAX_ATTACHMENT_SIZE} bytes")
    if data.comment_id:
        comment = await db.get(Comment, data.comment_id)
        if not comment or comment.task_id != task.id:
            raise HTTPException(status_code=400, detail="Comment must belong to the same task")

    filename = _stored_filename(data.original_name)
    attachment = Attachment(
        id=new_uuid(),
        task_id=task.id,
        comment_id=data.comment_id,
        uploaded_by=access.principal.id,
        filename=filename,
        original_name=data.original_name,
        mime_type=data.mime_type,
        size=data.size,
        url=data.url,
        path=f"{STORAGE_ROOT}/{task.project_id}/{task.id}/{filename}",
        thumbnail_url=data.thumbnail_url,
        media_metadata=data.media_metadata,
    )
    db.add(attachment)
    append_task_activity(task, access.principal.id, TaskAction.ATTACHMENT_ADDED, "attachments", None, data.original_name)
    record_activity(db, access.principal, "attached", "attachment", attachment.id, project_id=task.project_id, request=request)
    await db.commit()
    return attachment_to_dict(attachment)


@router.get("/api/v1/tasks/{task_id}/attachments")
async def list_attachments(
    task_id: str,
    comment_id: Optional[str] = None,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, _ = await load_task(db, user, task_id, P["TASK"]["VIEW"])
    stmt = select(Attachment).where(Attachment.task_id == task.id)
    if comment_id:
        stmt = stmt.where(Attachment.comment_id == comment_id)
    result = await db.execute(stmt.order_by(Attachment.created_at))
    return [attachment_to_dict(a) for a in result.scalars().all()]


@router.delete("/api/v1/attachments/{attachment_id}", status_code=204)
async def delete_attachment(
    attachment_id: str,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    attachment = await db.get(Attachment, attachment_id)
    if not attachment:
        raise HTTPException(status_code=404, detail="Attachment not found")
    task_id = attachment.task_id
    if task_id is None:
        comment = await db.get(Comment, attachment.comment_id)
        task_id = comment.task_id
    task = await db.get(Task, task_id)
    access = await authorize_project(db, user, task.project_id, P["TASK"]["VIEW"])
    if attachment.uploaded_by != access.principal.id and not access.principal.has_permission(P["TASK"]["DELETE"]):
        raise HTTPException(status_code=403, detail="Missing required permission: task:delete")

    append_task_activity(task, access.principal.id, TaskAction.ATTACHMENT_REMOVED, "attachments", attachment.original_name, None)
    record_audit(
        db, access.principal, "ATTACHMENT_DELETE", "attachment", attachment.id,
        old_value={"task_id": task.id, "original_name": attachment.original_name}, request=request,
    )
    await db.delete(attachment)
    await db.commit()
