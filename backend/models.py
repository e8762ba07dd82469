# models.py — Database models for Scrum PM
# - UUID string primary keys everywhere
# - Global roles/permissions (many-to-many, eagerly loaded)
# - Project-scoped membership roles
# - Projects, sprints, tasks, threaded comments, attachments
# - Notifications, activity feed and append-only audit trail

import copy
import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, Date, JSON, Boolean, BigInteger, Integer, Float,
    Enum as SQLEnum, ForeignKey, Text, Index, Table, UniqueConstraint, event,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class GlobalRole(str, PyEnum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    PROJECT_OWNER = "project_owner"
    TEAM_MEMBER = "team_member"
    VIEWER = "viewer"


class ProjectRole(str, PyEnum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"


class ProjectStatus(str, PyEnum):
    PLANNING = "PLANNING"
    ACTIVE = "ACTIVE"
    ON_HOLD = "ON_HOLD"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"
    CANCELLED = "CANCELLED"


class ProjectVisibility(str, PyEnum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"
    TEAM = "TEAM"
    ORGANIZATION = "ORGANIZATION"


class SprintStatus(str, PyEnum):
    PLANNING = "PLANNING"
    ACTIVE = "ACTIVE"
    REVIEW = "REVIEW"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class TaskType(str, PyEnum):
    STORY = "STORY"
    TASK = "TASK"
    BUG = "BUG"
    EPIC = "EPIC"
    SUBTASK = "SUBTASK"
    IMPROVEMENT = "IMPROVEMENT"
    FEATURE = "FEATURE"
    HOTFIX = "HOTFIX"


class TaskPriority(str, PyEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    TRIVIAL = "TRIVIAL"


class TaskStatus(str, PyEnum):
    BACKLOG = "BACKLOG"
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    TESTING = "TESTING"
    DONE = "DONE"
    CANCELLED = "CANCELLED"
    BLOCKED = "BLOCKED"


class DependencyType(str, PyEnum):
    BLOCKS = "BLOCKS"
    IS_BLOCKED_BY = "IS_BLOCKED_BY"
    RELATES_TO = "RELATES_TO"
    DUPLICATES = "DUPLICATES"
    IS_DUPLICATED_BY = "IS_DUPLICATED_BY"


class TaskAction(str, PyEnum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    ASSIGNED = "ASSIGNED"
    UNASSIGNED = "UNASSIGNED"
    COMMENT_ADDED = "COMMENT_ADDED"
    ATTACHMENT_ADDED = "ATTACHMENT_ADDED"
    ATTACHMENT_REMOVED = "ATTACHMENT_REMOVED"
    MOVED_TO_SPRINT = "MOVED_TO_SPRINT"
    REMOVED_FROM_SPRINT = "REMOVED_FROM_SPRINT"
    PRIORITY_CHANGED = "PRIORITY_CHANGED"
    STORY_POINTS_CHANGED = "STORY_POINTS_CHANGED"
    TIME_LOGGED = "TIME_LOGGED"
    BLOCKED = "BLOCKED"
    UNBLOCKED = "UNBLOCKED"
    COMPLETED = "COMPLETED"
    REOPENED = "REOPENED"


class NotificationType(str, PyEnum):
    # Task notifications
    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASK_UPDATED = "TASK_UPDATED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_COMMENTED = "TASK_COMMENTED"
    TASK_DUE_SOON = "TASK_DUE_SOON"
    TASK_OVERDUE = "TASK_OVERDUE"
    TASK_BLOCKED = "TASK_BLOCKED"
    TASK_UNBLOCKED = "TASK_UNBLOCKED"
    # Sprint notifications
    SPRINT_STARTED = "SPRINT_STARTED"
    SPRINT_COMPLETED = "SPRINT_COMPLETED"
    SPRINT_UPDATED = "SPRINT_UPDATED"
    SPRINT_DEADLINE_APPROACHING = "SPRINT_DEADLINE_APPROACHING"
    # Project notifications
    PROJECT_INVITE = "PROJECT_INVITE"
    PROJECT_MEMBER_ADDED = "PROJECT_MEMBER_ADDED"
    PROJECT_MEMBER_REMOVED = "PROJECT_MEMBER_REMOVED"
    PROJECT_ROLE_CHANGED = "PROJECT_ROLE_CHANGED"
    PROJECT_UPDATED = "PROJECT_UPDATED"
    PROJECT_ARCHIVED = "PROJECT_ARCHIVED"
    # Mentions
    MENTIONED_IN_COMMENT = "MENTIONED_IN_COMMENT"
    MENTIONED_IN_TASK = "MENTIONED_IN_TASK"
    MENTIONED_IN_DOCUMENT = "MENTIONED_IN_DOCUMENT"
    # System
    SYSTEM_UPDATE = "SYSTEM_UPDATE"
    SYSTEM_MAINTENANCE = "SYSTEM_MAINTENANCE"
    SYSTEM_ALERT = "SYSTEM_ALERT"
    # Account
    PASSWORD_RESET = "PASSWORD_RESET"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    # AI
    AI_SUGGESTION = "AI_SUGGESTION"
    AI_ANALYSIS_COMPLETE = "AI_ANALYSIS_COMPLETE"
    AI_AUTOMATION_TRIGGERED = "AI_AUTOMATION_TRIGGERED"
    # Reports
    REPORT_GENERATED = "REPORT_GENERATED"
    REPORT_SCHEDULED = "REPORT_SCHEDULED"
    CUSTOM = "CUSTOM"


DEFAULT_USER_PREFERENCES = {
    "theme": "auto",
    "language": "en",
    "timezone": "UTC",
    "notifications": {
        "email": True,
        "push": True,
        "in_app": True,
        "daily_digest": False,
        "weekly_report": True,
    },
    "display_settings": {
        "compact_view": False,
        "show_avatars": True,
        "animations_enabled": True,
        "sidebar_collapsed": False,
    },
}

DEFAULT_PROJECT_SETTINGS = {
    "sprint_duration": 14,
    "start_day": 1,
    "working_days": [1, 2, 3, 4, 5],
    "story_point_scale": [1, 2, 3, 5, 8, 13, 21],
    "default_assignee": None,
    "auto_assign": False,
    "require_estimates": False,
    "allow_subtasks": True,
    "custom_fields": [],
}

DEFAULT_PROJECT_METRICS = {
    "total_tasks": 0,
    "completed_tasks": 0,
    "in_progress_tasks": 0,
    "total_story_points": 0,
    "completed_story_points": 0,
    "average_velocity": 0,
    "current_velocity": 0,
    "sprint_progress": 0,
}


def _copy_default(value):
    return lambda: copy.deepcopy(value)


# ============================================================
# ASSOCIATION TABLES
# ============================================================

user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", String, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

group_members = Table(
    "group_members",
    Base.metadata,
    Column("group_id", String, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================
# USERS, ROLES, PERMISSIONS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    password = Column(String, nullable=False)  # bcrypt hash, see services.prepare_password
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    avatar = Column(String, nullable=True)
    is_active = Column(Boolean, default=False, index=True)
    email_verified = Column(Boolean, default=False)
    email_verification_token = Column(String, nullable=True)
    password_reset_token = Column(String, nullable=True)
    password_reset_expires = Column(DateTime(timezone=True), nullable=True)
    last_login = Column(DateTime(timezone=True), nullable=True)
    refresh_token = Column(String, nullable=True)
    preferences = Column(JSON, nullable=False, default=_copy_default(DEFAULT_USER_PREFERENCES))
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    roles = relationship("Role", secondary=user_roles, back_populates="users", lazy="selectin")
    groups = relationship("Group", secondary=group_members, back_populates="members", passive_deletes=True)
    owned_projects = relationship("Project", back_populates="owner", foreign_keys="Project.owner_id")
    assigned_tasks = relationship("Task", back_populates="assignee", foreign_keys="Task.assignee_id")
    reported_tasks = relationship("Task", back_populates="reporter", foreign_keys="Task.reporter_id")
    comments = relationship("Comment", back_populates="author")
    notifications = relationship("Notification", back_populates="user", passive_deletes=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def has_role(self, role_name: str) -> bool:
        return any(role.name == role_name for role in self.roles or [])

    def has_permission(self, permission: str) -> bool:
        return any(
            perm.name == permission
            for role in self.roles or []
            for perm in role.permissions or []
        )


class Role(Base):
    __tablename__ = "roles"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, unique=True, nullable=False, index=True)
    description = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    is_system = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    users = relationship("User", secondary=user_roles, back_populates="roles", passive_deletes=True)
    permissions = relationship(
        "Permission", secondary=role_permissions, back_populates="roles", lazy="selectin",
    )


class Permission(Base):
    __tablename__ = "permissions"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, unique=True, nullable=False, index=True)  # e.g. "task:assign"
    resource = Column(String, nullable=False)
    action = Column(String, nullable=False)
    description = Column(String, nullable=True)
    conditions = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    roles = relationship("Role", secondary=role_permissions, back_populates="permissions", passive_deletes=True)

    __table_args__ = (
        Index("idx_perm_resource_action", "resource", "action"),
    )


class Group(Base):
    __tablename__ = "groups"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    settings = Column(JSON, nullable=False, default=lambda: {
        "visibility": "private", "join_approval": True, "allow_invites": False,
    })
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    owner = relationship("User")
    members = relationship("User", secondary=group_members, back_populates="groups", lazy="selectin")


# ============================================================
# PROJECTS
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    key = Column(String, unique=True, nullable=False, index=True)  # e.g. "PM"
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(ProjectStatus), default=ProjectStatus.ACTIVE, nullable=False, index=True)
    visibility = Column(SQLEnum(ProjectVisibility), default=ProjectVisibility.PRIVATE, nullable=False)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    settings = Column(JSON, nullable=False, default=_copy_default(DEFAULT_PROJECT_SETTINGS))
    metrics = Column(JSON, nullable=False, default=_copy_default(DEFAULT_PROJECT_METRICS))
    archived_at = Column(DateTime(timezone=True), nullable=True)
    archived_by = Column(String, nullable=True)
    archive_reason = Column(Text, nullable=True)
    task_counter = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    owner = relationship("User", back_populates="owned_projects", foreign_keys=[owner_id])
    members = relationship(
        "ProjectMember", back_populates="project",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    sprints = relationship(
        "Sprint", back_populates="project",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    tasks = relationship(
        "Task", back_populates="project", foreign_keys="Task.project_id",
        cascade="all, delete-orphan", passive_deletes=True,
    )


class ProjectMember(Base):
    __tablename__ = "project_members"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(SQLEnum(ProjectRole), default=ProjectRole.MEMBER, nullable=False)
    joined_at = Column(DateTime(timezone=True), default=utcnow)
    permissions = Column(JSON, nullable=True)  # explicit grants on top of the role
    is_active = Column(Boolean, default=True)
    invited_by = Column(String, nullable=True)
    invitation_token = Column(String, nullable=True)
    invitation_expires = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="members")
    user = relationship("User", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_member"),
    )


# ============================================================
# SPRINTS
# ============================================================

class Sprint(Base):
    __tablename__ = "sprints"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    goal = Column(Text, nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(SQLEnum(SprintStatus), default=SprintStatus.PLANNING, nullable=False, index=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    velocity = Column(Integer, default=0)
    planned_velocity = Column(Integer, default=0)
    completed_story_points = Column(Integer, default=0)
    total_story_points = Column(Integer, default=0)
    burndown_data = Column(JSON, nullable=False, default=list)
    retrospective = Column(JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="sprints")
    tasks = relationship("Task", back_populates="sprint", passive_deletes=True)

    __table_args__ = (
        Index("idx_sprint_project_status", "project_id", "status"),
    )


# ============================================================
# TASKS
# ============================================================

class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    sprint_id = Column(String, ForeignKey("sprints.id", ondelete="SET NULL"), nullable=True, index=True)
    parent_id = Column(String, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True)

    # Core fields
    key = Column(String, unique=True, nullable=False, index=True)  # e.g. "PM-42"
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    type = Column(SQLEnum(TaskType), default=TaskType.TASK, nullable=False)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    status = Column(SQLEnum(TaskStatus), default=TaskStatus.TODO, nullable=False, index=True)
    story_points = Column(Integer, nullable=True)
    estimated_hours = Column(Float, nullable=True)
    actual_hours = Column(Float, nullable=True)

    # Assignment
    assignee_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    reporter_id = Column(String, ForeignKey("users.id"), nullable=False)

    # Metadata
    labels = Column(JSON, nullable=False, default=list)
    custom_fields = Column(JSON, nullable=True)
    position = Column(Integer, default=0)
    due_date = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    blocked_reason = Column(Text, nullable=True)
    resolution = Column(Text, nullable=True)
    dependencies = Column(JSON, nullable=False, default=list)  # [{"task_id", "type"}]
    watchers = Column(JSON, nullable=False, default=list)  # user ids
    activity = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    project = relationship("Project", back_populates="tasks", foreign_keys=[project_id])
    sprint = relationship("Sprint", back_populates="tasks")
    assignee = relationship("User", back_populates="assigned_tasks", foreign_keys=[assignee_id])
    reporter = relationship("User", back_populates="reported_tasks", foreign_keys=[reporter_id])
    parent = relationship("Task", remote_side=[id], back_populates="subtasks")
    subtasks = relationship("Task", back_populates="parent", passive_deletes=True)
    comments = relationship(
        "Comment", back_populates="task", order_by="Comment.created_at",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    attachments = relationship(
        "Attachment", back_populates="task", foreign_keys="Attachment.task_id",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_task_project_status", "project_id", "status"),
        Index("idx_task_sprint", "sprint_id"),
    )


class Comment(Base):
    __tablename__ = "comments"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(String, ForeignKey("users.id"), nullable=False)
    parent_id = Column(String, ForeignKey("comments.id", ondelete="SET NULL"), nullable=True, index=True)
    content = Column(Text, nullable=False)
    mentions = Column(JSON, nullable=False, default=list)
    edited = Column(Boolean, default=False)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    edited_by = Column(String, nullable=True)
    reactions = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    task = relationship("Task", back_populates="comments")
    author = relationship("User", back_populates="comments")
    parent = relationship("Comment", remote_side=[id], back_populates="replies")
    replies = relationship("Comment", back_populates="parent", passive_deletes=True)
    attachments = relationship(
        "Attachment", back_populates="comment", foreign_keys="Attachment.comment_id",
        cascade="all, delete-orphan", passive_deletes=True,
    )


class Attachment(Base):
    __tablename__ = "attachments"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=True, index=True)
    comment_id = Column(String, ForeignKey("comments.id", ondelete="CASCADE"), nullable=True, index=True)
    uploaded_by = Column(String, ForeignKey("users.id"), nullable=False)
    filename = Column(String, nullable=False)
    original_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    size = Column(BigInteger, nullable=False, default=0)
    url = Column(String, nullable=False)
    path = Column(String, nullable=False)
    thumbnail_url = Column(String, nullable=True)
    media_metadata = Column(JSON, nullable=True)  # width/height/duration/pages
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    task = relationship("Task", back_populates="attachments", foreign_keys=[task_id])
    comment = relationship("Comment", back_populates="attachments", foreign_keys=[comment_id])
    uploader = relationship("User")


# ============================================================
# NOTIFICATIONS
# ============================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(SQLEnum(NotificationType), nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    read = Column(Boolean, default=False, index=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    email_sent = Column(Boolean, nullable=True)
    email_sent_at = Column(DateTime(timezone=True), nullable=True)
    push_sent = Column(Boolean, nullable=True)
    push_sent_at = Column(DateTime(timezone=True), nullable=True)
    action_url = Column(String, nullable=True)
    action_label = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="notifications")


# ============================================================
# ACTIVITY & AUDIT (Append-only — never update or delete)
# ============================================================

class Activity(Base):
    __tablename__ = "activities"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    activity_metadata = Column(JSON, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    project_id = Column(String, nullable=True, index=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User")

    __table_args__ = (
        Index("idx_activity_entity", "entity_type", "entity_id"),
        Index("idx_activity_user_time", "user_id", "timestamp"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, nullable=False)
    user_name = Column(String, nullable=False)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    audit_metadata = Column(JSON, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    request_id = Column(String, nullable=True)
    session_id = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    success = Column(Boolean, default=True, nullable=False)
    error_message = Column(Text, nullable=True)
    duration = Column(Integer, nullable=True)  # milliseconds
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_audit_user_time", "user_id", "timestamp"),
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action_time", "action", "timestamp"),
    )


class AppendOnlyViolation(Exception):
    """Raised when an Activity or AuditLog row is updated or deleted."""


def _reject_mutation(mapper, connection, target):
    raise AppendOnlyViolation(f"{type(target).__name__} records are write-once")


for _model in (Activity, AuditLog):
    event.listen(_model, "before_update", _reject_mutation)
    event.listen(_model, "before_delete", _reject_mutation)
