"""Initial Scrum PM schema

Revision ID: a1c2e3f4b5d6
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates:
- users, roles, permissions, groups and their association tables
- projects, project_members, sprints, tasks
- comments, attachments, notifications
- activities, audit_logs (append-only)
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a1c2e3f4b5d6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PROJECT_ROLE = ('OWNER', 'ADMIN', 'MEMBER', 'VIEWER')
PROJECT_STATUS = ('PLANNING', 'ACTIVE', 'ON_HOLD', 'COMPLETED', 'ARCHIVED', 'CANCELLED')
PROJECT_VISIBILITY = ('PUBLIC', 'PRIVATE', 'TEAM', 'ORGANIZATION')
SPRINT_STATUS = ('PLANNING', 'ACTIVE', 'REVIEW', 'COMPLETED', 'CANCELLED')
TASK_TYPE = ('STORY', 'TASK', 'BUG', 'EPIC', 'SUBTASK', 'IMPROVEMENT', 'FEATURE', 'HOTFIX')
TASK_PRIORITY = ('CRITICAL', 'HIGH', 'MEDIUM', 'LOW', 'TRIVIAL')
TASK_STATUS = ('BACKLOG', 'TODO', 'IN_PROGRESS', 'IN_REVIEW', 'TESTING', 'DONE', 'CANCELLED', 'BLOCKED')
NOTIFICATION_TYPE = (
    'TASK_ASSIGNED', 'TASK_UPDATED', 'TASK_COMPLETED', 'TASK_COMMENTED', 'TASK_DUE_SOON',
    'TASK_OVERDUE', 'TASK_BLOCKED', 'TASK_UNBLOCKED',
    'SPRINT_STARTED', 'SPRINT_COMPLETED', 'SPRINT_UPDATED', 'SPRINT_DEADLINE_APPROACHING',
    'PROJECT_INVITE', 'PROJECT_MEMBER_ADDED', 'PROJECT_MEMBER_REMOVED', 'PROJECT_ROLE_CHANGED',
    'PROJECT_UPDATED', 'PROJECT_ARCHIVED',
    'MENTIONED_IN_COMMENT', 'MENTIONED_IN_TASK', 'MENTIONED_IN_DOCUMENT',
    'SYSTEM_UPDATE', 'SYSTEM_MAINTENANCE', 'SYSTEM_ALERT',
    'PASSWORD_RESET', 'EMAIL_VERIFICATION', 'ACCOUNT_LOCKED', 'TWO_FACTOR_ENABLED',
    'AI_SUGGESTION', 'AI_ANALYSIS_COMPLETE', 'AI_AUTOMATION_TRIGGERED',
    'REPORT_GENERATED', 'REPORT_SCHEDULED', 'CUSTOM',
)

ENUM_TYPES = (
    'projectrole', 'projectstatus', 'projectvisibility', 'sprintstatus',
    'tasktype', 'taskpriority', 'taskstatus', 'notificationtype',
)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # ---- users ----
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('password', sa.String(), nullable=False),
        sa.Column('first_name', sa.String(), nullable=False),
        sa.Column('last_name', sa.String(), nullable=False),
        sa.Column('avatar', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default='false'),
        sa.Column('email_verified', sa.Boolean(), nullable=True, server_default='false'),
        sa.Column('email_verification_token', sa.String(), nullable=True),
        sa.Column('password_reset_token', sa.String(), nullable=True),
        sa.Column('password_reset_expires', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_login', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refresh_token', sa.String(), nullable=True),
        sa.Column('preferences', sa.JSON(), nullable=False, server_default='{}'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_is_active', 'users', ['is_active'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])

    # ---- roles / permissions ----
    op.create_table(
        'roles',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default='true'),
        sa.Column('is_system', sa.Boolean(), nullable=True, server_default='false'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_roles_name', 'roles', ['name'], unique=True)

    op.create_table(
        'permissions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('resource', sa.String(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('conditions', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_permissions_name', 'permissions', ['name'], unique=True)
    op.create_index('idx_perm_resource_action', 'permissions', ['resource', 'action'])

    op.create_table(
        'user_roles',
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role_id', sa.String(), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('user_id', 'role_id'),
    )
    op.create_table(
        'role_permissions',
        sa.Column('role_id', sa.String(), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('permission_id', sa.String(), sa.ForeignKey('permissions.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('role_id', 'permission_id'),
    )

    # ---- groups ----
    op.create_table(
        'groups',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default='true'),
        sa.Column('owner_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=False, server_default='{}'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_groups_owner_id', 'groups', ['owner_id'])
    op.create_table(
        'group_members',
        sa.Column('group_id', sa.String(), sa.ForeignKey('groups.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('group_id', 'user_id'),
    )

    # ---- projects ----
    op.create_table(
        'projects',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.Enum(*PROJECT_STATUS, name='projectstatus'), nullable=False, server_default='ACTIVE'),
        sa.Column('visibility', sa.Enum(*PROJECT_VISIBILITY, name='projectvisibility'), nullable=False, server_default='PRIVATE'),
        sa.Column('owner_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('metrics', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_by', sa.String(), nullable=True),
        sa.Column('archive_reason', sa.Text(), nullable=True),
        sa.Column('task_counter', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_projects_key', 'projects', ['key'], unique=True)
    op.create_index('ix_projects_status', 'projects', ['status'])
    op.create_index('ix_projects_owner_id', 'projects', ['owner_id'])
    op.create_index('ix_projects_created_at', 'projects', ['created_at'])

    op.create_table(
        'project_members',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('project_id', sa.String(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', sa.Enum(*PROJECT_ROLE, name='projectrole'), nullable=False, server_default='MEMBER'),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('permissions', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default='true'),
        sa.Column('invited_by', sa.String(), nullable=True),
        sa.Column('invitation_token', sa.String(), nullable=True),
        sa.Column('invitation_expires', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'user_id', name='uq_project_member'),
    )
    op.create_index('ix_project_members_project_id', 'project_members', ['project_id'])
    op.create_index('ix_project_members_user_id', 'project_members', ['user_id'])

    # ---- sprints ----
    op.create_table(
        'sprints',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('project_id', sa.String(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('goal', sa.Text(), nullable=True),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('status', sa.Enum(*SPRINT_STATUS, name='sprintstatus'), nullable=False, server_default='PLANNING'),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('velocity', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('planned_velocity', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('completed_story_points', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('total_story_points', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('burndown_data', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('retrospective', sa.JSON(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_sprints_project_id', 'sprints', ['project_id'])
    op.create_index('ix_sprints_status', 'sprints', ['status'])
    op.create_index('idx_sprint_project_status', 'sprints', ['project_id', 'status'])

    # ---- tasks ----
    op.create_table(
        'tasks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('project_id', sa.String(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sprint_id', sa.String(), sa.ForeignKey('sprints.id', ondelete='SET NULL'), nullable=True),
        sa.Column('parent_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='SET NULL'), nullable=True),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', sa.Enum(*TASK_TYPE, name='tasktype'), nullable=False, server_default='TASK'),
        sa.Column('priority', sa.Enum(*TASK_PRIORITY, name='taskpriority'), nullable=False, server_default='MEDIUM'),
        sa.Column('status', sa.Enum(*TASK_STATUS, name='taskstatus'), nullable=False, server_default='TODO'),
        sa.Column('story_points', sa.Integer(), nullable=True),
        sa.Column('estimated_hours', sa.Float(), nullable=True),
        sa.Column('actual_hours', sa.Float(), nullable=True),
        sa.Column('assignee_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('reporter_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('labels', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('custom_fields', sa.JSON(), nullable=True),
        sa.Column('position', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('blocked_reason', sa.Text(), nullable=True),
        sa.Column('resolution', sa.Text(), nullable=True),
        sa.Column('dependencies', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('watchers', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('activity', sa.JSON(), nullable=False, server_default='[]'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tasks_key', 'tasks', ['key'], unique=True)
    op.create_index('ix_tasks_project_id', 'tasks', ['project_id'])
    op.create_index('ix_tasks_sprint_id', 'tasks', ['sprint_id'])
    op.create_index('ix_tasks_parent_id', 'tasks', ['parent_id'])
    op.create_index('ix_tasks_status', 'tasks', ['status'])
    op.create_index('ix_tasks_assignee_id', 'tasks', ['assignee_id'])
    op.create_index('idx_task_project_status', 'tasks', ['project_id', 'status'])
    op.create_index('idx_task_sprint', 'tasks', ['sprint_id'])

    # ---- comments ----
    op.create_table(
        'comments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('author_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('parent_id', sa.String(), sa.ForeignKey('comments.id', ondelete='SET NULL'), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('mentions', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('edited', sa.Boolean(), nullable=True, server_default='false'),
        sa.Column('edited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('edited_by', sa.String(), nullable=True),
        sa.Column('reactions', sa.JSON(), nullable=False, server_default='[]'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_comments_task_id', 'comments', ['task_id'])
    op.create_index('ix_comments_parent_id', 'comments', ['parent_id'])

    # ---- attachments ----
    op.create_table(
        'attachments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=True),
        sa.Column('comment_id', sa.String(), sa.ForeignKey('comments.id', ondelete='CASCADE'), nullable=True),
        sa.Column('uploaded_by', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('filename', sa.String(), nullable=False),
        sa.Column('original_name', sa.String(), nullable=False),
        sa.Column('mime_type', sa.String(), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('url', sa.String(), nullable=False),
        sa.Column('path', sa.String(), nullable=False),
        sa.Column('thumbnail_url', sa.String(), nullable=True),
        sa.Column('media_metadata', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_attachments_task_id', 'attachments', ['task_id'])
    op.create_index('ix_attachments_comment_id', 'attachments', ['comment_id'])

    # ---- notifications ----
    op.create_table(
        'notifications',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.Enum(*NOTIFICATION_TYPE, name='notificationtype'), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('read', sa.Boolean(), nullable=True, server_default='false'),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('email_sent', sa.Boolean(), nullable=True),
        sa.Column('email_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('push_sent', sa.Boolean(), nullable=True),
        sa.Column('push_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('action_url', sa.String(), nullable=True),
        sa.Column('action_label', sa.String(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_read', 'notifications', ['read'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])

    # ---- activities (append-only) ----
    op.create_table(
        'activities',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('activity_metadata', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('project_id', sa.String(), nullable=True),
        sa.Column('description', sa.String(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_activities_project_id', 'activities', ['project_id'])
    op.create_index('idx_activity_entity', 'activities', ['entity_type', 'entity_id'])
    op.create_index('idx_activity_user_time', 'activities', ['user_id', 'timestamp'])

    # ---- audit_logs (append-only) ----
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('user_name', sa.String(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('old_value', sa.JSON(), nullable=True),
        sa.Column('new_value', sa.JSON(), nullable=True),
        sa.Column('audit_metadata', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('duration', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_audit_user_time', 'audit_logs', ['user_id', 'timestamp'])
    op.create_index('idx_audit_entity', 'audit_logs', ['entity_type', 'entity_id'])
    op.create_index('idx_audit_action_time', 'audit_logs', ['action', 'timestamp'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('activities')
    op.drop_table('notifications')
    op.drop_table('attachments')
    op.drop_table('comments')
    op.drop_table('tasks')
    op.drop_table('sprints')
    op.drop_table('project_members')
    op.drop_table('projects')
    op.drop_table('group_members')
    op.drop_table('groups')
    op.drop_table('role_permissions')
    op.drop_table('user_roles')
    op.drop_table('permissions')
    op.drop_table('roles')
    op.drop_table('users')
    for enum_name in ENUM_TYPES:
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
