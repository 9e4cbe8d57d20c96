"""Initial Tagflow schema: identities, companies, teams, invitations, tags, notifications

Revision ID: a1c4e7f20b31
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates 12 tables:
- users, revoked_tokens (Identity and sign-out)
- companies, company_memberships (Tenancy, one membership row per user and company)
- teams, team_memberships
- invitations (7-day pending window, unique token)
- tags, tag_responses (Tasks with subtasks, responses and logged hours)
- password_reset_requests
- notifications (Per-user feed with expiry)
- audit_logs
"""
from alembic import op
import sqlalchemy as sa

revision = 'a1c4e7f20b31'
down_revision = None
branch_labels = None
depends_on = None

company_role = sa.Enum('OWNER', 'ADMIN', 'LEADER', 'MEMBER', name='companyrole')
tag_status = sa.Enum('PENDING', 'ACCEPTED', 'IN_PROGRESS', 'COMPLETED', 'REJECTED', name='tagstatus')
tag_priority = sa.Enum('LOW', 'MEDIUM', 'HIGH', 'CRITICAL', name='tagpriority')
notification_type = sa.Enum(
    'TASK_ASSIGNED', 'TASK_DUE_SOON', 'TASK_OVERDUE', 'TASK_STATUS_CHANGED', 'TASK_COMMENT_ADDED',
    'TEAM_INVITATION', 'TEAM_MEMBER_ADDED', 'COMPANY_INVITATION',
    name='notificationtype',
)
audit_event_type = sa.Enum(
    'USER_REGISTER', 'USER_LOGIN', 'USER_LOGOUT', 'PASSWORD_CHANGED', 'PASSWORD_RESET_REQUESTED',
    'PASSWORD_RESET', 'TEMPORARY_PASSWORD_SET', 'COMPANY_CREATED', 'COMPANY_UPDATED', 'MEMBER_ADDED',
    'MEMBER_REMOVED', 'MEMBER_ROLE_CHANGED', 'USER_CREATED', 'INVITATION_CREATED', 'INVITATION_RESENT',
    'INVITATION_CANCELLED', 'INVITATION_ACCEPTED', 'TEAM_CREATED', 'TEAM_UPDATED', 'TEAM_DEACTIVATED',
    'TAG_DELETED',
    name='auditeventtype',
)


def upgrade() -> None:
    # ---- users ----
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('default_company_id', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_default_company_id', 'users', ['default_company_id'])
    op.create_index('ix_users_is_active', 'users', ['is_active'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])

    # ---- revoked_tokens ----
    op.create_table(
        'revoked_tokens',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('jti', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True)),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_revoked_tokens_jti', 'revoked_tokens', ['jti'], unique=True)

    # ---- companies ----
    op.create_table(
        'companies',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('domain', sa.String(), nullable=True),
        sa.Column('logo_url', sa.String(), nullable=True),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_companies_created_at', 'companies', ['created_at'])

    # ---- company_memberships ----
    op.create_table(
        'company_memberships',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('company_id', sa.String(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('role', company_role, nullable=False),
        sa.Column('invited_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('invited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('joined_at', sa.DateTime(timezone=True)),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('left_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'company_id', name='uq_membership_user_company'),
    )
    op.create_index('ix_company_memberships_user_id', 'company_memberships', ['user_id'])
    op.create_index('ix_company_memberships_company_id', 'company_memberships', ['company_id'])
    op.create_index('idx_membership_company_active', 'company_memberships', ['company_id', 'is_active'])

    # ---- teams ----
    op.create_table(
        'teams',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('company_id', sa.String(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_teams_company_id', 'teams', ['company_id'])
    op.create_index('ix_teams_created_at', 'teams', ['created_at'])

    # ---- team_memberships ----
    op.create_table(
        'team_memberships',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('team_id', sa.String(), sa.ForeignKey('teams.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('is_leader', sa.Boolean(), nullable=False),
        sa.Column('joined_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('team_id', 'user_id', name='uq_team_membership'),
    )
    op.create_index('ix_team_memberships_team_id', 'team_memberships', ['team_id'])
    op.create_index('ix_team_memberships_user_id', 'team_memberships', ['user_id'])

    # ---- invitations ----
    op.create_table(
        'invitations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('company_id', sa.String(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('team_id', sa.String(), sa.ForeignKey('teams.id'), nullable=True),
        sa.Column('role', company_role, nullable=False),
        sa.Column('invited_by', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('token', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('accepted_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token'),
    )
    op.create_index('ix_invitations_email', 'invitations', ['email'])
    op.create_index('ix_invitations_company_id', 'invitations', ['company_id'])
    op.create_index('ix_invitations_created_at', 'invitations', ['created_at'])
    op.create_index('idx_invitation_company_email', 'invitations', ['company_id', 'email'])

    # ---- tags ----
    op.create_table(
        'tags',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('company_id', sa.String(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('link', sa.String(), nullable=True),
        sa.Column('status', tag_status, nullable=False),
        sa.Column('priority', tag_priority, nullable=False),
        sa.Column('assigned_to_user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('assigned_to_team_id', sa.String(), sa.ForeignKey('teams.id'), nullable=True),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('parent_tag_id', sa.String(), sa.ForeignKey('tags.id', ondelete='SET NULL'), nullable=True),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('estimated_hours', sa.Float(), nullable=True),
        sa.Column('actual_hours', sa.Float(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tags_company_id', 'tags', ['company_id'])
    op.create_index('ix_tags_status', 'tags', ['status'])
    op.create_index('ix_tags_priority', 'tags', ['priority'])
    op.create_index('ix_tags_assigned_to_user_id', 'tags', ['assigned_to_user_id'])
    op.create_index('ix_tags_assigned_to_team_id', 'tags', ['assigned_to_team_id'])
    op.create_index('ix_tags_created_by', 'tags', ['created_by'])
    op.create_index('ix_tags_parent_tag_id', 'tags', ['parent_tag_id'])
    op.create_index('ix_tags_created_at', 'tags', ['created_at'])
    op.create_index('idx_tag_company_status', 'tags', ['company_id', 'status'])

    # ---- tag_responses ----
    op.create_table(
        'tag_responses',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tag_id', sa.String(), sa.ForeignKey('tags.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        sa.Column('status_update', tag_status, nullable=True),
        sa.Column('time_logged', sa.Float(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tag_responses_tag_id', 'tag_responses', ['tag_id'])
    op.create_index('ix_tag_responses_created_at', 'tag_responses', ['created_at'])

    # ---- password_reset_requests ----
    op.create_table(
        'password_reset_requests',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('requested_by', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('company_id', sa.String(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('token', sa.String(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token'),
    )
    op.create_index('ix_password_reset_requests_user_id', 'password_reset_requests', ['user_id'])
    op.create_index('ix_password_reset_requests_company_id', 'password_reset_requests', ['company_id'])

    # ---- notifications ----
    op.create_table(
        'notifications',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('company_id', sa.String(), sa.ForeignKey('companies.id'), nullable=True),
        sa.Column('type', notification_type, nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('data', sa.JSON()),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_type', 'notifications', ['type'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])
    op.create_index('idx_notification_user_read', 'notifications', ['user_id', 'read_at'])

    # ---- audit_logs ----
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True)),
        sa.Column('event_type', audit_event_type, nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('company_id', sa.String(), nullable=True),
        sa.Column('resource_type', sa.String(), nullable=True),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_company_id', 'audit_logs', ['company_id'])
    op.create_index('ix_audit_logs_request_id', 'audit_logs', ['request_id'])
    op.create_index('idx_audit_company_timestamp', 'audit_logs', ['company_id', 'timestamp'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('notifications')
    op.drop_table('password_reset_requests')
    op.drop_table('tag_responses')
    op.drop_table('tags')
    op.drop_table('invitations')
    op.drop_table('team_memberships')
    op.drop_table('teams')
    op.drop_table('company_memberships')
    op.drop_table('companies')
    op.drop_table('revoked_tokens')
    op.drop_table('users')
    for enum in (audit_event_type, notification_type, tag_priority, tag_status, company_role):
        enum.drop(op.get_bind(), checkfirst=True)
