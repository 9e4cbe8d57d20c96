# models.py — Database models for Tagflow
# - UUID primary keys everywhere
# - Companies with one membership row per (user, company), soft-deleted on removal
# - 4-tier company roles (owner, admin, leader, member)
# - Teams, invitations, tags (tasks) with responses and subtasks
# - Per-user notification feed, password reset requests, audit trail

import uuid
import secrets
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, Date, JSON, Boolean, Float,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def new_token():
    return secrets.token_hex(32)


def as_utc(dt):
    """Return an aware UTC datetime. SQLite hands back naive values."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ============================================================
# ENUMS
# ============================================================

class CompanyRole(str, PyEnum):
    OWNER = "owner"
    ADMIN = "admin"
    LEADER = "leader"
    MEMBER = "member"

    @classmethod
    def _missing_(cls, value):
        # "superuser" is the legacy name of the owner role
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "superuser":
                return cls.OWNER
            for role in cls:
                if role.value == lowered:
                    return role
        return None


class TagStatus(str, PyEnum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


class TagPriority(str, PyEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class NotificationType(str, PyEnum):
    TASK_ASSIGNED = "task_assigned"
    TASK_DUE_SOON = "task_due_soon"
    TASK_OVERDUE = "task_overdue"
    TASK_STATUS_CHANGED = "task_status_changed"
    TASK_COMMENT_ADDED = "task_comment_added"
    TEAM_INVITATION = "team_invitation"
    TEAM_MEMBER_ADDED = "team_member_added"
    COMPANY_INVITATION = "company_invitation"


class AuditEventType(str, PyEnum):
    # Auth events
    USER_REGISTER = "auth.user.register"
    USER_LOGIN = "auth.user.login"
    USER_LOGOUT = "auth.user.logout"
    PASSWORD_CHANGED = "auth.password.changed"
    PASSWORD_RESET_REQUESTED = "auth.password.reset_requested"
    PASSWORD_RESET = "auth.password.reset"
    TEMPORARY_PASSWORD_SET = "auth.password.temporary"
    # Company events
    COMPANY_CREATED = "company.created"
    COMPANY_UPDATED = "company.updated"
    MEMBER_ADDED = "company.member.added"
    MEMBER_REMOVED = "company.member.removed"
    MEMBER_ROLE_CHANGED = "company.member.role_changed"
    USER_CREATED = "company.user.created"
    # Invitation events
    INVITATION_CREATED = "invitation.created"
    INVITATION_RESENT = "invitation.resent"
    INVITATION_CANCELLED = "invitation.cancelled"
    INVITATION_ACCEPTED = "invitation.accepted"
    # Team events
    TEAM_CREATED = "team.created"
    TEAM_UPDATED = "team.updated"
    TEAM_DEACTIVATED = "team.deactivated"
    # Tag events
    TAG_DELETED = "tag.deleted"


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False, default="")
    password_hash = Column(String, nullable=False)
    default_company_id = Column(String, nullable=True, index=True)
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    jti = Column(String, unique=True, nullable=False, index=True)  # JWT ID
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)


# ============================================================
# COMPANIES & MEMBERSHIP
# ============================================================

class Company(Base):
    __tablename__ = "companies"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    domain = Column(String, nullable=True)
    logo_url = Column(String, nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class CompanyMembership(Base):
    __tablename__ = "company_memberships"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    company_id = Column(String, ForeignKey("companies.id"), nullable=False, index=True)
    role = Column(SQLEnum(CompanyRole), default=CompanyRole.MEMBER, nullable=False)
    invited_by = Column(String, ForeignKey("users.id"), nullable=True)
    invited_at = Column(DateTime(timezone=True), nullable=True)
    joined_at = Column(DateTime(timezone=True), default=utcnow)
    is_active = Column(Boolean, default=True, nullable=False)
    left_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", foreign_keys=[user_id], lazy="joined")

    __table_args__ = (
        UniqueConstraint("user_id", "company_id", name="uq_membership_user_company"),
        Index("idx_membership_company_active", "company_id", "is_active"),
    )


# ============================================================
# TEAMS
# ============================================================

class Team(Base):
    __tablename__ = "teams"

    id = Column(String, primary_key=True, default=new_uuid)
    company_id = Column(String, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class TeamMembership(Base):
    __tablename__ = "team_memberships"

    id = Column(String, primary_key=True, default=new_uuid)
    team_id = Column(String, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    is_leader = Column(Boolean, default=False, nullable=False)
    joined_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User", lazy="joined")

    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_membership"),
    )


# ============================================================
# INVITATIONS
# ============================================================

class Invitation(Base):
    __tablename__ = "invitations"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, nullable=False, index=True)
    company_id = Column(String, ForeignKey("companies.id"), nullable=False, index=True)
    team_id = Column(String, ForeignKey("teams.id"), nullable=True)
    role = Column(SQLEnum(CompanyRole), default=CompanyRole.MEMBER, nullable=False)
    invited_by = Column(String, ForeignKey("users.id"), nullable=False)
    token = Column(String, unique=True, nullable=False, default=new_token)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    accepted_by = Column(String, ForeignKey("users.id"), nullable=True)

    __table_args__ = (
        Index("idx_invitation_company_email", "company_id", "email"),
    )


# ============================================================
# TAGS (TASKS)
# ============================================================

class Tag(Base):
    __tablename__ = "tags"

    id = Column(String, primary_key=True, default=new_uuid)
    company_id = Column(String, ForeignKey("companies.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    link = Column(String, nullable=True)
    status = Column(SQLEnum(TagStatus), default=TagStatus.PENDING, nullable=False, index=True)
    priority = Column(SQLEnum(TagPriority), default=TagPriority.MEDIUM, nullable=False, index=True)
    assigned_to_user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    assigned_to_team_id = Column(String, ForeignKey("teams.id"), nullable=True, index=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    parent_tag_id = Column(String, ForeignKey("tags.id", ondelete="SET NULL"), nullable=True, index=True)
    due_date = Column(Date, nullable=True)
    estimated_hours = Column(Float, nullable=True)
    actual_hours = Column(Float, default=0.0, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_tag_company_status", "company_id", "status"),
    )


class TagResponse(Base):
    __tablename__ = "tag_responses"

    id = Column(String, primary_key=True, default=new_uuid)
    tag_id = Column(String, ForeignKey("tags.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    comment = Column(Text, nullable=True)
    status_update = Column(SQLEnum(TagStatus), nullable=True)
    time_logged = Column(Float, default=0.0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


# ============================================================
# PASSWORD RESETS
# ============================================================

class PasswordResetRequest(Base):
    __tablename__ = "password_reset_requests"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    requested_by = Column(String, ForeignKey("users.id"), nullable=False)
    company_id = Column(String, ForeignKey("companies.id"), nullable=False, index=True)
    token = Column(String, unique=True, nullable=False, default=new_token)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# NOTIFICATIONS
# ============================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    company_id = Column(String, ForeignKey("companies.id"), nullable=True)
    type = Column(SQLEnum(NotificationType), nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, default=dict)
    read_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_notification_user_read", "user_id", "read_at"),
    )


# ============================================================
# AUDIT LOG
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
    event_type = Column(SQLEnum(AuditEventType), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    company_id = Column(String, nullable=True, index=True)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String, nullable=True)
    request_id = Column(String, index=True, nullable=True)  # X-Request-ID of the writing request

    __table_args__ = (
        Index("idx_audit_company_timestamp", "company_id", "timestamp"),
    )
