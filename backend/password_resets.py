"""
Tagflow — Password Reset procedures

Privileged operations an owner or admin runs for another member: issuing a
24-hour reset token, assigning a generated temporary password, and the
public token consumption step.
"""

import os
import string
import secrets
import logging
from datetime import timedelta
from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_audit
from auth import AuthService, CompanyContext, get_active_membership, password_problem
from errors import AuthorizationError, NotFoundError, ResetTokenInvalid, ValidationError
from models import PasswordResetRequest, User, AuditEventType, utcnow, as_utc
from policy import Action, can_perform

logger = logging.getLogger("tagflow.password_resets")

PASSWORD_RESET_TTL_HOURS = int(os.getenv("PASSWORD_RESET_TTL_HOURS", "24"))
TEMPORARY_PASSWORD_LENGTH = 24


def make_temporary_password(length: int = TEMPORARY_PASSWORD_LENGTH) -> str:
    """Random password that always satisfies the password policy."""
    alphabet = string.ascii_letters + string.digits
    while True:
        candidate = "".join(secrets.choice(alphabet) for _ in range(length))
        if (any(c.isupper() for c in candidate)
                and any(c.islower() for c in candidate)
                and any(c.isdigit() for c in candidate)):
            return candidate


async def _authorised_target(db: AsyncSession, ctx: CompanyContext, target_user_id: str):
    membership = await get_active_membership(db, target_user_id, ctx.company_id)
    if not membership:
        raise NotFoundError("User is not a member of this company")
    if not can_perform(ctx.role, Action.RESET_PASSWORD, membership.role):
        raise AuthorizationError("You cannot reset this member's password")
    return membership


async def request_reset(db: AsyncSession, ctx: CompanyContext, target_user_id: str) -> PasswordResetRequest:
    await _authorised_target(db, ctx, target_user_id)
    request = PasswordResetRequest(
        user_id=target_user_id,
        requested_by=ctx.user_id,
        company_id=ctx.company_id,
        expires_at=utcnow() + timedelta(hours=PASSWORD_RESET_TTL_HOURS),
    )
    db.add(request)
    await db.flush()
    record_audit(db, AuditEventType.PASSWORD_RESET_REQUESTED, ctx.user_id, ctx.company_id,
                 "user", target_user_id, {"request_id": request.id})
    await db.commit()
    return request


async def list_pending(db: AsyncSession, ctx: CompanyContext) -> List[PasswordResetRequest]:
    if not can_perform(ctx.role, Action.RESET_PASSWORD):
        raise AuthorizationError("Only admins can view password reset requests")
    result = await db.execute(
        select(PasswordResetRequest)
        .where(
            PasswordResetRequest.company_id == ctx.company_id,
            PasswordResetRequest.used_at.is_(None),
            PasswordResetRequest.expires_at > utcnow(),
        )
        .order_by(PasswordResetRequest.created_at.desc())
    )
    return list(result.scalars().all())


async def consume(db: AsyncSession, token: str, new_password: str) -> User:
    """Set a new password with a reset token. A token works once, within its window."""
    problem = password_problem(new_password)
    if problem:
        raise ValidationError(problem, code="TF-VAL-002")

    result = await db.execute(select(PasswordResetRequest).where(PasswordResetRequest.token == token))
    request = result.scalar_one_or_none()
    if not request or request.used_at is not None or as_utc(request.expires_at) <= utcnow():
        raise ResetTokenInvalid()

    user = await AuthService.admin_set_password(db, request.user_id, new_password)
    request.used_at = utcnow()
    record_audit(db, AuditEventType.PASSWORD_RESET, request.user_id, request.company_id,
                 "user", request.user_id, {"request_id": request.id})
    await db.commit()
    logger.info(f"Password reset completed for user {request.user_id[:8]}")
    return user


async def generate_temporary_password(db: AsyncSession, ctx: CompanyContext, target_user_id: str) -> str:
    await _authorised_target(db, ctx, target_user_id)
    password = make_temporary_password()
    await AuthService.admin_set_password(db, target_user_id, password)
    record_audit(db, AuditEventType.TEMPORARY_PASSWORD_SET, ctx.user_id, ctx.company_id,
                 "user", target_user_id)
    await db.commit()
    return password
