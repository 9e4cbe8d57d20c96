"""
Tagflow — Invitation Lifecycle

Pending -> Accepted (terminal)
Pending -> Expired  (implicit, once expires_at has passed)
Pending -> Cancelled (row deleted)

Acceptance creates or reactivates the company membership, plus the team
membership when the invitation names a team, in the same transaction that
marks the invitation accepted.
"""

import os
import logging
from datetime import timedelta
from typing import Optional, List, Tuple, Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_audit
from auth import CompanyContext, normalise_email
from errors import (
    AuthorizationError, NotFoundError, ValidationError, DuplicateInvitation,
    InvitationAlreadyAccepted, InvitationExpired, AlreadyMember,
)
from models import (
    Invitation, CompanyMembership, CompanyRole, Company, Team, TeamMembership,
    User, AuditEventType, NotificationType, utcnow, as_utc,
)
from notification_dispatch import dispatch
from policy import Action, ASSIGNABLE_ROLES, can_perform, parse_role

logger = logging.getLogger("tagflow.invitations")

INVITATION_TTL_DAYS = int(os.getenv("INVITATION_TTL_DAYS", "7"))


def is_pending(invitation: Invitation, now=None) -> bool:
    now = now or utcnow()
    return invitation.accepted_at is None and as_utc(invitation.expires_at) > now


def _assignable_role(role: Any) -> CompanyRole:
    parsed = parse_role(role)
    if parsed not in ASSIGNABLE_ROLES:
        raise ValidationError(f"Role must be one of: {', '.join(r.value for r in ASSIGNABLE_ROLES)}")
    return parsed


async def _company_invitation(db: AsyncSession, company_id: str, invitation_id: str) -> Optional[Invitation]:
    result = await db.execute(
        select(Invitation).where(Invitation.id == invitation_id, Invitation.company_id == company_id)
    )
    return result.scalar_one_or_none()


async def _notify_invitee(db: AsyncSession, ctx: CompanyContext, invitation: Invitation) -> None:
    invitee = await db.execute(select(User.id).where(func.lower(User.email) == invitation.email))
    invitee_id = invitee.scalar_one_or_none()
    if not invitee_id:
        return
    company = await db.get(Company, ctx.company_id)
    company_name = company.name if company else "a company"
    if invitation.team_id:
        team = await db.get(Team, invitation.team_id)
        ntype = NotificationType.TEAM_INVITATION
        message = f"{ctx.name or ctx.email} invited you to join {team.name if team else 'a team'} at {company_name}"
    else:
        ntype = NotificationType.COMPANY_INVITATION
        message = f"{ctx.name or ctx.email} invited you to join {company_name}"
    await dispatch(
        db, ctx.company_id, [invitee_id], ntype, "You have been invited", message,
        {
            "invitation_id": invitation.id,
            "company_id": ctx.company_id,
            "team_id": invitation.team_id,
            "role": invitation.role.value,
        },
    )


# ============================================================
# INVITE / RESEND / CANCEL
# ============================================================

async def invite(
    db: AsyncSession,
    ctx: CompanyContext,
    email: str,
    role: Any = CompanyRole.MEMBER,
    team_id: Optional[str] = None,
) -> Invitation:
    email = normalise_email(email)
    if "@" not in email:
        raise ValidationError("A valid email address is required")
    role = _assignable_role(role)
    if not can_perform(ctx.role, Action.INVITE_USER, role):
        raise AuthorizationError(f"Your role cannot invite {role.value}s")

    if team_id:
        team = await db.get(Team, team_id)
        if not team or team.company_id != ctx.company_id or not team.is_active:
            raise NotFoundError("Team not found")

    member = await db.execute(
        select(CompanyMembership.id)
        .join(User, User.id == CompanyMembership.user_id)
        .where(
            func.lower(User.email) == email,
            CompanyMembership.company_id == ctx.company_id,
            CompanyMembership.is_active.is_(True),
        )
    )
    if member.scalar_one_or_none():
        raise AlreadyMember("This user is already a member of the company")

    now = utcnow()
    duplicate = await db.execute(
        select(Invitation.id).where(
            Invitation.company_id == ctx.company_id,
            Invitation.email == email,
            Invitation.accepted_at.is_(None),
            Invitation.expires_at > now,
        )
    )
    if duplicate.first():
        raise DuplicateInvitation()

    invitation = Invitation(
        email=email,
        company_id=ctx.company_id,
        team_id=team_id,
        role=role,
        invited_by=ctx.user_id,
        created_at=now,
        expires_at=now + timedelta(days=INVITATION_TTL_DAYS),
    )
    db.add(invitation)
    await db.flush()
    record_audit(db, AuditEventType.INVITATION_CREATED, ctx.user_id, ctx.company_id,
                 "invitation", invitation.id, {"email": email, "role": role.value, "team_id": team_id})
    await db.commit()
    logger.info(f"Invitation {invitation.id[:8]} created for company {ctx.company_id[:8]}")

    await _notify_invitee(db, ctx, invitation)
    return invitation


async def resend(db: AsyncSession, ctx: CompanyContext, invitation_id: str) -> Invitation:
    """Restart the expiry window of a non-accepted invitation."""
    if not can_perform(ctx.role, Action.INVITE_USER):
        raise AuthorizationError("Only admins can resend invitations")

    invitation = await _company_invitation(db, ctx.company_id, invitation_id)
    if not invitation or invitation.accepted_at is not None:
        raise NotFoundError("Invitation not found")

    now = utcnow()
    if not is_pending(invitation, now):
        # reviving an expired invitation must not create a second outstanding one
        duplicate = await db.execute(
            select(Invitation.id).where(
                Invitation.company_id == ctx.company_id,
                Invitation.email == invitation.email,
                Invitation.id != invitation.id,
                Invitation.accepted_at.is_(None),
                Invitation.expires_at > now,
            )
        )
        if duplicate.first():
            raise DuplicateInvitation()

    previous = as_utc(invitation.expires_at)
    expires_at = now + timedelta(days=INVITATION_TTL_DAYS)
    if expires_at <= previous:
        # clock granularity
        expires_at = previous + timedelta(milliseconds=1)
    invitation.created_at = now
    invitation.expires_at = expires_at
    record_audit(db, AuditEventType.INVITATION_RESENT, ctx.user_id, ctx.company_id,
                 "invitation", invitation.id)
    await db.commit()

    await _notify_invitee(db, ctx, invitation)
    return invitation


async def cancel(db: AsyncSession, ctx: CompanyContext, invitation_id: str) -> bool:
    """Delete a non-accepted invitation. Returns False when there was nothing to cancel."""
    if not can_perform(ctx.role, Action.INVITE_USER):
        raise AuthorizationError("Only admins can cancel invitations")

    invitation = await _company_invitation(db, ctx.company_id, invitation_id)
    if not invitation:
        return False
    if invitation.accepted_at is not None:
        raise NotFoundError("Invitation not found")

    await db.delete(invitation)
    record_audit(db, AuditEventType.INVITATION_CANCELLED, ctx.user_id, ctx.company_id,
                 "invitation", invitation_id, {"email": invitation.email})
    await db.commit()
    return True


# ============================================================
# ACCEPT
# ============================================================

async def _accept(db: AsyncSession, invitation: Invitation, user_id: str, user_email: str) -> CompanyMembership:
    now = utcnow()
    if invitation.accepted_at is not None:
        raise InvitationAlreadyAccepted()
    if as_utc(invitation.expires_at) <= now:
        raise InvitationExpired()
    if normalise_email(user_email) != normalise_email(invitation.email):
        raise AuthorizationError("This invitation was sent to a different email address")

    result = await db.execute(
        select(CompanyMembership).where(
            CompanyMembership.user_id == user_id,
            CompanyMembership.company_id == invitation.company_id,
        )
    )
    membership = result.scalar_one_or_none()
    if membership and membership.is_active:
        raise AlreadyMember("You are already a member of this company")

    if membership:
        membership.is_active = True
        membership.left_at = None
        membership.role = invitation.role
        membership.joined_at = now
    else:
        membership = CompanyMembership(
            user_id=user_id,
            company_id=invitation.company_id,
            role=invitation.role,
            joined_at=now,
            is_active=True,
        )
        db.add(membership)
    membership.invited_by = invitation.invited_by
    membership.invited_at = invitation.created_at

    if invitation.team_id:
        existing = await db.execute(
            select(TeamMembership.id).where(
                TeamMembership.team_id == invitation.team_id,
                TeamMembership.user_id == user_id,
            )
        )
        if not existing.scalar_one_or_none():
            db.add(TeamMembership(
                team_id=invitation.team_id,
                user_id=user_id,
                is_leader=invitation.role == CompanyRole.LEADER,
                joined_at=now,
            ))

    invitation.accepted_at = now
    invitation.accepted_by = user_id

    user = await db.get(User, user_id)
    if user and not user.default_company_id:
        user.default_company_id = invitation.company_id

    record_audit(db, AuditEventType.INVITATION_ACCEPTED, user_id, invitation.company_id,
                 "invitation", invitation.id, {"role": invitation.role.value})
    await db.commit()
    logger.info(f"Invitation {invitation.id[:8]} accepted by user {user_id[:8]}")
    return membership


async def accept(db: AsyncSession, invitation_id: str, user_id: str, user_email: str) -> CompanyMembership:
    invitation = await db.get(Invitation, invitation_id)
    if not invitation:
        raise NotFoundError("Invitation not found")
    return await _accept(db, invitation, user_id, user_email)


async def accept_by_token(db: AsyncSession, token: str, user_id: str, user_email: str) -> CompanyMembership:
    result = await db.execute(select(Invitation).where(Invitation.token == token))
    invitation = result.scalar_one_or_none()
    if not invitation:
        raise NotFoundError("Invitation not found")
    return await _accept(db, invitation, user_id, user_email)


# ============================================================
# LISTING
# ============================================================

async def list_pending(db: AsyncSession, ctx: CompanyContext) -> List[Invitation]:
    if not can_perform(ctx.role, Action.INVITE_USER):
        raise AuthorizationError("Only admins can view pending invitations")
    result = await db.execute(
        select(Invitation)
        .where(
            Invitation.company_id == ctx.company_id,
            Invitation.accepted_at.is_(None),
            Invitation.expires_at > utcnow(),
        )
        .order_by(Invitation.created_at.desc())
    )
    return list(result.scalars().all())


async def list_for_email(db: AsyncSession, email: str) -> List[Tuple[Invitation, str]]:
    """Pending invitations addressed to one email, with the inviting company's name."""
    result = await db.execute(
        select(Invitation, Company.name)
        .join(Company, Company.id == Invitation.company_id)
        .where(
            Invitation.email == normalise_email(email),
            Invitation.accepted_at.is_(None),
            Invitation.expires_at > utcnow(),
        )
        .order_by(Invitation.created_at.desc())
    )
    return [(inv, name) for inv, name in result.all()]
