"""
Tagflow — Membership Lifecycle

Company membership (role changes, soft removal, direct user creation),
company profile, and team membership.

Direct user creation is two steps: the identity is created and committed
first, then the membership rows. A failure in the second step leaves the
identity in place without a membership; the error is logged with the
orphaned user id and re-raised.
"""

import logging
from typing import Optional, List, Tuple, Any, Dict

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_audit
from auth import AuthService, CompanyContext, get_active_membership
from errors import (
    AuthorizationError, ConflictError, NotFoundError, ValidationError, AlreadyMember,
)
from models import (
    Company, CompanyMembership, CompanyRole, Team, TeamMembership, User,
    AuditLog, AuditEventType, NotificationType, new_uuid, utcnow,
)
from notification_dispatch import dispatch
from policy import (
    Action, ASSIGNABLE_ROLES, can_perform, can_change_role, can_manage_team, parse_role,
)

logger = logging.getLogger("tagflow.members")

COMPANY_FIELDS = ("name", "description", "domain", "logo_url")


async def _require_membership(db: AsyncSession, company_id: str, user_id: str) -> CompanyMembership:
    membership = await get_active_membership(db, user_id, company_id)
    if not membership:
        raise NotFoundError("User is not a member of this company")
    return membership


# ============================================================
# COMPANY
# ============================================================

async def list_companies(db: AsyncSession, user_id: str) -> List[Tuple[Company, CompanyRole]]:
    result = await db.execute(
        select(Company, CompanyMembership.role)
        .join(CompanyMembership, CompanyMembership.company_id == Company.id)
        .where(CompanyMembership.user_id == user_id, CompanyMembership.is_active.is_(True))
        .order_by(Company.name)
    )
    return [(company, role) for company, role in result.all()]


async def get_company(db: AsyncSession, ctx: CompanyContext) -> Company:
    company = await db.get(Company, ctx.company_id)
    if not company:
        raise NotFoundError("Company not found")
    return company


async def update_company(db: AsyncSession, ctx: CompanyContext, changes: Dict[str, Any]) -> Company:
    unknown = set(changes) - set(COMPANY_FIELDS)
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
    if "name" in changes and not (changes["name"] or "").strip():
        raise ValidationError("Company name is required")
    if not can_perform(ctx.role, Action.UPDATE_COMPANY):
        raise AuthorizationError("Only admins can update the company profile")

    company = await get_company(db, ctx)
    for key, value in changes.items():
        setattr(company, key, value.strip() if isinstance(value, str) else value)
    record_audit(db, AuditEventType.COMPANY_UPDATED, ctx.user_id, ctx.company_id,
                 "company", company.id, {"fields": sorted(changes)})
    await db.commit()
    await db.refresh(company)
    return company


async def list_audit(db: AsyncSession, ctx: CompanyContext, limit: int = 100) -> List[AuditLog]:
    if not can_perform(ctx.role, Action.VIEW_AUDIT):
        raise AuthorizationError("Only admins can view the audit trail")
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.company_id == ctx.company_id)
        .order_by(AuditLog.timestamp.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# ============================================================
# MEMBERS
# ============================================================

async def list_members(db: AsyncSession, ctx: CompanyContext, include_inactive: bool = False) -> List[CompanyMembership]:
    query = select(CompanyMembership).where(CompanyMembership.company_id == ctx.company_id)
    if not include_inactive:
        query = query.where(CompanyMembership.is_active.is_(True))
    result = await db.execute(query.order_by(CompanyMembership.joined_at))
    return list(result.scalars().all())


async def update_role(db: AsyncSession, ctx: CompanyContext, user_id: str, new_role: Any) -> CompanyMembership:
    role = parse_role(new_role)
    if role is None:
        raise ValidationError(f"Role must be one of: {', '.join(r.value for r in CompanyRole)}")

    membership = await _require_membership(db, ctx.company_id, user_id)
    is_self = user_id == ctx.user_id
    if not can_change_role(ctx.role, role, membership.role, is_self=is_self):
        raise AuthorizationError("You cannot assign this role")

    previous = membership.role
    if previous == CompanyRole.OWNER and role != CompanyRole.OWNER:
        owners = await db.execute(
            select(func.count(CompanyMembership.id)).where(
                CompanyMembership.company_id == ctx.company_id,
                CompanyMembership.role == CompanyRole.OWNER,
                CompanyMembership.is_active.is_(True),
            )
        )
        if (owners.scalar() or 0) <= 1:
            raise ConflictError("A company must keep at least one owner")

    membership.role = role
    record_audit(db, AuditEventType.MEMBER_ROLE_CHANGED, ctx.user_id, ctx.company_id,
                 "user", user_id, {"from": previous.value, "to": role.value})
    await db.commit()
    logger.info(f"Role of {user_id[:8]} in {ctx.company_id[:8]} changed {previous.value} -> {role.value}")
    return membership


async def remove(db: AsyncSession, ctx: CompanyContext, user_id: str) -> CompanyMembership:
    """Soft-delete a membership. Tags and team rows referencing the user are left alone."""
    if user_id == ctx.user_id:
        raise ValidationError("You cannot remove yourself from the company")
    membership = await _require_membership(db, ctx.company_id, user_id)
    if not can_perform(ctx.role, Action.REMOVE_MEMBER, membership.role):
        raise AuthorizationError("You cannot remove this member")

    membership.is_active = False
    membership.left_at = utcnow()
    record_audit(db, AuditEventType.MEMBER_REMOVED, ctx.user_id, ctx.company_id,
                 "user", user_id, {"role": membership.role.value})
    await db.commit()
    return membership


async def _attach_new_user(
    db: AsyncSession,
    ctx: CompanyContext,
    user_id: str,
    role: CompanyRole,
    team_id: Optional[str],
) -> CompanyMembership:
    now = utcnow()
    membership = CompanyMembership(
        user_id=user_id,
        company_id=ctx.company_id,
        role=role,
        invited_by=ctx.user_id,
        invited_at=now,
        joined_at=now,
        is_active=True,
    )
    db.add(membership)
    if team_id:
        db.add(TeamMembership(
            team_id=team_id,
            user_id=user_id,
            is_leader=role == CompanyRole.LEADER,
            joined_at=now,
        ))
    record_audit(db, AuditEventType.USER_CREATED, ctx.user_id, ctx.company_id,
                 "user", user_id, {"role": role.value, "team_id": team_id})
    await db.commit()
    return membership


async def create_user_directly(
    db: AsyncSession,
    ctx: CompanyContext,
    name: str,
    email: str,
    password: str,
    role: Any = CompanyRole.MEMBER,
    team_id: Optional[str] = None,
) -> Tuple[User, CompanyMembership]:
    parsed = parse_role(role)
    if parsed not in ASSIGNABLE_ROLES:
        raise ValidationError(f"Role must be one of: {', '.join(r.value for r in ASSIGNABLE_ROLES)}")
    if not (name or "").strip():
        raise ValidationError("Name is required")
    if not can_perform(ctx.role, Action.CREATE_USER, parsed):
        raise AuthorizationError(f"Your role cannot create {parsed.value}s")
    if team_id:
        team = await db.get(Team, team_id)
        if not team or team.company_id != ctx.company_id or not team.is_active:
            raise NotFoundError("Team not found")

    user = await AuthService.admin_create_user(db, email, password, name, default_company_id=ctx.company_id)
    user_id = user.id
    try:
        membership = await _attach_new_user(db, ctx, user_id, parsed, team_id)
    except SQLAlchemyError:
        await db.rollback()
        logger.error(
            f"User {user_id} was created but could not be added to company {ctx.company_id}",
            exc_info=True,
        )
        raise
    logger.info(f"User {user_id[:8]} created directly in company {ctx.company_id[:8]}")
    return user, membership


# ============================================================
# TEAMS
# ============================================================

async def _get_team(db: AsyncSession, ctx: CompanyContext, team_id: str, active_only: bool = True) -> Team:
    team = await db.get(Team, team_id)
    if not team or team.company_id != ctx.company_id or (active_only and not team.is_active):
        raise NotFoundError("Team not found")
    return team


async def _team_membership(db: AsyncSession, team_id: str, user_id: str) -> Optional[TeamMembership]:
    result = await db.execute(
        select(TeamMembership).where(TeamMembership.team_id == team_id, TeamMembership.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def _require_team_manager(db: AsyncSession, ctx: CompanyContext, team_id: str) -> None:
    own = await _team_membership(db, team_id, ctx.user_id)
    if not can_manage_team(ctx.role, bool(own and own.is_leader)):
        raise AuthorizationError("Only team leaders and company admins can manage this team")


async def create_team(db: AsyncSession, ctx: CompanyContext, name: str, description: Optional[str] = None) -> Team:
    """Create a team; the creator becomes its first leader."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Team name is required")
    if not can_perform(ctx.role, Action.CREATE_TEAM):
        raise AuthorizationError("Your role cannot create teams")

    team = Team(id=new_uuid(), company_id=ctx.company_id, name=name,
                description=description, created_by=ctx.user_id)
    db.add(team)
    await db.flush()
    db.add(TeamMembership(team_id=team.id, user_id=ctx.user_id, is_leader=True))
    record_audit(db, AuditEventType.TEAM_CREATED, ctx.user_id, ctx.company_id, "team", team.id, {"name": name})
    await db.commit()
    await db.refresh(team)
    return team


async def list_teams(db: AsyncSession, ctx: CompanyContext, include_inactive: bool = False) -> List[Tuple[Team, int]]:
    counts = (
        select(TeamMembership.team_id, func.count(TeamMembership.id).label("member_count"))
        .group_by(TeamMembership.team_id)
        .subquery()
    )
    query = (
        select(Team, func.coalesce(counts.c.member_count, 0))
        .outerjoin(counts, counts.c.team_id == Team.id)
        .where(Team.company_id == ctx.company_id)
    )
    if not include_inactive:
        query = query.where(Team.is_active.is_(True))
    result = await db.execute(query.order_by(Team.name))
    return [(team, count) for team, count in result.all()]


async def get_team(db: AsyncSession, ctx: CompanyContext, team_id: str) -> Team:
    return await _get_team(db, ctx, team_id, active_only=False)


async def list_team_members(db: AsyncSession, ctx: CompanyContext, team_id: str) -> List[TeamMembership]:
    await _get_team(db, ctx, team_id, active_only=False)
    result = await db.execute(
        select(TeamMembership)
        .where(TeamMembership.team_id == team_id)
        .order_by(TeamMembership.is_leader.desc(), TeamMembership.joined_at)
    )
    return list(result.scalars().all())


async def update_team(db: AsyncSession, ctx: CompanyContext, team_id: str, changes: Dict[str, Any]) -> Team:
    unknown = set(changes) - {"name", "description"}
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
    if "name" in changes and not (changes["name"] or "").strip():
        raise ValidationError("Team name is required")
    team = await _get_team(db, ctx, team_id)
    await _require_team_manager(db, ctx, team_id)

    for key, value in changes.items():
        setattr(team, key, value.strip() if isinstance(value, str) else value)
    record_audit(db, AuditEventType.TEAM_UPDATED, ctx.user_id, ctx.company_id, "team", team_id,
                 {"fields": sorted(changes)})
    await db.commit()
    await db.refresh(team)
    return team


async def deactivate_team(db: AsyncSession, ctx: CompanyContext, team_id: str) -> Team:
    if not can_perform(ctx.role, Action.MANAGE_ANY_TEAM):
        raise AuthorizationError("Only company admins can delete teams")
    team = await _get_team(db, ctx, team_id)
    team.is_active = False
    record_audit(db, AuditEventType.TEAM_DEACTIVATED, ctx.user_id, ctx.company_id, "team", team_id)
    await db.commit()
    return team


async def add_team_member(
    db: AsyncSession,
    ctx: CompanyContext,
    team_id: str,
    user_id: str,
    is_leader: bool = False,
) -> TeamMembership:
    team = await _get_team(db, ctx, team_id)
    await _require_team_manager(db, ctx, team_id)
    await _require_membership(db, ctx.company_id, user_id)
    if await _team_membership(db, team_id, user_id):
        raise AlreadyMember("User is already in this team")

    membership = TeamMembership(team_id=team_id, user_id=user_id, is_leader=is_leader)
    db.add(membership)
    await db.commit()

    await dispatch(
        db, ctx.company_id, [user_id], NotificationType.TEAM_MEMBER_ADDED,
        "Added to team", f"{ctx.name or ctx.email} added you to {team.name}",
        {"team_id": team_id, "team_name": team.name},
        exclude_user_id=ctx.user_id,
    )
    return membership


async def remove_team_member(db: AsyncSession, ctx: CompanyContext, team_id: str, user_id: str) -> None:
    await _get_team(db, ctx, team_id, active_only=False)
    if user_id != ctx.user_id:
        await _require_team_manager(db, ctx, team_id)
    membership = await _team_membership(db, team_id, user_id)
    if not membership:
        raise NotFoundError("User is not in this team")
    await db.delete(membership)
    await db.commit()


async def leave_team(db: AsyncSession, ctx: CompanyContext, team_id: str) -> None:
    await remove_team_member(db, ctx, team_id, ctx.user_id)


async def promote_to_leader(db: AsyncSession, ctx: CompanyContext, team_id: str, user_id: str) -> TeamMembership:
    await _get_team(db, ctx, team_id)
    await _require_team_manager(db, ctx, team_id)
    membership = await _team_membership(db, team_id, user_id)
    if not membership:
        raise NotFoundError("User is not in this team")
    membership.is_leader = True
    await db.commit()
    return membership
