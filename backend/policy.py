# policy.py — Company role policy
# Pure functions: no database access, safe to call from routers, lifecycle
# modules and tests alike. Every lifecycle operation re-checks these rules
# itself; router-level role gates are only a first filter.

from enum import Enum
from typing import Optional, Any

from models import CompanyRole

# ============================================================
# ROLE HIERARCHY
# ============================================================

ROLE_HIERARCHY = {
    CompanyRole.OWNER: 4,
    CompanyRole.ADMIN: 3,
    CompanyRole.LEADER: 2,
    CompanyRole.MEMBER: 1,
}

# Roles that can be handed out through invitations or direct user creation
ASSIGNABLE_ROLES = (CompanyRole.ADMIN, CompanyRole.LEADER, CompanyRole.MEMBER)


class Action(str, Enum):
    VIEW_COMPANY = "company:view"
    UPDATE_COMPANY = "company:update"
    VIEW_AUDIT = "company:audit"
    INVITE_USER = "users:invite"
    CREATE_USER = "users:create"
    CHANGE_ROLE = "users:role"
    REMOVE_MEMBER = "users:remove"
    RESET_PASSWORD = "users:reset_password"
    CREATE_TEAM = "teams:create"
    MANAGE_ANY_TEAM = "teams:manage"
    CREATE_TAG = "tags:create"
    RESPOND_TAG = "tags:respond"
    SWEEP_DUE_DATES = "tags:sweep"


ACTION_MIN_ROLE = {
    Action.VIEW_COMPANY: CompanyRole.MEMBER,
    Action.UPDATE_COMPANY: CompanyRole.ADMIN,
    Action.VIEW_AUDIT: CompanyRole.ADMIN,
    Action.INVITE_USER: CompanyRole.ADMIN,
    Action.CREATE_USER: CompanyRole.ADMIN,
    Action.CHANGE_ROLE: CompanyRole.ADMIN,
    Action.REMOVE_MEMBER: CompanyRole.ADMIN,
    Action.RESET_PASSWORD: CompanyRole.ADMIN,
    Action.CREATE_TEAM: CompanyRole.MEMBER,
    Action.MANAGE_ANY_TEAM: CompanyRole.ADMIN,
    Action.CREATE_TAG: CompanyRole.MEMBER,
    Action.RESPOND_TAG: CompanyRole.MEMBER,
    Action.SWEEP_DUE_DATES: CompanyRole.ADMIN,
}

# Actions aimed at another member; the actor must also outrank that member's role
TARGETED_ACTIONS = {
    Action.INVITE_USER,
    Action.CREATE_USER,
    Action.CHANGE_ROLE,
    Action.REMOVE_MEMBER,
    Action.RESET_PASSWORD,
}


def parse_role(role: Any) -> Optional[CompanyRole]:
    if role is None:
        return None
    try:
        return CompanyRole(role)
    except ValueError:
        return None


def role_level(role: Any) -> int:
    parsed = parse_role(role)
    return ROLE_HIERARCHY.get(parsed, 0) if parsed else 0


# ============================================================
# CHECKS
# ============================================================

def can_manage_users(role: Any) -> bool:
    """True exactly for admin and owner."""
    return parse_role(role) in (CompanyRole.ADMIN, CompanyRole.OWNER)


def can_manage_role(actor_role: Any, target_role: Any) -> bool:
    """Owner manages every role; admin manages leaders and members only."""
    actor = parse_role(actor_role)
    target = parse_role(target_role)
    if actor is None or target is None:
        return False
    if actor == CompanyRole.OWNER:
        return True
    if actor == CompanyRole.ADMIN:
        return ROLE_HIERARCHY[target] < ROLE_HIERARCHY[CompanyRole.ADMIN]
    return False


def can_perform(actor_role: Any, action: Action, target_role: Any = None) -> bool:
    if role_level(actor_role) < ROLE_HIERARCHY[ACTION_MIN_ROLE[action]]:
        return False
    if action in TARGETED_ACTIONS and target_role is not None:
        return can_manage_role(actor_role, target_role)
    return True


def can_change_role(
    actor_role: Any,
    new_role: Any,
    current_role: Any = None,
    is_self: bool = False,
) -> bool:
    """
    Decide whether `actor_role` may set a member's role to `new_role`.

    Only an owner may grant admin or owner, or touch a member who already
    holds one of those roles. Admins move people between leader and member.
    Nobody may raise their own level.
    """
    if not can_manage_users(actor_role) or parse_role(new_role) is None:
        return False
    if is_self and role_level(new_role) > role_level(actor_role):
        return False
    if not can_manage_role(actor_role, new_role):
        return False
    if current_role is not None and not can_manage_role(actor_role, current_role):
        return False
    return True


def can_edit_task(task: Any, actor_id: str) -> bool:
    """Creator or the directly assigned user. Team assignment grants nothing."""
    if not actor_id:
        return False
    return actor_id == task.created_by or actor_id == task.assigned_to_user_id


def can_manage_team(actor_role: Any, is_team_leader: bool) -> bool:
    return can_perform(actor_role, Action.MANAGE_ANY_TEAM) or bool(is_team_leader)
