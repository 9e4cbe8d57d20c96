# routers/teams.py — Teams and team membership
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CompanyContext, get_company_context
from database import get_db_session
import membership_lifecycle

router = APIRouter(prefix="/api/v1/companies/{company_id}/teams", tags=["Teams"])


# --- Schemas ---

class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class TeamUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None


class TeamMemberAdd(BaseModel):
    user_id: str
    is_leader: bool = False


def _team_out(t, member_count: Optional[int] = None) -> dict:
    out = {
        "id": t.id,
        "company_id": t.company_id,
        "name": t.name,
        "description": t.description,
        "is_active": t.is_active,
        "created_by": t.created_by,
        "created_at": t.created_at.isoformat() if t.created_at else None,
    }
    if member_count is not None:
        out["member_count"] = member_count
    return out


def _team_member_out(tm) -> dict:
    return {
        "user_id": tm.user_id,
        "name": tm.user.name if tm.user else "",
        "email": tm.user.email if tm.user else "",
        "is_leader": tm.is_leader,
        "joined_at": tm.joined_at.isoformat() if tm.joined_at else None,
    }


# ============================================================
# TEAMS
# ============================================================

@router.get("")
async def list_teams(
    include_inactive: bool = Query(default=False),
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    rows = await membership_lifecycle.list_teams(db, ctx, include_inactive)
    return [_team_out(t, count) for t, count in rows]


@router.post("", status_code=201)
async def create_team(
    data: TeamCreate,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    team = await membership_lifecycle.create_team(db, ctx, data.name, data.description)
    return _team_out(team, 1)


@router.get("/{team_id}")
async def get_team(
    team_id: str,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    team = await membership_lifecycle.get_team(db, ctx, team_id)
    members = await membership_lifecycle.list_team_members(db, ctx, team_id)
    out = _team_out(team, len(members))
    out["members"] = [_team_member_out(m) for m in members]
    return out


@router.patch("/{team_id}")
async def update_team(
    team_id: str,
    data: TeamUpdate,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    team = await membership_lifecycle.update_team(db, ctx, team_id, data.model_dump(exclude_unset=True))
    return _team_out(team)


@router.delete("/{team_id}")
async def deactivate_team(
    team_id: str,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    await membership_lifecycle.deactivate_team(db, ctx, team_id)
    return {"status": "deactivated"}


# ============================================================
# TEAM MEMBERS
# ============================================================

@router.post("/{team_id}/members", status_code=201)
async def add_team_member(
    team_id: str,
    data: TeamMemberAdd,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await membership_lifecycle.add_team_member(db, ctx, team_id, data.user_id, data.is_leader)
    return {"team_id": team_id, "user_id": membership.user_id, "is_leader": membership.is_leader}


@router.delete("/{team_id}/members/{user_id}")
async def remove_team_member(
    team_id: str,
    user_id: str,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    await membership_lifecycle.remove_team_member(db, ctx, team_id, user_id)
    return {"status": "removed"}


@router.post("/{team_id}/leave")
async def leave_team(
    team_id: str,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    await membership_lifecycle.leave_team(db, ctx, team_id)
    return {"status": "left"}


@router.post("/{team_id}/members/{user_id}/promote")
async def promote_team_member(
    team_id: str,
    user_id: str,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await membership_lifecycle.promote_to_leader(db, ctx, team_id, user_id)
    return {"team_id": team_id, "user_id": user_id, "is_leader": membership.is_leader}
