# routers/members.py — Company members: listing, search, direct creation, roles, removal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CompanyContext, get_company_context, require_company_role
from database import get_db_session
from models import CompanyRole
import membership_lifecycle
import user_search

router = APIRouter(prefix="/api/v1/companies/{company_id}/members", tags=["Members"])


# --- Schemas ---

class MemberCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    password: str
    role: str = Field(default="member", description="One of: admin, leader, member")
    team_id: Optional[str] = None


class RoleUpdate(BaseModel):
    role: str = Field(..., description="One of: owner, admin, leader, member")


# --- Helpers ---

def member_out(m) -> dict:
    user = m.user
    return {
        "user_id": m.user_id,
        "name": user.name if user else "",
        "email": user.email if user else "",
        "role": m.role.value,
        "is_active": m.is_active,
        "invited_by": m.invited_by,
        "joined_at": m.joined_at.isoformat() if m.joined_at else None,
        "left_at": m.left_at.isoformat() if m.left_at else None,
    }


# ============================================================
# LIST / SEARCH
# ============================================================

@router.get("")
async def list_members(
    include_inactive: bool = Query(default=False),
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    members = await membership_lifecycle.list_members(db, ctx, include_inactive)
    return [member_out(m) for m in members]


@router.get("/search")
async def search_members(
    q: str = Query(default=""),
    limit: int = Query(default=10, ge=1, le=50),
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await user_search.search_members(db, ctx, q, limit)


# ============================================================
# CREATE / ROLE / REMOVE
# ============================================================

@router.post("", status_code=201)
async def create_member(
    data: MemberCreate,
    ctx: CompanyContext = Depends(require_company_role(CompanyRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    """Create an account and add it to the company without an invitation"""
    user, membership = await membership_lifecycle.create_user_directly(
        db, ctx, data.name, data.email, data.password, data.role, data.team_id,
    )
    return {
        "user_id": user.id,
        "name": user.name,
        "email": user.email,
        "role": membership.role.value,
        "is_active": membership.is_active,
        "team_id": data.team_id,
    }


@router.patch("/{user_id}/role")
async def update_member_role(
    user_id: str,
    data: RoleUpdate,
    ctx: CompanyContext = Depends(require_company_role(CompanyRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await membership_lifecycle.update_role(db, ctx, user_id, data.role)
    return {"user_id": user_id, "role": membership.role.value}


@router.delete("/{user_id}")
async def remove_member(
    user_id: str,
    ctx: CompanyContext = Depends(require_company_role(CompanyRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await membership_lifecycle.remove(db, ctx, user_id)
    return {"user_id": user_id, "status": "removed", "left_at": membership.left_at.isoformat()}
