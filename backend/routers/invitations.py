# routers/invitations.py — Company invitations: invite, list, resend, cancel
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CompanyContext, get_company_context
from database import get_db_session
import invitation_lifecycle

router = APIRouter(prefix="/api/v1/companies/{company_id}/invitations", tags=["Invitations"])


class InvitationCreate(BaseModel):
    email: EmailStr
    role: str = Field(default="member", description="One of: admin, leader, member")
    team_id: Optional[str] = None


def _invitation_out(inv, include_token: bool = False) -> dict:
    out = {
        "id": inv.id,
        "email": inv.email,
        "company_id": inv.company_id,
        "team_id": inv.team_id,
        "role": inv.role.value,
        "invited_by": inv.invited_by,
        "created_at": inv.created_at.isoformat() if inv.created_at else None,
        "expires_at": inv.expires_at.isoformat(),
        "accepted_at": inv.accepted_at.isoformat() if inv.accepted_at else None,
        "is_pending": invitation_lifecycle.is_pending(inv),
    }
    if include_token:
        out["token"] = inv.token
    return out


@router.post("", status_code=201)
async def create_invitation(
    data: InvitationCreate,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    invitation = await invitation_lifecycle.invite(db, ctx, data.email, data.role, data.team_id)
    return _invitation_out(invitation, include_token=True)


@router.get("")
async def list_invitations(
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    return [_invitation_out(inv) for inv in await invitation_lifecycle.list_pending(db, ctx)]


@router.post("/{invitation_id}/resend")
async def resend_invitation(
    invitation_id: str,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    invitation = await invitation_lifecycle.resend(db, ctx, invitation_id)
    return _invitation_out(invitation)


@router.delete("/{invitation_id}")
async def cancel_invitation(
    invitation_id: str,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    cancelled = await invitation_lifecycle.cancel(db, ctx, invitation_id)
    return {"status": "cancelled" if cancelled else "not_found"}
