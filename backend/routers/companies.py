# routers/companies.py — Company profile, membership listing and audit trail
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CompanyContext, CurrentUser, get_company_context, get_current_user
from database import get_db_session
import membership_lifecycle

router = APIRouter(prefix="/api/v1/companies", tags=["Companies"])


class CompanyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    domain: Optional[str] = None
    logo_url: Optional[str] = None


def _company_out(c, role: Optional[str] = None) -> dict:
    out = {
        "id": c.id,
        "name": c.name,
        "description": c.description,
        "domain": c.domain,
        "logo_url": c.logo_url,
        "created_by": c.created_by,
        "created_at": c.created_at.isoformat() if c.created_at else None,
    }
    if role is not None:
        out["role"] = role
    return out


@router.get("")
async def list_my_companies(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    rows = await membership_lifecycle.list_companies(db, user.id)
    return [_company_out(c, role.value) for c, role in rows]


@router.get("/{company_id}")
async def get_company(
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    company = await membership_lifecycle.get_company(db, ctx)
    return _company_out(company, ctx.role.value)


@router.patch("/{company_id}")
async def update_company(
    data: CompanyUpdate,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    company = await membership_lifecycle.update_company(db, ctx, data.model_dump(exclude_unset=True))
    return _company_out(company, ctx.role.value)


@router.get("/{company_id}/audit")
async def list_audit_events(
    limit: int = Query(default=100, ge=1, le=500),
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    events = await membership_lifecycle.list_audit(db, ctx, limit)
    return [
        {
            "id": e.id,
            "timestamp": e.timestamp.isoformat() if e.timestamp else None,
            "event_type": e.event_type.value,
            "user_id": e.user_id,
            "resource_type": e.resource_type,
            "resource_id": e.resource_id,
            "details": e.details or {},
        }
        for e in events
    ]
