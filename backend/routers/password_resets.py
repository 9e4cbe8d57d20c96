# routers/password_resets.py — Admin-issued reset tokens and temporary passwords
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CompanyContext, require_company_role
from database import get_db_session
from models import CompanyRole
import password_resets

router = APIRouter(prefix="/api/v1/companies/{company_id}", tags=["Password Resets"])

require_admin = require_company_role(CompanyRole.ADMIN)


class ResetRequestCreate(BaseModel):
    user_id: str


def _request_out(r, include_token: bool = False) -> dict:
    out = {
        "id": r.id,
        "user_id": r.user_id,
        "requested_by": r.requested_by,
        "expires_at": r.expires_at.isoformat(),
        "used_at": r.used_at.isoformat() if r.used_at else None,
        "created_at": r.created_at.isoformat() if r.created_at else None,
    }
    if include_token:
        out["token"] = r.token
    return out


@router.get("/password-resets")
async def list_password_resets(
    ctx: CompanyContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    return [_request_out(r) for r in await password_resets.list_pending(db, ctx)]


@router.post("/password-resets", status_code=201)
async def create_password_reset(
    data: ResetRequestCreate,
    ctx: CompanyContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Issue a single-use reset token for a member"""
    request = await password_resets.request_reset(db, ctx, data.user_id)
    return _request_out(request, include_token=True)


@router.post("/members/{user_id}/temporary-password")
async def set_temporary_password(
    user_id: str,
    ctx: CompanyContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Assign a generated password and return it once"""
    password = await password_resets.generate_temporary_password(db, ctx, user_id)
    return {"user_id": user_id, "temporary_password": password}
