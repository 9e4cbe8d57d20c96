# routers/auth.py — Sign-up, sign-in, session and self-service account endpoints
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest,
    get_current_user, CurrentUser, ACCESS_TOKEN_EXPIRE_MINUTES,
)
from audit import record_audit
from database import get_db_session
from errors import ValidationError
from models import User, AuditEventType
import invitation_lifecycle
import password_resets

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


class SwitchCompanyRequest(BaseModel):
    company_id: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class ConsumeResetRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str


class AcceptTokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


def _build_token_response(user_obj: User, session_id: Optional[str] = None) -> TokenResponse:
    token_data = AuthService.token_payload(user_obj, session_id)
    return TokenResponse(
        access_token=AuthService.create_access_token(token_data),
        refresh_token=AuthService.create_refresh_token(token_data),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user_obj.id,
            "email": user_obj.email,
            "name": user_obj.name or "",
            "default_company_id": user_obj.default_company_id,
        },
    )


def _membership_out(m) -> dict:
    return {
        "company_id": m.company_id,
        "user_id": m.user_id,
        "role": m.role.value,
        "is_active": m.is_active,
        "joined_at": m.joined_at.isoformat() if m.joined_at else None,
    }


# ============================================================
# SIGN UP / SIGN IN / SIGN OUT
# ============================================================

@router.post("/register", response_model=TokenResponse)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a user together with their company"""
    user = await AuthService.sign_up(user_data, db)
    return _build_token_response(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    user = await AuthService.sign_in(credentials.email, credentials.password, db, request)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _build_token_response(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Refresh access token using a refresh token"""
    payload = AuthService.verify_token(refresh_req.refresh_token)
    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid token type. Expected refresh token.")

    if await AuthService.is_payload_revoked(payload, db):
        raise HTTPException(status_code=401, detail="Refresh token has been revoked")

    user = await db.get(User, payload.get("sub"))
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return _build_token_response(user, session_id=payload.get("sid"))


@router.post("/logout")
async def logout(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Revoke the current access token"""
    await AuthService.sign_out(user, db)
    return {"status": "logged_out"}


# ============================================================
# SESSION
# ============================================================

@router.get("/me")
async def get_session(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """The signed-in user and every company they belong to"""
    return await AuthService.get_session(user, db)


@router.post("/switch-company", response_model=TokenResponse)
async def switch_company(
    data: SwitchCompanyRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Make another company the default one and reissue tokens"""
    row = await AuthService.switch_company(user, data.company_id, db)
    return _build_token_response(row, user.session_id)


@router.post("/change-password")
async def change_password(
    data: ChangePasswordRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    row = await db.get(User, user.id)
    if not AuthService.verify_password(data.current_password, row.password_hash):
        raise ValidationError("Current password is incorrect")
    await AuthService.admin_set_password(db, user.id, data.new_password)
    record_audit(db, AuditEventType.PASSWORD_CHANGED, user.id, user.default_company_id, "user", user.id)
    await db.commit()
    return {"status": "password_changed"}


@router.post("/password-reset/consume")
async def consume_password_reset(
    data: ConsumeResetRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Set a new password using a reset token issued by a company admin"""
    await password_resets.consume(db, data.token, data.new_password)
    return {"status": "password_reset"}


# ============================================================
# MY INVITATIONS
# ============================================================

@router.get("/invitations")
async def my_invitations(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Pending invitations addressed to the signed-in user"""
    rows = await invitation_lifecycle.list_for_email(db, user.email)
    return [
        {
            "id": inv.id,
            "company_id": inv.company_id,
            "company_name": company_name,
            "team_id": inv.team_id,
            "role": inv.role.value,
            "expires_at": inv.expires_at.isoformat(),
        }
        for inv, company_name in rows
    ]


@router.post("/invitations/{invitation_id}/accept")
async def accept_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await invitation_lifecycle.accept(db, invitation_id, user.id, user.email)
    return _membership_out(membership)


@router.post("/invitations/accept-token")
async def accept_invitation_by_token(
    data: AcceptTokenRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await invitation_lifecycle.accept_by_token(db, data.token, user.id, user.email)
    return _membership_out(membership)
