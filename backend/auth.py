# auth.py — Authentication boundary and company context for Tagflow
# Features:
# - Secure JWT with JTI for revocation (sign-out)
# - Password policy enforcement
# - Brute force protection on sign-in
# - Sign-up creates user, company and owner membership in one transaction
# - Administrative identity creation and password assignment
# - Explicit CompanyContext resolved per request from the membership table

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_audit
from database import get_db_session
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from models import (
    User, Company, CompanyMembership, CompanyRole, AuditEventType,
    RevokedToken, new_uuid, utcnow,
)
from policy import role_level

logger = logging.getLogger("tagflow.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
MIN_PASSWORD_LENGTH = int(os.getenv("MIN_PASSWORD_LENGTH", "12"))
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

security = HTTPBearer()

# In-memory brute force tracker (per process)
_login_attempts: Dict[str, list] = defaultdict(list)


def password_problem(password: str) -> Optional[str]:
    """Return why a password breaks the policy, or None when it is acceptable."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if not any(c.isupper() for c in password):
        return "Password must contain at least one uppercase letter"
    if not any(c.isdigit() for c in password):
        return "Password must contain at least one digit"
    return None


def normalise_email(email: str) -> str:
    return (email or "").strip().lower()


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    email: EmailStr
    password: str
    name: str = Field(..., min_length=1, max_length=200)
    company_name: str = Field(..., min_length=1, max_length=200)
    company_description: Optional[str] = None

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        problem = password_problem(v)
        if problem:
            raise ValueError(problem)
        return v


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class RefreshRequest(BaseModel):
    refresh_token: str


class CurrentUser(BaseModel):
    id: str
    email: str
    name: str
    default_company_id: Optional[str] = None
    is_active: bool
    token_jti: Optional[str] = None
    session_id: Optional[str] = None
    token_expires_at: Optional[datetime] = None


class CompanyContext(BaseModel):
    """The acting user inside one company. Passed explicitly to every lifecycle operation."""
    user_id: str
    company_id: str
    role: CompanyRole
    email: str = ""
    name: str = ""


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Identity store operations: sign-up, sign-in, sign-out, session and admin calls"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def token_payload(user: User, session_id: Optional[str] = None) -> Dict[str, Any]:
        """Claims shared by the access and refresh tokens of one sign-in session (`sid`)."""
        return {
            "sub": user.id,
            "email": user.email,
            "company_id": user.default_company_id,
            "sid": session_id or new_uuid(),
        }

    @staticmethod
    def _check_brute_force(email: str) -> None:
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.",
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    async def get_user_by_email(email: str, db: AsyncSession) -> Optional[User]:
        stmt = select(User).where(func.lower(User.email) == normalise_email(email))
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def sign_up(data: UserRegister, db: AsyncSession) -> User:
        """Create the user, their company and the owner membership in one transaction."""
        email = normalise_email(data.email)
        if await AuthService.get_user_by_email(email, db):
            raise ConflictError("An account with this email already exists")

        user = User(
            id=new_uuid(),
            email=email,
            name=data.name.strip(),
            password_hash=AuthService.hash_password(data.password),
            is_active=True,
        )
        db.add(user)
        await db.flush()

        company = Company(
            id=new_uuid(),
            name=data.company_name.strip(),
            description=data.company_description,
            created_by=user.id,
        )
        db.add(company)
        await db.flush()

        now = utcnow()
        db.add(CompanyMembership(
            user_id=user.id,
            company_id=company.id,
            role=CompanyRole.OWNER,
            invited_at=now,
            joined_at=now,
            is_active=True,
        ))
        user.default_company_id = company.id

        record_audit(db, AuditEventType.USER_REGISTER, user.id, company.id, "user", user.id)
        record_audit(db, AuditEventType.COMPANY_CREATED, user.id, company.id, "company", company.id,
                     {"name": company.name})
        await db.commit()
        await db.refresh(user)
        logger.info(f"Registered user {user.id[:8]} with company {company.id[:8]}")
        return user

    @staticmethod
    async def sign_in(email: str, password: str, db: AsyncSession, request: Optional[Request] = None) -> Optional[User]:
        email = normalise_email(email)
        AuthService._check_brute_force(email)

        user = await AuthService.get_user_by_email(email, db)
        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(email)
            return None

        if not user.is_active:
            return None

        AuthService._clear_attempts(email)

        user.last_login_at = utcnow()
        record_audit(
            db, AuditEventType.USER_LOGIN, user.id, user.default_company_id, "user", user.id,
            ip_address=request.client.host if request and request.client else None,
        )
        await db.commit()
        return user

    @staticmethod
    async def sign_out(user: CurrentUser, db: AsyncSession) -> None:
        """Revoke the access token and its session, which also kills the session's refresh tokens."""
        if user.token_jti:
            expires_at = user.token_expires_at or (utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
            db.add(RevokedToken(jti=user.token_jti, user_id=user.id, expires_at=expires_at))
        if user.session_id:
            db.add(RevokedToken(
                jti=user.session_id,
                user_id=user.id,
                expires_at=utcnow() + timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS),
            ))
        record_audit(db, AuditEventType.USER_LOGOUT, user.id, user.default_company_id, "user", user.id)
        await db.commit()

    @staticmethod
    async def get_session(user: CurrentUser, db: AsyncSession) -> Dict[str, Any]:
        """The signed-in user with every company they actively belong to."""
        stmt = (
            select(Company, CompanyMembership.role)
            .join(CompanyMembership, CompanyMembership.company_id == Company.id)
            .where(CompanyMembership.user_id == user.id, CompanyMembership.is_active.is_(True))
            .order_by(Company.name)
        )
        rows = (await db.execute(stmt)).all()
        return {
            "user": {
                "id": user.id,
                "email": user.email,
                "name": user.name,
                "default_company_id": user.default_company_id,
            },
            "companies": [
                {"id": c.id, "name": c.name, "role": CompanyRole(role).value}
                for c, role in rows
            ],
        }

    @staticmethod
    async def admin_create_user(
        db: AsyncSession,
        email: str,
        password: str,
        name: str,
        default_company_id: Optional[str] = None,
    ) -> User:
        """Create an identity on behalf of an administrator. Commits on its own."""
        problem = password_problem(password)
        if problem:
            raise ValidationError(problem, code="TF-VAL-002")
        email = normalise_email(email)
        if await AuthService.get_user_by_email(email, db):
            raise ConflictError("An account with this email already exists")

        user = User(
            id=new_uuid(),
            email=email,
            name=name.strip(),
            password_hash=AuthService.hash_password(password),
            default_company_id=default_company_id,
            is_active=True,
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user

    @staticmethod
    async def admin_set_password(db: AsyncSession, user_id: str, new_password: str) -> User:
        """Replace a user's password hash. The caller commits."""
        problem = password_problem(new_password)
        if problem:
            raise ValidationError(problem, code="TF-VAL-002")
        user = await db.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        user.password_hash = AuthService.hash_password(new_password)
        return user

    @staticmethod
    async def switch_company(user: CurrentUser, company_id: str, db: AsyncSession) -> User:
        membership = await get_active_membership(db, user.id, company_id)
        if not membership:
            raise AuthorizationError(code="TF-AUTH-003")
        row = await db.get(User, user.id)
        row.default_company_id = company_id
        await db.commit()
        await db.refresh(row)
        return row

    @staticmethod
    async def is_payload_revoked(payload: Dict[str, Any], db: AsyncSession) -> bool:
        """True when the token itself or its sign-in session has been revoked."""
        ids = [i for i in (payload.get("jti"), payload.get("sid")) if i]
        if not ids:
            return False
        result = await db.execute(select(RevokedToken.id).where(RevokedToken.jti.in_(ids)).limit(1))
        return result.first() is not None


async def get_active_membership(db: AsyncSession, user_id: str, company_id: str) -> Optional[CompanyMembership]:
    stmt = select(CompanyMembership).where(
        CompanyMembership.user_id == user_id,
        CompanyMembership.company_id == company_id,
        CompanyMembership.is_active.is_(True),
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    jti = payload.get("jti")
    if await AuthService.is_payload_revoked(payload, db):
        raise HTTPException(status_code=401, detail="Token has been revoked")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = await db.get(User, user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    exp = payload.get("exp")
    return CurrentUser(
        id=user.id,
        email=user.email,
        name=user.name or "",
        default_company_id=user.default_company_id,
        is_active=user.is_active,
        token_jti=jti,
        session_id=payload.get("sid"),
        token_expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )


async def get_company_context(
    company_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> CompanyContext:
    """Resolve the caller's role in the company named by the `company_id` path parameter."""
    membership = await get_active_membership(db, user.id, company_id)
    if not membership:
        raise AuthorizationError(code="TF-AUTH-003")
    return CompanyContext(
        user_id=user.id,
        company_id=company_id,
        role=membership.role,
        email=user.email,
        name=user.name,
    )


def require_company_role(min_role: CompanyRole):
    """Dependency factory: require a company role level >= min_role"""
    async def _check(ctx: CompanyContext = Depends(get_company_context)) -> CompanyContext:
        if role_level(ctx.role) < role_level(min_role):
            raise AuthorizationError("Insufficient role level")
        return ctx
    return _check
