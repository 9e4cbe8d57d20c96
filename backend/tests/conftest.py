# tests/conftest.py — Shared test fixtures
import os
import uuid

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"

from models import Base, User, Company, CompanyMembership, CompanyRole, utcnow
from auth import AuthService, CompanyContext
from database import get_db_session
from main import app

TEST_PASSWORD = "TestPassword123!"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def make_member(db, company: Company, email: str, role: CompanyRole, name: str = None) -> User:
    """Create a user with an active membership in `company`"""
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        name=name or email.split("@")[0].title(),
        password_hash=AuthService.hash_password(TEST_PASSWORD),
        default_company_id=company.id,
        is_active=True,
    )
    db.add(user)
    await db.flush()
    now = utcnow()
    db.add(CompanyMembership(
        user_id=user.id,
        company_id=company.id,
        role=role,
        invited_at=now,
        joined_at=now,
        is_active=True,
    ))
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_company(db_session):
    """Create a test company"""
    company = Company(id=str(uuid.uuid4()), name="Acme Corp", description="Test company")
    db_session.add(company)
    await db_session.commit()
    await db_session.refresh(company)
    return company


@pytest_asyncio.fixture
async def other_company(db_session):
    company = Company(id=str(uuid.uuid4()), name="Globex")
    db_session.add(company)
    await db_session.commit()
    await db_session.refresh(company)
    return company


@pytest_asyncio.fixture
async def owner_user(db_session, test_company):
    return await make_member(db_session, test_company, "owner@acme.dev", CompanyRole.OWNER, "Olivia Owner")


@pytest_asyncio.fixture
async def admin_user(db_session, test_company):
    return await make_member(db_session, test_company, "admin@acme.dev", CompanyRole.ADMIN, "Adam Admin")


@pytest_asyncio.fixture
async def leader_user(db_session, test_company):
    return await make_member(db_session, test_company, "leader@acme.dev", CompanyRole.LEADER, "Lena Leader")


@pytest_asyncio.fixture
async def member_user(db_session, test_company):
    return await make_member(db_session, test_company, "member@acme.dev", CompanyRole.MEMBER, "Max Member")


def context_for(user: User, company: Company, role: CompanyRole) -> CompanyContext:
    """Build the company context a request by `user` would resolve to"""
    return CompanyContext(user_id=user.id, company_id=company.id, role=role, email=user.email, name=user.name)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token(AuthService.token_payload(user))
    return {"Authorization": f"Bearer {token}"}
