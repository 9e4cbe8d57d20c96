# tests/test_members.py — Company membership: roles, removal, direct creation, company profile
import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

import membership_lifecycle
from auth import AuthService
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from models import AuditEventType, CompanyMembership, CompanyRole, TeamMembership, User
from tests.conftest import context_for, get_auth_headers, make_member


@pytest.mark.asyncio
class TestRoleChanges:
    async def test_owner_promotes_to_admin(self, db_session, owner_user, member_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        membership = await membership_lifecycle.update_role(db_session, ctx, member_user.id, "admin")
        assert membership.role == CompanyRole.ADMIN

    async def test_admin_moves_leader_to_member(self, db_session, admin_user, leader_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        membership = await membership_lifecycle.update_role(db_session, ctx, leader_user.id, "member")
        assert membership.role == CompanyRole.MEMBER

    async def test_admin_cannot_grant_admin(self, db_session, admin_user, member_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        with pytest.raises(AuthorizationError):
            await membership_lifecycle.update_role(db_session, ctx, member_user.id, "admin")

    async def test_admin_cannot_demote_owner(self, db_session, owner_user, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        with pytest.raises(AuthorizationError):
            await membership_lifecycle.update_role(db_session, ctx, owner_user.id, "member")

    async def test_last_owner_cannot_step_down(self, db_session, owner_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        with pytest.raises(ConflictError):
            await membership_lifecycle.update_role(db_session, ctx, owner_user.id, "admin")

    async def test_owner_steps_down_when_another_owner_exists(self, db_session, owner_user, test_company):
        await make_member(db_session, test_company, "co-owner@acme.dev", CompanyRole.OWNER)
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        membership = await membership_lifecycle.update_role(db_session, ctx, owner_user.id, "admin")
        assert membership.role == CompanyRole.ADMIN

    async def test_unknown_role(self, db_session, owner_user, member_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        with pytest.raises(ValidationError):
            await membership_lifecycle.update_role(db_session, ctx, member_user.id, "emperor")

    async def test_role_change_endpoint(self, client: AsyncClient, owner_user, member_user, test_company):
        res = await client.patch(
            f"/api/v1/companies/{test_company.id}/members/{member_user.id}/role",
            json={"role": "leader"},
            headers=get_auth_headers(owner_user),
        )
        assert res.status_code == 200
        assert res.json() == {"user_id": member_user.id, "role": "leader"}

    async def test_member_cannot_reach_role_endpoint(self, client: AsyncClient, member_user, leader_user, test_company):
        res = await client.patch(
            f"/api/v1/companies/{test_company.id}/members/{leader_user.id}/role",
            json={"role": "member"},
            headers=get_auth_headers(member_user),
        )
        assert res.status_code == 403


@pytest.mark.asyncio
class TestRemoval:
    async def test_remove_is_soft(self, db_session, admin_user, member_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        membership = await membership_lifecycle.remove(db_session, ctx, member_user.id)
        assert membership.is_active is False
        assert membership.left_at is not None

        active = await membership_lifecycle.list_members(db_session, ctx)
        assert member_user.id not in [m.user_id for m in active]
        everyone = await membership_lifecycle.list_members(db_session, ctx, include_inactive=True)
        assert member_user.id in [m.user_id for m in everyone]

    async def test_cannot_remove_self(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        with pytest.raises(ValidationError):
            await membership_lifecycle.remove(db_session, ctx, admin_user.id)

    async def test_admin_cannot_remove_owner(self, db_session, owner_user, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        with pytest.raises(AuthorizationError):
            await membership_lifecycle.remove(db_session, ctx, owner_user.id)

    async def test_remove_unknown_member(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        with pytest.raises(NotFoundError):
            await membership_lifecycle.remove(db_session, ctx, "nobody")

    async def test_removed_member_loses_access(self, client: AsyncClient, admin_user, member_user, test_company):
        res = await client.delete(
            f"/api/v1/companies/{test_company.id}/members/{member_user.id}",
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 200
        assert res.json()["status"] == "removed"

        res = await client.get(f"/api/v1/companies/{test_company.id}/tags", headers=get_auth_headers(member_user))
        assert res.status_code == 403


@pytest.mark.asyncio
class TestDirectCreation:
    async def test_create_user_directly(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        team = await membership_lifecycle.create_team(db_session, ctx, "Support")
        user, membership = await membership_lifecycle.create_user_directly(
            db_session, ctx, "Dora Direct", "Dora@Acme.dev", "DirectPass1234", "leader", team.id,
        )
        assert user.email == "dora@acme.dev"
        assert user.default_company_id == test_company.id
        assert membership.role == CompanyRole.LEADER
        assert membership.invited_by == admin_user.id
        assert AuthService.verify_password("DirectPass1234", user.password_hash)

        row = (await db_session.execute(
            select(TeamMembership).where(TeamMembership.team_id == team.id, TeamMembership.user_id == user.id)
        )).scalar_one()
        assert row.is_leader is True

    async def test_duplicate_email(self, db_session, admin_user, member_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        with pytest.raises(ConflictError):
            await membership_lifecycle.create_user_directly(
                db_session, ctx, "Again", member_user.email, "DirectPass1234",
            )

    async def test_password_policy(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        with pytest.raises(ValidationError) as exc:
            await membership_lifecycle.create_user_directly(db_session, ctx, "Weak", "weak@acme.dev", "short")
        assert exc.value.code == "TF-VAL-002"

    async def test_admin_cannot_create_admin(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        with pytest.raises(AuthorizationError):
            await membership_lifecycle.create_user_directly(
                db_session, ctx, "Peer", "peer@acme.dev", "DirectPass1234", "admin",
            )

    async def test_membership_failure_leaves_identity(self, db_session, admin_user, test_company, monkeypatch, caplog):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)

        async def broken_attach(*args, **kwargs):
            raise OperationalError("INSERT INTO company_memberships", {}, Exception("disk I/O error"))

        monkeypatch.setattr(membership_lifecycle, "_attach_new_user", broken_attach)
        with pytest.raises(OperationalError):
            await membership_lifecycle.create_user_directly(
                db_session, ctx, "Half Made", "half@acme.dev", "DirectPass1234",
            )

        user = (await db_session.execute(select(User).where(User.email == "half@acme.dev"))).scalar_one()
        memberships = (await db_session.execute(
            select(CompanyMembership).where(CompanyMembership.user_id == user.id)
        )).scalars().all()
        assert memberships == []
        assert user.id in caplog.text

    async def test_create_endpoint(self, client: AsyncClient, admin_user, test_company):
        res = await client.post(
            f"/api/v1/companies/{test_company.id}/members",
            json={"name": "Eve New", "email": "eve@acme.dev", "password": "DirectPass1234"},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 201
        assert res.json()["role"] == "member"

        res = await client.post("/api/v1/auth/login", json={"email": "eve@acme.dev", "password": "DirectPass1234"})
        assert res.status_code == 200
        assert res.json()["user"]["default_company_id"] == test_company.id

    async def test_create_endpoint_requires_admin(self, client: AsyncClient, leader_user, test_company):
        res = await client.post(
            f"/api/v1/companies/{test_company.id}/members",
            json={"name": "Eve New", "email": "eve@acme.dev", "password": "DirectPass1234"},
            headers=get_auth_headers(leader_user),
        )
        assert res.status_code == 403


@pytest.mark.asyncio
class TestCompanyProfile:
    async def test_list_my_companies(self, client: AsyncClient, member_user, test_company):
        res = await client.get("/api/v1/companies", headers=get_auth_headers(member_user))
        assert res.status_code == 200
        assert [(c["id"], c["role"]) for c in res.json()] == [(test_company.id, "member")]

    async def test_admin_updates_profile(self, client: AsyncClient, admin_user, test_company):
        res = await client.patch(
            f"/api/v1/companies/{test_company.id}",
            json={"name": "Acme Industries", "domain": "acme.dev"},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 200
        assert res.json()["name"] == "Acme Industries"
        assert res.json()["domain"] == "acme.dev"

    async def test_member_cannot_update_profile(self, client: AsyncClient, member_user, test_company):
        res = await client.patch(
            f"/api/v1/companies/{test_company.id}",
            json={"name": "Hijacked"},
            headers=get_auth_headers(member_user),
        )
        assert res.status_code == 403
        assert res.json()["code"] == "TF-AUTH-002"

    async def test_audit_trail(self, db_session, owner_user, member_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        await membership_lifecycle.update_role(db_session, ctx, member_user.id, "leader")
        events = await membership_lifecycle.list_audit(db_session, ctx)
        assert [e.event_type for e in events] == [AuditEventType.MEMBER_ROLE_CHANGED]
        assert events[0].details == {"from": "member", "to": "leader"}

        with pytest.raises(AuthorizationError):
            await membership_lifecycle.list_audit(
                db_session, context_for(member_user, test_company, CompanyRole.LEADER),
            )
