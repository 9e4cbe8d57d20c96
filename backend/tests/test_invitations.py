# tests/test_invitations.py — Invitation lifecycle: invite, resend, cancel, accept
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import select

import invitation_lifecycle
import membership_lifecycle
from errors import (
    AlreadyMember, AuthorizationError, DuplicateInvitation, InvitationAlreadyAccepted,
    InvitationExpired, NotFoundError, ValidationError,
)
from models import (
    CompanyMembership, CompanyRole, Notification, NotificationType, TeamMembership, User,
    as_utc, utcnow,
)
from tests.conftest import context_for, get_auth_headers, make_member


@pytest_asyncio.fixture
async def invitee(db_session, other_company):
    """A user from another company, not yet in Acme"""
    return await make_member(db_session, other_company, "newbie@globex.dev", CompanyRole.OWNER, "Nia Newbie")


@pytest.mark.asyncio
class TestInvite:
    async def test_invite_creates_pending_invitation(self, db_session, owner_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        inv = await invitation_lifecycle.invite(db_session, ctx, "Someone@Example.com", "leader")
        assert inv.email == "someone@example.com"
        assert inv.role == CompanyRole.LEADER
        assert inv.invited_by == owner_user.id
        assert len(inv.token) == 64
        assert invitation_lifecycle.is_pending(inv)
        assert as_utc(inv.expires_at) - as_utc(inv.created_at) == timedelta(days=7)

    async def test_duplicate_pending_invitation(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        await invitation_lifecycle.invite(db_session, ctx, "twice@example.com")
        with pytest.raises(DuplicateInvitation):
            await invitation_lifecycle.invite(db_session, ctx, "TWICE@example.com")

    async def test_expired_invitation_does_not_block(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        first = await invitation_lifecycle.invite(db_session, ctx, "again@example.com")
        first.expires_at = utcnow() - timedelta(minutes=1)
        await db_session.commit()
        second = await invitation_lifecycle.invite(db_session, ctx, "again@example.com")
        assert second.id != first.id

    async def test_existing_member_cannot_be_invited(self, db_session, owner_user, member_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        with pytest.raises(AlreadyMember):
            await invitation_lifecycle.invite(db_session, ctx, member_user.email)

    async def test_owner_role_is_not_assignable(self, db_session, owner_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        with pytest.raises(ValidationError):
            await invitation_lifecycle.invite(db_session, ctx, "boss@example.com", "owner")

    async def test_admin_cannot_invite_admin(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        with pytest.raises(AuthorizationError):
            await invitation_lifecycle.invite(db_session, ctx, "peer@example.com", "admin")

    async def test_owner_can_invite_admin(self, db_session, owner_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        inv = await invitation_lifecycle.invite(db_session, ctx, "peer@example.com", "admin")
        assert inv.role == CompanyRole.ADMIN

    async def test_leader_cannot_invite(self, db_session, leader_user, test_company):
        ctx = context_for(leader_user, test_company, CompanyRole.LEADER)
        with pytest.raises(AuthorizationError):
            await invitation_lifecycle.invite(db_session, ctx, "friend@example.com")

    async def test_invalid_email(self, db_session, owner_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        with pytest.raises(ValidationError):
            await invitation_lifecycle.invite(db_session, ctx, "not-an-email")

    async def test_unknown_team(self, db_session, owner_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        with pytest.raises(NotFoundError):
            await invitation_lifecycle.invite(db_session, ctx, "friend@example.com", team_id="missing")

    async def test_existing_user_is_notified(self, db_session, owner_user, test_company, invitee):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        inv = await invitation_lifecycle.invite(db_session, ctx, invitee.email)
        notes = (await db_session.execute(
            select(Notification).where(Notification.user_id == invitee.id)
        )).scalars().all()
        assert len(notes) == 1
        assert notes[0].type == NotificationType.COMPANY_INVITATION
        assert notes[0].data["invitation_id"] == inv.id


@pytest.mark.asyncio
class TestResendCancel:
    async def test_resend_extends_expiry(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        inv = await invitation_lifecycle.invite(db_session, ctx, "late@example.com")
        before = as_utc(inv.expires_at)
        resent = await invitation_lifecycle.resend(db_session, ctx, inv.id)
        assert as_utc(resent.expires_at) > before

    async def test_resend_revives_expired_invitation(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        inv = await invitation_lifecycle.invite(db_session, ctx, "stale@example.com")
        inv.expires_at = utcnow() - timedelta(days=1)
        await db_session.commit()
        assert not invitation_lifecycle.is_pending(inv)

        resent = await invitation_lifecycle.resend(db_session, ctx, inv.id)
        assert invitation_lifecycle.is_pending(resent)

    async def test_resend_expired_when_newer_invitation_pending(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        old = await invitation_lifecycle.invite(db_session, ctx, "dup@example.com")
        old.expires_at = utcnow() - timedelta(days=1)
        await db_session.commit()
        newer = await invitation_lifecycle.invite(db_session, ctx, "dup@example.com")

        with pytest.raises(DuplicateInvitation):
            await invitation_lifecycle.resend(db_session, ctx, old.id)

        pending = await invitation_lifecycle.list_pending(db_session, ctx)
        assert [i.id for i in pending if i.email == "dup@example.com"] == [newer.id]
        # the live invitation itself can still be resent
        await invitation_lifecycle.resend(db_session, ctx, newer.id)

    async def test_cancel_then_resend_is_not_found(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        inv = await invitation_lifecycle.invite(db_session, ctx, "gone@example.com")
        assert await invitation_lifecycle.cancel(db_session, ctx, inv.id) is True
        with pytest.raises(NotFoundError):
            await invitation_lifecycle.resend(db_session, ctx, inv.id)

    async def test_cancel_missing_is_noop(self, db_session, admin_user, test_company):
        ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        assert await invitation_lifecycle.cancel(db_session, ctx, "does-not-exist") is False

    async def test_member_cannot_cancel(self, db_session, admin_user, member_user, test_company):
        inv = await invitation_lifecycle.invite(
            db_session, context_for(admin_user, test_company, CompanyRole.ADMIN), "x@example.com",
        )
        with pytest.raises(AuthorizationError):
            await invitation_lifecycle.cancel(
                db_session, context_for(member_user, test_company, CompanyRole.MEMBER), inv.id,
            )


@pytest.mark.asyncio
class TestAccept:
    async def test_accept_creates_membership(self, db_session, owner_user, test_company, invitee):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        inv = await invitation_lifecycle.invite(db_session, ctx, invitee.email, "leader")

        membership = await invitation_lifecycle.accept(db_session, inv.id, invitee.id, invitee.email)
        assert membership.role == CompanyRole.LEADER
        assert membership.is_active
        assert membership.invited_by == owner_user.id
        assert inv.accepted_by == invitee.id
        assert not invitation_lifecycle.is_pending(inv)

    async def test_accept_with_team(self, db_session, owner_user, test_company, invitee):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        team = await membership_lifecycle.create_team(db_session, ctx, "Platform")
        inv = await invitation_lifecycle.invite(db_session, ctx, invitee.email, "member", team.id)

        await invitation_lifecycle.accept_by_token(db_session, inv.token, invitee.id, invitee.email)
        row = (await db_session.execute(
            select(TeamMembership).where(TeamMembership.team_id == team.id, TeamMembership.user_id == invitee.id)
        )).scalar_one()
        assert row.is_leader is False

    async def test_accept_twice(self, db_session, owner_user, test_company, invitee):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        inv = await invitation_lifecycle.invite(db_session, ctx, invitee.email)
        await invitation_lifecycle.accept(db_session, inv.id, invitee.id, invitee.email)
        with pytest.raises(InvitationAlreadyAccepted):
            await invitation_lifecycle.accept(db_session, inv.id, invitee.id, invitee.email)

    async def test_accept_expired(self, db_session, owner_user, test_company, invitee):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        inv = await invitation_lifecycle.invite(db_session, ctx, invitee.email)
        inv.expires_at = utcnow() - timedelta(seconds=1)
        await db_session.commit()
        with pytest.raises(InvitationExpired):
            await invitation_lifecycle.accept(db_session, inv.id, invitee.id, invitee.email)

    async def test_accept_wrong_email(self, db_session, owner_user, test_company, invitee):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        inv = await invitation_lifecycle.invite(db_session, ctx, "someone-else@example.com")
        with pytest.raises(AuthorizationError):
            await invitation_lifecycle.accept(db_session, inv.id, invitee.id, invitee.email)

    async def test_accept_reactivates_removed_member(self, db_session, owner_user, member_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        await membership_lifecycle.remove(db_session, ctx, member_user.id)
        inv = await invitation_lifecycle.invite(db_session, ctx, member_user.email, "leader")

        membership = await invitation_lifecycle.accept(db_session, inv.id, member_user.id, member_user.email)
        assert membership.is_active
        assert membership.left_at is None
        assert membership.role == CompanyRole.LEADER
        rows = (await db_session.execute(
            select(CompanyMembership).where(
                CompanyMembership.user_id == member_user.id,
                CompanyMembership.company_id == test_company.id,
            )
        )).scalars().all()
        assert len(rows) == 1

    async def test_accept_sets_default_company(self, db_session, owner_user, test_company):
        loner = User(email="loner@example.com", name="Lone", password_hash="x", is_active=True)
        db_session.add(loner)
        await db_session.commit()

        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        inv = await invitation_lifecycle.invite(db_session, ctx, loner.email)
        await invitation_lifecycle.accept(db_session, inv.id, loner.id, loner.email)
        await db_session.refresh(loner)
        assert loner.default_company_id == test_company.id

    async def test_is_pending_respects_clock(self, db_session, owner_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        inv = await invitation_lifecycle.invite(db_session, ctx, "clock@example.com")
        assert invitation_lifecycle.is_pending(inv, now=utcnow() + timedelta(days=6))
        assert not invitation_lifecycle.is_pending(inv, now=utcnow() + timedelta(days=8))


@pytest.mark.asyncio
class TestInvitationEndpoints:
    async def test_invite_and_accept_over_http(self, client: AsyncClient, owner_user, test_company, invitee):
        res = await client.post(
            f"/api/v1/companies/{test_company.id}/invitations",
            json={"email": invitee.email, "role": "member"},
            headers=get_auth_headers(owner_user),
        )
        assert res.status_code == 201
        body = res.json()
        assert body["is_pending"] is True

        res = await client.get("/api/v1/auth/invitations", headers=get_auth_headers(invitee))
        assert [i["id"] for i in res.json()] == [body["id"]]
        assert res.json()[0]["company_name"] == "Acme Corp"

        res = await client.post(
            "/api/v1/auth/invitations/accept-token",
            json={"token": body["token"]},
            headers=get_auth_headers(invitee),
        )
        assert res.status_code == 200
        assert res.json()["role"] == "member"

        res = await client.get(f"/api/v1/companies/{test_company.id}/tags", headers=get_auth_headers(invitee))
        assert res.status_code == 200

    async def test_duplicate_returns_conflict(self, client: AsyncClient, admin_user, test_company):
        url = f"/api/v1/companies/{test_company.id}/invitations"
        await client.post(url, json={"email": "dup@example.com"}, headers=get_auth_headers(admin_user))
        res = await client.post(url, json={"email": "dup@example.com"}, headers=get_auth_headers(admin_user))
        assert res.status_code == 409
        assert res.json()["code"] == "TF-CONF-002"

    async def test_expired_accept_returns_gone(self, client: AsyncClient, db_session, owner_user, test_company, invitee):
        inv = await invitation_lifecycle.invite(
            db_session, context_for(owner_user, test_company, CompanyRole.OWNER), invitee.email,
        )
        inv.expires_at = utcnow() - timedelta(hours=1)
        await db_session.commit()
        res = await client.post(
            f"/api/v1/auth/invitations/{inv.id}/accept", headers=get_auth_headers(invitee),
        )
        assert res.status_code == 410
        assert res.json()["code"] == "TF-NF-002"

    async def test_cancel_endpoint(self, client: AsyncClient, admin_user, test_company):
        url = f"/api/v1/companies/{test_company.id}/invitations"
        created = await client.post(url, json={"email": "bye@example.com"}, headers=get_auth_headers(admin_user))
        res = await client.delete(f"{url}/{created.json()['id']}", headers=get_auth_headers(admin_user))
        assert res.json() == {"status": "cancelled"}
        res = await client.delete(f"{url}/{created.json()['id']}", headers=get_auth_headers(admin_user))
        assert res.json() == {"status": "not_found"}

    async def test_list_pending(self, client: AsyncClient, admin_user, test_company):
        url = f"/api/v1/companies/{test_company.id}/invitations"
        await client.post(url, json={"email": "a@example.com"}, headers=get_auth_headers(admin_user))
        await client.post(url, json={"email": "b@example.com"}, headers=get_auth_headers(admin_user))
        res = await client.get(url, headers=get_auth_headers(admin_user))
        assert sorted(i["email"] for i in res.json()) == ["a@example.com", "b@example.com"]
        assert all("token" not in i for i in res.json())
