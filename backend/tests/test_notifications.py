"""Tests for notification dispatch, the per-user feed and the due date sweep."""
from datetime import date, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

import notification_dispatch
import task_lifecycle
from errors import AuthorizationError, NotFoundError
from models import CompanyRole, Notification, NotificationType, utcnow
from tests.conftest import context_for, get_auth_headers


async def _notify(db, company, user_ids, title="Hello"):
    return await notification_dispatch.dispatch(
        db, company.id, user_ids, NotificationType.TASK_ASSIGNED, title, f"{title} message", {"tag_id": "t1"},
    )


@pytest.mark.asyncio
class TestDispatch:
    async def test_fan_out_dedupes_and_excludes_actor(self, db_session, owner_user, member_user, test_company):
        rows = await notification_dispatch.dispatch(
            db_session, test_company.id,
            [member_user.id, owner_user.id, member_user.id, None],
            NotificationType.TASK_COMMENT_ADDED, "New comment", "Someone commented",
            exclude_user_id=owner_user.id,
        )
        assert [n.user_id for n in rows] == [member_user.id]
        assert rows[0].expires_at is not None

    async def test_no_recipients(self, db_session, test_company):
        assert await _notify(db_session, test_company, []) == []

    async def test_store_failure_is_swallowed(self, db_session, member_user, test_company, monkeypatch, caplog):
        async def broken_store(db, rows):
            raise OperationalError("INSERT INTO notifications", {}, Exception("database is locked"))

        monkeypatch.setattr(notification_dispatch, "_store", broken_store)
        assert await _notify(db_session, test_company, [member_user.id]) == []
        assert "Notification dispatch failed" in caplog.text

    async def test_primary_change_survives_failed_dispatch(self, db_session, owner_user, member_user, test_company, monkeypatch):
        async def broken_store(db, rows):
            raise OperationalError("INSERT INTO notifications", {}, Exception("database is locked"))

        monkeypatch.setattr(notification_dispatch, "_store", broken_store)
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        tag = await task_lifecycle.create(db_session, ctx, title="Still here", assigned_to_user_id=member_user.id)
        assert (await task_lifecycle.get(db_session, ctx, tag.id)).title == "Still here"
        assert (await db_session.execute(select(Notification))).scalars().all() == []


@pytest.mark.asyncio
class TestFeed:
    async def test_fetch_newest_first_and_unread_filter(self, db_session, member_user, test_company):
        first = (await _notify(db_session, test_company, [member_user.id], "First"))[0]
        await _notify(db_session, test_company, [member_user.id], "Second")
        await notification_dispatch.mark_read(db_session, member_user.id, first.id)

        feed = await notification_dispatch.fetch(db_session, member_user.id)
        assert [n.title for n in feed] == ["Second", "First"]
        unread = await notification_dispatch.fetch(db_session, member_user.id, unread_only=True)
        assert [n.title for n in unread] == ["Second"]
        assert await notification_dispatch.unread_count(db_session, member_user.id) == 1

    async def test_expired_are_hidden(self, db_session, member_user, test_company):
        note = (await _notify(db_session, test_company, [member_user.id]))[0]
        stored = await db_session.get(Notification, note.id)
        stored.expires_at = utcnow() - timedelta(minutes=1)
        await db_session.commit()
        assert await notification_dispatch.fetch(db_session, member_user.id) == []
        assert await notification_dispatch.unread_count(db_session, member_user.id) == 0

    async def test_mark_read_keeps_first_timestamp(self, db_session, member_user, test_company):
        note = (await _notify(db_session, test_company, [member_user.id]))[0]
        once = await notification_dispatch.mark_read(db_session, member_user.id, note.id)
        read_at = once.read_at
        twice = await notification_dispatch.mark_read(db_session, member_user.id, note.id)
        assert twice.read_at == read_at

    async def test_mark_all_read_is_idempotent(self, db_session, member_user, test_company):
        await _notify(db_session, test_company, [member_user.id], "One")
        await _notify(db_session, test_company, [member_user.id], "Two")
        assert await notification_dispatch.mark_all_read(db_session, member_user.id) == 2
        assert await notification_dispatch.mark_all_read(db_session, member_user.id) == 0
        assert await notification_dispatch.unread_count(db_session, member_user.id) == 0

    async def test_cannot_touch_someone_elses(self, db_session, owner_user, member_user, test_company):
        note = (await _notify(db_session, test_company, [member_user.id]))[0]
        with pytest.raises(NotFoundError):
            await notification_dispatch.mark_read(db_session, owner_user.id, note.id)
        with pytest.raises(NotFoundError):
            await notification_dispatch.dismiss(db_session, owner_user.id, note.id)

    async def test_dismiss(self, db_session, member_user, test_company):
        note = (await _notify(db_session, test_company, [member_user.id]))[0]
        await notification_dispatch.dismiss(db_session, member_user.id, note.id)
        assert await notification_dispatch.fetch(db_session, member_user.id) == []


@pytest.mark.asyncio
class TestDueDateSweep:
    async def test_sweep_issues_once_per_day(self, db_session, admin_user, member_user, test_company):
        member_ctx = context_for(member_user, test_company, CompanyRole.MEMBER)
        today = date(2025, 3, 1)
        await task_lifecycle.create(db_session, member_ctx, title="Overdue", due_date=date(2025, 2, 27))
        await task_lifecycle.create(db_session, member_ctx, title="Tomorrow", due_date=date(2025, 3, 2))
        await task_lifecycle.create(db_session, member_ctx, title="Later", due_date=date(2025, 3, 20))
        done = await task_lifecycle.create(db_session, member_ctx, title="Done", due_date=date(2025, 2, 1))
        await task_lifecycle.update_status(db_session, member_ctx, done.id, "Completed")

        admin_ctx = context_for(admin_user, test_company, CompanyRole.ADMIN)
        assert await notification_dispatch.sweep_due_dates(db_session, admin_ctx, today=today) == 2
        assert await notification_dispatch.sweep_due_dates(db_session, admin_ctx, today=today) == 0

        notes = await notification_dispatch.fetch(db_session, member_user.id)
        assert sorted((n.type, n.data["due_date"]) for n in notes) == sorted([
            (NotificationType.TASK_OVERDUE, "2025-02-27"),
            (NotificationType.TASK_DUE_SOON, "2025-03-02"),
        ])

    async def test_sweep_prefers_assignee(self, db_session, owner_user, member_user, test_company):
        ctx = context_for(owner_user, test_company, CompanyRole.OWNER)
        await task_lifecycle.create(
            db_session, ctx, title="Assigned", assigned_to_user_id=member_user.id, due_date=date(2000, 1, 1),
        )
        await notification_dispatch.mark_all_read(db_session, member_user.id)
        assert await notification_dispatch.sweep_due_dates(db_session, ctx) == 1
        unread = await notification_dispatch.fetch(db_session, member_user.id, unread_only=True)
        assert [n.type for n in unread] == [NotificationType.TASK_OVERDUE]

    async def test_sweep_requires_admin(self, db_session, member_user, test_company):
        with pytest.raises(AuthorizationError):
            await notification_dispatch.sweep_due_dates(
                db_session, context_for(member_user, test_company, CompanyRole.MEMBER),
            )


@pytest.mark.asyncio
class TestNotificationEndpoints:
    async def test_feed_endpoints(self, client, db_session, member_user, test_company):
        headers = get_auth_headers(member_user)
        note = (await _notify(db_session, test_company, [member_user.id], "Ping"))[0]

        resp = await client.get("/api/v1/notifications", headers=headers)
        assert resp.status_code == 200
        body = resp.json()
        assert [n["title"] for n in body] == ["Ping"]
        assert body[0]["type"] == "task_assigned"
        assert body[0]["is_read"] is False

        resp = await client.get("/api/v1/notifications/count", headers=headers)
        assert resp.json() == {"unread": 1}

        resp = await client.post(f"/api/v1/notifications/{note.id}/read", headers=headers)
        assert resp.json()["is_read"] is True

        resp = await client.post("/api/v1/notifications/read-all", headers=headers)
        assert resp.json() == {"marked": 0}

        resp = await client.delete(f"/api/v1/notifications/{note.id}", headers=headers)
        assert resp.json() == {"status": "deleted"}
        resp = await client.delete(f"/api/v1/notifications/{note.id}", headers=headers)
        assert resp.status_code == 404

    async def test_sweep_endpoint(self, client, admin_user, test_company):
        resp = await client.post(
            f"/api/v1/companies/{test_company.id}/tags/sweep-due-dates", headers=get_auth_headers(admin_user),
        )
        assert resp.status_code == 200
        assert resp.json() == {"notifications_sent": 0}
