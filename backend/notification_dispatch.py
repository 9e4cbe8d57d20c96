"""
Tagflow — Notification Dispatch

Fan-out of lifecycle events to each user's feed, plus the feed operations
(fetch, read, dismiss). Dispatch runs after the primary change has been
committed, on its own session, and never raises: a failed store is logged
and the primary change stands.
"""

import os
import logging
from datetime import timedelta, datetime, time, timezone
from typing import Optional, Iterable, List, Dict, Any

from sqlalchemy import select, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CompanyContext
from errors import AuthorizationError, NotFoundError
from models import Notification, NotificationType, Tag, TagStatus, utcnow
from policy import Action, can_perform
from realtime import manager

logger = logging.getLogger("tagflow.notifications")

NOTIFICATION_TTL_DAYS = int(os.getenv("NOTIFICATION_TTL_DAYS", "30"))
NOTIFICATION_FEED_LIMIT = int(os.getenv("NOTIFICATION_FEED_LIMIT", "50"))
DUE_SOON_DAYS = int(os.getenv("DUE_SOON_DAYS", "1"))

OPEN_STATUSES = (TagStatus.PENDING, TagStatus.ACCEPTED, TagStatus.IN_PROGRESS)


def notification_to_dict(n: Notification) -> Dict[str, Any]:
    return {
        "id": n.id,
        "type": n.type.value if hasattr(n.type, "value") else str(n.type),
        "title": n.title,
        "message": n.message,
        "data": n.data or {},
        "company_id": n.company_id,
        "is_read": n.read_at is not None,
        "read_at": n.read_at.isoformat() if n.read_at else None,
        "expires_at": n.expires_at.isoformat() if n.expires_at else None,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


def _unexpired(now):
    return (Notification.expires_at.is_(None)) | (Notification.expires_at > now)


# ============================================================
# FEED
# ============================================================

async def fetch(
    db: AsyncSession,
    user_id: str,
    unread_only: bool = False,
    limit: int = NOTIFICATION_FEED_LIMIT,
) -> List[Notification]:
    """Unexpired notifications for one user, newest first, capped at the feed limit."""
    limit = max(1, min(limit, NOTIFICATION_FEED_LIMIT))
    query = select(Notification).where(
        Notification.user_id == user_id,
        _unexpired(utcnow()),
    )
    if unread_only:
        query = query.where(Notification.read_at.is_(None))
    query = query.order_by(Notification.created_at.desc()).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def unread_count(db: AsyncSession, user_id: str) -> int:
    stmt = select(func.count(Notification.id)).where(
        Notification.user_id == user_id,
        Notification.read_at.is_(None),
        _unexpired(utcnow()),
    )
    return (await db.execute(stmt)).scalar() or 0


async def _owned(db: AsyncSession, user_id: str, notification_id: str) -> Notification:
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        )
    )
    notif = result.scalar_one_or_none()
    if not notif:
        raise NotFoundError("Notification not found")
    return notif


async def mark_read(db: AsyncSession, user_id: str, notification_id: str) -> Notification:
    notif = await _owned(db, user_id, notification_id)
    if notif.read_at is None:
        notif.read_at = utcnow()
        await db.commit()
    return notif


async def mark_all_read(db: AsyncSession, user_id: str) -> int:
    """Idempotent: only rows that are still unread are touched."""
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read_at.is_(None))
        .values(read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def dismiss(db: AsyncSession, user_id: str, notification_id: str) -> None:
    notif = await _owned(db, user_id, notification_id)
    await db.delete(notif)
    await db.commit()


# ============================================================
# DISPATCH
# ============================================================

async def _store(db: AsyncSession, rows: List[Notification]) -> None:
    async with AsyncSession(db.bind, expire_on_commit=False) as session:
        session.add_all(rows)
        await session.commit()


async def dispatch(
    db: AsyncSession,
    company_id: Optional[str],
    user_ids: Iterable[Optional[str]],
    type: NotificationType,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    exclude_user_id: Optional[str] = None,
) -> List[Notification]:
    """
    Best-effort fan-out. Must be called after the triggering change is
    committed. Returns the stored notifications, or [] when storing failed.
    """
    recipients = [uid for uid in dict.fromkeys(user_ids) if uid and uid != exclude_user_id]
    if not recipients:
        return []

    now = utcnow()
    rows = [
        Notification(
            user_id=uid,
            company_id=company_id,
            type=type,
            title=title,
            message=message,
            data=data or {},
            created_at=now,
            expires_at=now + timedelta(days=NOTIFICATION_TTL_DAYS),
        )
        for uid in recipients
    ]
    try:
        await _store(db, rows)
    except SQLAlchemyError as e:
        logger.warning(f"Notification dispatch failed: type={type.value} recipients={len(recipients)}: {e}")
        return []

    for n in rows:
        await manager.send_to_user(n.user_id, company_id, {
            "type": "notification",
            "notification": notification_to_dict(n),
        })
    return rows


# ============================================================
# DUE DATE SWEEP
# ============================================================

async def sweep_due_dates(db: AsyncSession, ctx: CompanyContext, today=None) -> int:
    """Issue due-soon and overdue notices for open tags, once per tag, type and day."""
    if not can_perform(ctx.role, Action.SWEEP_DUE_DATES):
        raise AuthorizationError("Only admins can run the due date sweep")

    today = today or utcnow().date()
    horizon = today + timedelta(days=DUE_SOON_DAYS)
    result = await db.execute(
        select(Tag).where(
            Tag.company_id == ctx.company_id,
            Tag.due_date.isnot(None),
            Tag.due_date <= horizon,
            Tag.status.in_(OPEN_STATUSES),
        )
    )
    tags = result.scalars().all()
    if not tags:
        return 0

    day_start = datetime.combine(today, time.min, tzinfo=timezone.utc)
    already = await db.execute(
        select(Notification).where(
            Notification.company_id == ctx.company_id,
            Notification.type.in_((NotificationType.TASK_DUE_SOON, NotificationType.TASK_OVERDUE)),
            Notification.created_at >= day_start,
        )
    )
    sent = {(n.user_id, n.type, (n.data or {}).get("tag_id")) for n in already.scalars().all()}

    issued = 0
    for tag in tags:
        overdue = tag.due_date < today
        ntype = NotificationType.TASK_OVERDUE if overdue else NotificationType.TASK_DUE_SOON
        recipient = tag.assigned_to_user_id or tag.created_by
        if (recipient, ntype, tag.id) in sent:
            continue
        title = "Task overdue" if overdue else "Task due soon"
        message = f'"{tag.title}" was due on {tag.due_date.isoformat()}' if overdue \
            else f'"{tag.title}" is due on {tag.due_date.isoformat()}'
        stored = await dispatch(
            db, ctx.company_id, [recipient], ntype, title, message,
            {"tag_id": tag.id, "due_date": tag.due_date.isoformat()},
        )
        issued += len(stored)
    return issued
