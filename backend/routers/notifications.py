# routers/notifications.py — Per-user notification feed
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from notification_dispatch import NOTIFICATION_FEED_LIMIT, notification_to_dict
import notification_dispatch

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


# ============================================================
# LIST
# ============================================================

@router.get("")
async def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=NOTIFICATION_FEED_LIMIT, ge=1, le=NOTIFICATION_FEED_LIMIT),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    rows = await notification_dispatch.fetch(db, user.id, unread_only=unread_only, limit=limit)
    return [notification_to_dict(n) for n in rows]


# ============================================================
# COUNT
# ============================================================

@router.get("/count")
async def notification_count(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    return {"unread": await notification_dispatch.unread_count(db, user.id)}


# ============================================================
# MARK READ
# ============================================================

@router.post("/read-all")
async def mark_all_read(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    return {"marked": await notification_dispatch.mark_all_read(db, user.id)}


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    notif = await notification_dispatch.mark_read(db, user.id, notification_id)
    return notification_to_dict(notif)


# ============================================================
# DISMISS
# ============================================================

@router.delete("/{notification_id}")
async def dismiss_notification(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    await notification_dispatch.dismiss(db, user.id, notification_id)
    return {"status": "deleted"}
