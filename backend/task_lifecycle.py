"""
Tagflow — Tag (task) Lifecycle

Statuses: Pending (initial), Accepted, In Progress, Completed, Rejected.
Any authorised actor may move a tag to any status; concurrent writers race
and the last write wins. Responses are append-only and may carry a status
update and logged hours, which are applied to the tag in the same
transaction.
"""

import logging
from datetime import date
from typing import Optional, List, Dict, Any, Iterable
from urllib.parse import urlparse

from sqlalchemy import select, func, update, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_audit
from auth import CompanyContext
from errors import AuthorizationError, NotFoundError, ValidationError
from models import (
    Tag, TagResponse, TagStatus, TagPriority, Team, TeamMembership,
    CompanyMembership, AuditEventType, NotificationType, utcnow,
)
from notification_dispatch import dispatch
from policy import Action, can_perform, can_edit_task

logger = logging.getLogger("tagflow.tags")

EDITABLE_FIELDS = (
    "title", "description", "link", "priority", "assigned_to_user_id",
    "assigned_to_team_id", "due_date", "estimated_hours",
)
CLOSED_STATUSES = (TagStatus.COMPLETED, TagStatus.REJECTED)


# ============================================================
# VALIDATION
# ============================================================

def _coerce_status(value: Any) -> TagStatus:
    try:
        return TagStatus(value)
    except ValueError:
        raise ValidationError(f"Status must be one of: {', '.join(s.value for s in TagStatus)}")


def _coerce_priority(value: Any) -> TagPriority:
    try:
        return TagPriority(value)
    except ValueError:
        raise ValidationError(f"Priority must be one of: {', '.join(p.value for p in TagPriority)}")


def _clean_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and normalise editable tag fields. Only keys present are checked."""
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

    clean = dict(fields)
    if "title" in clean:
        title = (clean["title"] or "").strip()
        if not title:
            raise ValidationError("Title is required")
        clean["title"] = title
    if "link" in clean:
        link = (clean["link"] or "").strip() or None
        if link:
            parsed = urlparse(link)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValidationError("Link must be an http(s) URL")
        clean["link"] = link
    if "priority" in clean:
        clean["priority"] = _coerce_priority(clean["priority"] or TagPriority.MEDIUM)
    if clean.get("estimated_hours") is not None and clean["estimated_hours"] <= 0:
        raise ValidationError("Estimated hours must be greater than zero")
    if clean.get("due_date") is not None and not isinstance(clean["due_date"], date):
        try:
            clean["due_date"] = date.fromisoformat(str(clean["due_date"]))
        except ValueError:
            raise ValidationError("Due date must be an ISO date (YYYY-MM-DD)")
    for key in ("assigned_to_user_id", "assigned_to_team_id", "description"):
        if key in clean and clean[key] == "":
            clean[key] = None
    return clean


async def _check_assignees(db: AsyncSession, company_id: str, fields: Dict[str, Any]) -> None:
    user_id = fields.get("assigned_to_user_id")
    if user_id:
        member = await db.execute(
            select(CompanyMembership.id).where(
                CompanyMembership.company_id == company_id,
                CompanyMembership.user_id == user_id,
                CompanyMembership.is_active.is_(True),
            )
        )
        if not member.scalar_one_or_none():
            raise ValidationError("Assigned user is not a member of this company")
    team_id = fields.get("assigned_to_team_id")
    if team_id:
        team = await db.get(Team, team_id)
        if not team or team.company_id != company_id or not team.is_active:
            raise ValidationError("Assigned team does not belong to this company")


def _apply_status(tag: Tag, status: TagStatus) -> None:
    now = utcnow()
    tag.status = status
    if status == TagStatus.IN_PROGRESS and tag.started_at is None:
        tag.started_at = now
    if status == TagStatus.COMPLETED:
        tag.completed_at = now
    elif tag.completed_at is not None:
        tag.completed_at = None


async def _get_tag(db: AsyncSession, company_id: str, tag_id: str) -> Tag:
    result = await db.execute(select(Tag).where(Tag.id == tag_id, Tag.company_id == company_id))
    tag = result.scalar_one_or_none()
    if not tag:
        raise NotFoundError("Tag not found")
    return tag


async def _watchers(db: AsyncSession, tag: Tag) -> List[str]:
    """Creator, assigned user and members of the assigned team."""
    ids = [tag.created_by, tag.assigned_to_user_id]
    if tag.assigned_to_team_id:
        result = await db.execute(
            select(TeamMembership.user_id).where(TeamMembership.team_id == tag.assigned_to_team_id)
        )
        ids.extend(result.scalars().all())
    return [uid for uid in ids if uid]


async def _notify(
    db: AsyncSession,
    ctx: CompanyContext,
    tag: Tag,
    user_ids: Iterable[str],
    ntype: NotificationType,
    title: str,
    message: str,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    data = {"tag_id": tag.id, "tag_title": tag.title}
    data.update(extra or {})
    await dispatch(db, ctx.company_id, user_ids, ntype, title, message, data, exclude_user_id=ctx.user_id)


async def _notify_assignment(db: AsyncSession, ctx: CompanyContext, tag: Tag) -> None:
    recipients = [tag.assigned_to_user_id]
    if tag.assigned_to_team_id:
        result = await db.execute(
            select(TeamMembership.user_id).where(TeamMembership.team_id == tag.assigned_to_team_id)
        )
        recipients.extend(result.scalars().all())
    await _notify(
        db, ctx, tag, recipients, NotificationType.TASK_ASSIGNED,
        "New task assigned", f'{ctx.name or ctx.email} assigned you "{tag.title}"',
    )


# ============================================================
# CREATE
# ============================================================

async def _create(db: AsyncSession, ctx: CompanyContext, fields: Dict[str, Any], parent_id: Optional[str]) -> Tag:
    if not can_perform(ctx.role, Action.CREATE_TAG):
        raise AuthorizationError("Your role cannot create tags")
    clean = _clean_fields(fields)
    if "title" not in clean:
        raise ValidationError("Title is required")
    if parent_id:
        await _get_tag(db, ctx.company_id, parent_id)
    await _check_assignees(db, ctx.company_id, clean)

    tag = Tag(
        company_id=ctx.company_id,
        created_by=ctx.user_id,
        parent_tag_id=parent_id,
        status=TagStatus.PENDING,
        priority=clean.pop("priority", TagPriority.MEDIUM),
        actual_hours=0.0,
        **clean,
    )
    db.add(tag)
    await db.commit()
    await db.refresh(tag)
    logger.info(f"Tag {tag.id[:8]} created in company {ctx.company_id[:8]}")

    await _notify_assignment(db, ctx, tag)
    return tag


async def create(db: AsyncSession, ctx: CompanyContext, **fields: Any) -> Tag:
    return await _create(db, ctx, fields, None)


async def create_subtask(db: AsyncSession, ctx: CompanyContext, parent_id: str, **fields: Any) -> Tag:
    """Create a tag under `parent_id`. Nesting depth is not limited."""
    return await _create(db, ctx, fields, parent_id)


# ============================================================
# READ
# ============================================================

async def get(db: AsyncSession, ctx: CompanyContext, tag_id: str) -> Tag:
    return await _get_tag(db, ctx.company_id, tag_id)


async def list_tags(
    db: AsyncSession,
    ctx: CompanyContext,
    status: Optional[Any] = None,
    priority: Optional[Any] = None,
    assigned_to_user_id: Optional[str] = None,
    team_id: Optional[str] = None,
    parent_id: Optional[str] = None,
    top_level: bool = False,
    mine: bool = False,
    search: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Tag]:
    query = select(Tag).where(Tag.company_id == ctx.company_id)
    if status:
        query = query.where(Tag.status == _coerce_status(status))
    if priority:
        query = query.where(Tag.priority == _coerce_priority(priority))
    if assigned_to_user_id:
        query = query.where(Tag.assigned_to_user_id == assigned_to_user_id)
    if team_id:
        query = query.where(Tag.assigned_to_team_id == team_id)
    if parent_id:
        query = query.where(Tag.parent_tag_id == parent_id)
    elif top_level:
        query = query.where(Tag.parent_tag_id.is_(None))
    if mine:
        query = query.where(or_(Tag.assigned_to_user_id == ctx.user_id, Tag.created_by == ctx.user_id))
    if search:
        pattern = f"%{search.strip().lower()}%"
        query = query.where(or_(
            func.lower(Tag.title).like(pattern),
            func.lower(func.coalesce(Tag.description, "")).like(pattern),
        ))
    query = query.order_by(Tag.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_subtasks(db: AsyncSession, ctx: CompanyContext, parent_id: str) -> List[Tag]:
    """Every direct child of a tag, oldest first. Not paginated."""
    result = await db.execute(
        select(Tag)
        .where(Tag.company_id == ctx.company_id, Tag.parent_tag_id == parent_id)
        .order_by(Tag.created_at)
    )
    return list(result.scalars().all())


async def list_responses(db: AsyncSession, ctx: CompanyContext, tag_id: str) -> List[TagResponse]:
    await _get_tag(db, ctx.company_id, tag_id)
    result = await db.execute(
        select(TagResponse).where(TagResponse.tag_id == tag_id).order_by(TagResponse.created_at)
    )
    return list(result.scalars().all())


# ============================================================
# UPDATE
# ============================================================

async def update_tag(db: AsyncSession, ctx: CompanyContext, tag_id: str, changes: Dict[str, Any]) -> Tag:
    """Edit tag fields. Logged hours are only changed through responses."""
    clean = _clean_fields(changes)
    tag = await _get_tag(db, ctx.company_id, tag_id)
    if not can_edit_task(tag, ctx.user_id):
        raise AuthorizationError("Only the creator or the assigned user can edit this tag")
    await _check_assignees(db, ctx.company_id, clean)

    previous_assignee = tag.assigned_to_user_id
    previous_team = tag.assigned_to_team_id
    for key, value in clean.items():
        setattr(tag, key, value)
    await db.commit()
    await db.refresh(tag)

    if tag.assigned_to_user_id != previous_assignee or tag.assigned_to_team_id != previous_team:
        await _notify_assignment(db, ctx, tag)
    return tag


async def update_status(db: AsyncSession, ctx: CompanyContext, tag_id: str, new_status: Any) -> Tag:
    status = _coerce_status(new_status)
    tag = await _get_tag(db, ctx.company_id, tag_id)
    if not can_edit_task(tag, ctx.user_id):
        raise AuthorizationError("Only the creator or the assigned user can change the status")

    previous = tag.status
    _apply_status(tag, status)
    await db.commit()
    await db.refresh(tag)

    if previous != status:
        await _notify(
            db, ctx, tag, await _watchers(db, tag), NotificationType.TASK_STATUS_CHANGED,
            "Task status changed", f'"{tag.title}" moved from {previous.value} to {status.value}',
            {"from": previous.value, "to": status.value},
        )
    return tag


async def add_response(
    db: AsyncSession,
    ctx: CompanyContext,
    tag_id: str,
    comment: Optional[str] = None,
    status_update: Optional[Any] = None,
    time_logged: Optional[float] = None,
) -> TagResponse:
    comment = (comment or "").strip() or None
    status = _coerce_status(status_update) if status_update else None
    if time_logged is not None and time_logged < 0:
        raise ValidationError("Logged time cannot be negative")
    hours = float(time_logged or 0)
    if comment is None and status is None and hours == 0:
        raise ValidationError("A response needs a comment, a status update or logged time")
    if not can_perform(ctx.role, Action.RESPOND_TAG):
        raise AuthorizationError("Your role cannot respond to tags")

    tag = await _get_tag(db, ctx.company_id, tag_id)
    if status is not None and not can_edit_task(tag, ctx.user_id):
        raise AuthorizationError("Only the creator or the assigned user can change the status")

    response = TagResponse(
        tag_id=tag.id,
        user_id=ctx.user_id,
        comment=comment,
        status_update=status,
        time_logged=hours,
    )
    db.add(response)
    previous = tag.status
    if status is not None:
        _apply_status(tag, status)
    if hours > 0:
        await db.execute(
            update(Tag)
            .where(Tag.id == tag.id)
            .values(actual_hours=Tag.actual_hours + hours)
            .execution_options(synchronize_session=False)
        )
    await db.commit()
    await db.refresh(tag)

    watchers = await _watchers(db, tag)
    if comment:
        await _notify(
            db, ctx, tag, watchers, NotificationType.TASK_COMMENT_ADDED,
            "New comment", f'{ctx.name or ctx.email} commented on "{tag.title}"',
            {"response_id": response.id},
        )
    if status is not None and status != previous:
        await _notify(
            db, ctx, tag, watchers, NotificationType.TASK_STATUS_CHANGED,
            "Task status changed", f'"{tag.title}" moved from {previous.value} to {status.value}',
            {"from": previous.value, "to": status.value},
        )
    return response


# ============================================================
# DELETE
# ============================================================

async def delete_tag(db: AsyncSession, ctx: CompanyContext, tag_id: str) -> None:
    """Remove a tag and its responses. Subtasks survive as top-level tags."""
    tag = await _get_tag(db, ctx.company_id, tag_id)
    if not can_edit_task(tag, ctx.user_id):
        raise AuthorizationError("Only the creator or the assigned user can delete this tag")

    await db.execute(delete(TagResponse).where(TagResponse.tag_id == tag.id))
    await db.execute(
        update(Tag)
        .where(Tag.parent_tag_id == tag.id)
        .values(parent_tag_id=None)
        .execution_options(synchronize_session=False)
    )
    await db.delete(tag)
    record_audit(db, AuditEventType.TAG_DELETED, ctx.user_id, ctx.company_id, "tag", tag_id,
                 {"title": tag.title})
    await db.commit()
    logger.info(f"Tag {tag_id[:8]} deleted from company {ctx.company_id[:8]}")


# ============================================================
# STATS
# ============================================================

async def stats(db: AsyncSession, ctx: CompanyContext) -> Dict[str, Any]:
    by_status = {s.value: 0 for s in TagStatus}
    rows = await db.execute(
        select(Tag.status, func.count(Tag.id)).where(Tag.company_id == ctx.company_id).group_by(Tag.status)
    )
    for status, count in rows.all():
        by_status[TagStatus(status).value] = count

    by_priority = {p.value: 0 for p in TagPriority}
    rows = await db.execute(
        select(Tag.priority, func.count(Tag.id)).where(Tag.company_id == ctx.company_id).group_by(Tag.priority)
    )
    for priority, count in rows.all():
        by_priority[TagPriority(priority).value] = count

    overdue = (await db.execute(
        select(func.count(Tag.id)).where(
            Tag.company_id == ctx.company_id,
            Tag.due_date.isnot(None),
            Tag.due_date < utcnow().date(),
            Tag.status.notin_(CLOSED_STATUSES),
        )
    )).scalar() or 0

    hours = (await db.execute(
        select(func.coalesce(func.sum(Tag.estimated_hours), 0), func.coalesce(func.sum(Tag.actual_hours), 0))
        .where(Tag.company_id == ctx.company_id)
    )).one()

    total = sum(by_status.values())
    completed = by_status[TagStatus.COMPLETED.value]
    return {
        "total": total,
        "by_status": by_status,
        "by_priority": by_priority,
        "overdue": overdue,
        "completion_rate": round(completed / total * 100, 1) if total else 0.0,
        "estimated_hours": float(hours[0]),
        "actual_hours": float(hours[1]),
    }
