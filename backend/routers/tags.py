# routers/tags.py — Tags (tasks): CRUD, status, responses with time logging, subtasks, stats
from datetime import date, datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CompanyContext, get_company_context
from database import get_db_session
import notification_dispatch
import task_lifecycle

router = APIRouter(prefix="/api/v1/companies/{company_id}/tags", tags=["Tags"])


# ============================================================
# SCHEMAS
# ============================================================

class TagCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    link: Optional[str] = None
    priority: str = Field(default="Medium", description="Low | Medium | High | Critical")
    assigned_to_user_id: Optional[str] = None
    assigned_to_team_id: Optional[str] = None
    due_date: Optional[date] = None
    estimated_hours: Optional[float] = None


class TagUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    link: Optional[str] = None
    priority: Optional[str] = None
    assigned_to_user_id: Optional[str] = None
    assigned_to_team_id: Optional[str] = None
    due_date: Optional[date] = None
    estimated_hours: Optional[float] = None


class StatusChange(BaseModel):
    status: str = Field(..., description="Pending | Accepted | In Progress | Completed | Rejected")


class ResponseCreate(BaseModel):
    comment: Optional[str] = None
    status_update: Optional[str] = None
    time_logged: Optional[float] = None


class TagOut(BaseModel):
    id: str
    company_id: str
    title: str
    description: Optional[str] = None
    link: Optional[str] = None
    status: str
    priority: str
    assigned_to_user_id: Optional[str] = None
    assigned_to_team_id: Optional[str] = None
    created_by: str
    parent_tag_id: Optional[str] = None
    due_date: Optional[str] = None
    estimated_hours: Optional[float] = None
    actual_hours: float = 0.0
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    subtasks: List["TagOut"] = []
    responses: List[dict] = []


TagOut.model_rebuild()


def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, (datetime, date)) else str(dt)


def _tag_to_out(tag, subtasks=None, responses=None) -> dict:
    return TagOut(
        id=tag.id,
        company_id=tag.company_id,
        title=tag.title,
        description=tag.description,
        link=tag.link,
        status=tag.status.value,
        priority=tag.priority.value,
        assigned_to_user_id=tag.assigned_to_user_id,
        assigned_to_team_id=tag.assigned_to_team_id,
        created_by=tag.created_by,
        parent_tag_id=tag.parent_tag_id,
        due_date=_ts(tag.due_date),
        estimated_hours=tag.estimated_hours,
        actual_hours=tag.actual_hours or 0.0,
        started_at=_ts(tag.started_at),
        completed_at=_ts(tag.completed_at),
        created_at=_ts(tag.created_at),
        updated_at=_ts(tag.updated_at),
        subtasks=[_tag_to_out(s) for s in (subtasks or [])],
        responses=[_response_out(r) for r in (responses or [])],
    ).model_dump()


def _response_out(r) -> dict:
    return {
        "id": r.id,
        "tag_id": r.tag_id,
        "user_id": r.user_id,
        "comment": r.comment,
        "status_update": r.status_update.value if r.status_update else None,
        "time_logged": r.time_logged or 0.0,
        "created_at": _ts(r.created_at),
    }


# ============================================================
# LIST / STATS
# ============================================================

@router.get("")
async def list_tags(
    status: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    assigned_to: Optional[str] = Query(None),
    team_id: Optional[str] = Query(None),
    parent_id: Optional[str] = Query(None),
    top_level: bool = Query(default=False),
    mine: bool = Query(default=False),
    search: Optional[str] = Query(None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    tags = await task_lifecycle.list_tags(
        db, ctx, status=status, priority=priority, assigned_to_user_id=assigned_to,
        team_id=team_id, parent_id=parent_id, top_level=top_level, mine=mine,
        search=search, limit=limit, offset=offset,
    )
    return [_tag_to_out(t) for t in tags]


@router.get("/stats")
async def tag_stats(
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await task_lifecycle.stats(db, ctx)


@router.post("/sweep-due-dates")
async def sweep_due_dates(
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Send due-soon and overdue notices for open tags"""
    issued = await notification_dispatch.sweep_due_dates(db, ctx)
    return {"notifications_sent": issued}


# ============================================================
# CREATE / READ / UPDATE / DELETE
# ============================================================

@router.post("", status_code=201)
async def create_tag(
    data: TagCreate,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    tag = await task_lifecycle.create(db, ctx, **data.model_dump())
    return _tag_to_out(tag)


@router.get("/{tag_id}")
async def get_tag(
    tag_id: str,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    tag = await task_lifecycle.get(db, ctx, tag_id)
    subtasks = await task_lifecycle.list_subtasks(db, ctx, tag_id)
    responses = await task_lifecycle.list_responses(db, ctx, tag_id)
    return _tag_to_out(tag, subtasks, responses)


@router.patch("/{tag_id}")
async def update_tag(
    tag_id: str,
    data: TagUpdate,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    tag = await task_lifecycle.update_tag(db, ctx, tag_id, data.model_dump(exclude_unset=True))
    return _tag_to_out(tag)


@router.delete("/{tag_id}")
async def delete_tag(
    tag_id: str,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    await task_lifecycle.delete_tag(db, ctx, tag_id)
    return {"status": "deleted"}


# ============================================================
# STATUS / RESPONSES / SUBTASKS
# ============================================================

@router.post("/{tag_id}/status")
async def change_status(
    tag_id: str,
    data: StatusChange,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    tag = await task_lifecycle.update_status(db, ctx, tag_id, data.status)
    return _tag_to_out(tag)


@router.get("/{tag_id}/responses")
async def list_responses(
    tag_id: str,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    return [_response_out(r) for r in await task_lifecycle.list_responses(db, ctx, tag_id)]


@router.post("/{tag_id}/responses", status_code=201)
async def add_response(
    tag_id: str,
    data: ResponseCreate,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    response = await task_lifecycle.add_response(
        db, ctx, tag_id,
        comment=data.comment, status_update=data.status_update, time_logged=data.time_logged,
    )
    return _response_out(response)


@router.post("/{tag_id}/subtasks", status_code=201)
async def create_subtask(
    tag_id: str,
    data: TagCreate,
    ctx: CompanyContext = Depends(get_company_context),
    db: AsyncSession = Depends(get_db_session),
):
    tag = await task_lifecycle.create_subtask(db, ctx, tag_id, **data.model_dump())
    return _tag_to_out(tag)
