# user_search.py — Company-scoped user lookup with a debounced search driver
import os
import asyncio
import logging
from typing import Optional, List, Dict, Any, Callable, Awaitable, Set

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CompanyContext
from models import User, CompanyMembership, CompanyRole

logger = logging.getLogger("tagflow.search")

USER_SEARCH_DEBOUNCE_MS = int(os.getenv("USER_SEARCH_DEBOUNCE_MS", "300"))
MIN_QUERY_LENGTH = 2


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped.lower()}%"


async def search_members(db: AsyncSession, ctx: CompanyContext, query: str, limit: int = 10) -> List[Dict[str, Any]]:
    """Active members of the caller's company whose name or email contains `query`."""
    query = (query or "").strip()
    if len(query) < MIN_QUERY_LENGTH:
        return []
    pattern = _like_pattern(query)
    result = await db.execute(
        select(User, CompanyMembership.role)
        .join(CompanyMembership, CompanyMembership.user_id == User.id)
        .where(
            CompanyMembership.company_id == ctx.company_id,
            CompanyMembership.is_active.is_(True),
            or_(
                func.lower(User.name).like(pattern, escape="\\"),
                func.lower(User.email).like(pattern, escape="\\"),
            ),
        )
        .order_by(User.name)
        .limit(limit)
    )
    return [
        {"id": u.id, "name": u.name, "email": u.email, "role": CompanyRole(role).value}
        for u, role in result.all()
    ]


class SearchDebouncer:
    """
    Runs only the latest query once input has been quiet for `window` seconds.

    A new submission cancels a query that is still waiting. A query already
    running against the database is left to finish, but its result is
    dropped if a newer query has arrived since. A failing search is logged
    and reported once through `on_error`.
    """

    def __init__(
        self,
        search: Callable[[str], Awaitable[Any]],
        deliver: Callable[[str, Any], Awaitable[None]],
        window: float = USER_SEARCH_DEBOUNCE_MS / 1000,
        on_error: Optional[Callable[[str, Exception], Awaitable[None]]] = None,
    ):
        self._search = search
        self._deliver = deliver
        self._on_error = on_error
        self._window = window
        self._seq = 0
        self._timer: Optional[asyncio.Task] = None
        self._timer_seq = 0
        self._running: Set[int] = set()

    def submit(self, query: str) -> asyncio.Task:
        self._seq += 1
        if self._timer is not None and not self._timer.done() and self._timer_seq not in self._running:
            self._timer.cancel()
        self._timer_seq = self._seq
        self._timer = asyncio.create_task(self._fire(self._seq, query))
        return self._timer

    async def _fire(self, seq: int, query: str) -> None:
        await asyncio.sleep(self._window)
        self._running.add(seq)
        try:
            result = await self._search(query)
        except Exception as e:
            logger.warning(f"User search failed for {query!r}: {e}")
            if self._on_error is not None and seq == self._seq:
                await self._on_error(query, e)
            return
        finally:
            self._running.discard(seq)
        if seq == self._seq:
            await self._deliver(query, result)
        else:
            logger.debug(f"Dropped stale search result for {query!r}")

    def close(self) -> None:
        self._seq += 1
        if self._timer is not None and not self._timer.done() and self._timer_seq not in self._running:
            self._timer.cancel()
