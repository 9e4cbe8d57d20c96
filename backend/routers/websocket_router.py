# routers/websocket_router.py — Real-time channel: notification push and debounced user search
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import SECRET_KEY, ALGORITHM, AuthService, CompanyContext, get_active_membership
from database import get_db_context
from realtime import manager
from user_search import SearchDebouncer, search_members

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("tagflow.ws")

WS_AUTH_FAILED = 4001
WS_NOT_MEMBER = 4003


def _verify_ws_token(token: str) -> Optional[dict]:
    """Verify JWT token for WebSocket authentication"""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != "access":
        return None
    return payload


async def authenticate_socket(
    db: AsyncSession,
    token: str,
    company_id: Optional[str] = None,
) -> Tuple[Optional[CompanyContext], Optional[int]]:
    """Resolve the handshake token to a company context, or to the close code to refuse with."""
    payload = _verify_ws_token(token)
    if not payload:
        return None, WS_AUTH_FAILED

    user_id = payload.get("sub")
    company_id = company_id or payload.get("company_id")
    if not user_id or not company_id:
        return None, WS_AUTH_FAILED
    if await AuthService.is_payload_revoked(payload, db):
        return None, WS_AUTH_FAILED

    membership = await get_active_membership(db, user_id, company_id)
    if not membership:
        return None, WS_NOT_MEMBER
    ctx = CompanyContext(
        user_id=user_id,
        company_id=company_id,
        role=membership.role,
        email=payload.get("email", ""),
    )
    return ctx, None


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
    company_id: Optional[str] = Query(None),
):
    """Main WebSocket endpoint for real-time communication"""
    payload = _verify_ws_token(token)
    if not payload:
        await websocket.close(code=WS_AUTH_FAILED, reason="Authentication failed")
        return

    async with get_db_context() as db:
        ctx, close_code = await authenticate_socket(db, token, company_id)
    if ctx is None:
        reason = "Not a member of this company" if close_code == WS_NOT_MEMBER else "Authentication failed"
        await websocket.close(code=close_code, reason=reason)
        return
    user_id, company_id = ctx.user_id, ctx.company_id

    async def run_search(query: str):
        async with get_db_context() as db:
            return await search_members(db, ctx, query)

    async def _send(message: dict):
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.warning(f"Could not deliver {message['type']} to user={user_id[:8]}: {e}")

    async def deliver(query: str, results):
        await _send({"type": "search.results", "query": query, "results": results})

    async def report_error(query: str, exc: Exception):
        await _send({"type": "search.error", "query": query, "detail": "Search is temporarily unavailable"})

    debouncer = SearchDebouncer(run_search, deliver, on_error=report_error)
    await manager.connect(websocket, user_id, company_id)

    await websocket.send_json({
        "type": "connected",
        "user_id": user_id,
        "company_id": company_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })

    try:
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type", "")

            if msg_type == "ping":
                await websocket.send_json({"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()})

            elif msg_type == "search":
                debouncer.submit(str(data.get("query", "")))

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        debouncer.close()
        manager.disconnect(user_id, company_id)


@router.get("/ws/stats")
async def websocket_stats():
    """Get WebSocket connection statistics"""
    return manager.get_stats()
