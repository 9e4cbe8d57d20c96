# audit.py — Append-only audit trail shared by the lifecycle modules
import contextvars
from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditLog, AuditEventType

# Async-safe: set by the HTTP middleware for the duration of one request
_request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)


def get_current_request_id() -> Optional[str]:
    return _request_id_var.get()


def set_current_request_id(request_id: Optional[str]) -> contextvars.Token:
    return _request_id_var.set(request_id)


def reset_current_request_id(token: contextvars.Token) -> None:
    _request_id_var.reset(token)


def record_audit(
    db: AsyncSession,
    event_type: AuditEventType,
    user_id: Optional[str],
    company_id: Optional[str],
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> AuditLog:
    """Stage an audit row tagged with the current request id. The caller's commit persists it."""
    entry = AuditLog(
        event_type=event_type,
        user_id=user_id,
        company_id=company_id,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details or {},
        ip_address=ip_address,
        request_id=get_current_request_id(),
    )
    db.add(entry)
    return entry
