import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select

from mymcp.core.clock import ensure_utc, utc_now
from mymcp.core.config import settings
from mymcp.core.database import deployment_audits, get_db_session
from mymcp.core.logging import get_request_id, truncate

logger = logging.getLogger("mymcp")

_memory_events: List[Dict[str, Any]] = []  # Fallback buffer when the DB write fails


def record_deployment_audit(
    *,
    server_instance_id: str,
    user_id: Optional[str],
    action: str,
    status: str,
    error_message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[int] = None,
    request_id: Optional[str] = None,
) -> None:
    """Record a provision/stop/delete attempt.

    Notes:
    - Respects AUDIT_ENABLED.
    - Never raises; a failed write is logged and buffered in memory.
    - Never stores secrets; details are truncated.
    """
    if not settings.AUDIT_ENABLED:
        return

    safe_details = None
    if details:
        safe_details = {k: truncate(v) for k, v in details.items()}

    record = {
        "server_instance_id": server_instance_id,
        "user_id": user_id,
        "action": action,
        "status": status,
        "error_message": truncate(error_message) if error_message else None,
        "details": safe_details,
        "duration_ms": duration_ms,
        "request_id": request_id or get_request_id(),
        "created_at": utc_now(),
    }

    try:
        with get_db_session() as session:
            session.execute(insert(deployment_audits).values(**record))
    except Exception as exc:
        logger.warning(f"Deployment audit write failed: {exc}")
        _memory_events.append(record)


def list_deployment_audits(server_instance_id: str) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(deployment_audits)
            .where(deployment_audits.c.server_instance_id == server_instance_id)
            .order_by(deployment_audits.c.id)
        ).fetchall()
        return [
            {**row._asdict(), "created_at": ensure_utc(row.created_at)}
            for row in rows
        ]


def get_buffered_audit_events():
    return list(_memory_events)


def clear_buffered_audit_events() -> None:
    _memory_events.clear()
