"""
mymcp/features/usage/service.py

Usage accounting service.

Handles:
- Lazy creation of the (user, year, month) usage row
- Atomic request counter increments with a request log entry
- Usage queries for entitlement checks and reporting
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import case, select, insert, update
from sqlalchemy.exc import IntegrityError

from mymcp.core.clock import ensure_utc, normalize_now
from mymcp.core.database import get_db_session, user_usage, request_logs
from mymcp.core.errors import ConfigurationError, ValidationError
from mymcp.core.logging import log_event
from mymcp.core.metrics import usage_increments_total
from mymcp.features.subscriptions.service import get_active_subscription
from mymcp.models.usage import RequestLog, UserUsage


logger = logging.getLogger("mymcp")

SERVER_CREATION_ENDPOINT = "/servers"
SERVER_CREATION_METHOD = "POST"


def _month_of(at: datetime) -> Tuple[int, int]:
    return at.year, at.month


def _row_to_usage(row) -> UserUsage:
    return UserUsage(
        usage_id=row.usage_id,
        user_id=row.user_id,
        subscription_id=row.subscription_id,
        year=row.year,
        month=row.month,
        request_count=row.request_count,
        last_updated=ensure_utc(row.last_updated),
    )


def _select_usage(session, user_id: str, year: int, month: int):
    return session.execute(
        select(user_usage)
        .where(user_usage.c.user_id == user_id)
        .where(user_usage.c.year == year)
        .where(user_usage.c.month == month)
    ).first()


def get_current_usage(user_id: str, now: Optional[datetime] = None) -> Optional[UserUsage]:
    """Usage row for the month containing `now`, or None if nothing was billed yet."""
    year, month = _month_of(normalize_now(now))
    with get_db_session() as session:
        row = _select_usage(session, user_id, year, month)
        if not row:
            return None
        return _row_to_usage(row)


def get_monthly_request_count(user_id: str, now: Optional[datetime] = None) -> int:
    usage = get_current_usage(user_id, now)
    return usage.request_count if usage else 0


def get_or_create_usage(user_id: str, now: Optional[datetime] = None) -> UserUsage:
    """
    Resolve the current month's usage row, creating it on first use.

    The new row is linked to the user's active subscription. Concurrent
    creators race on the (user_id, year, month) unique constraint; the
    loser re-reads the winner's row.

    Raises:
        ConfigurationError: the user has no active subscription
    """
    at = normalize_now(now)
    year, month = _month_of(at)

    existing = get_current_usage(user_id, at)
    if existing:
        return existing

    subscription = get_active_subscription(user_id, at)
    if subscription is None:
        log_event(
            "error",
            "usage.no_active_subscription",
            user_id=user_id,
            operation="track_usage",
            error_code="configuration_error",
        )
        raise ConfigurationError(f"No active subscription for user {user_id}")

    try:
        with get_db_session() as session:
            session.execute(
                insert(user_usage).values(
                    usage_id=str(uuid.uuid4()),
                    user_id=user_id,
                    subscription_id=subscription.subscription_id,
                    year=year,
                    month=month,
                    request_count=0,
                    last_updated=at,
                    created_at=at,
                )
            )
    except IntegrityError:
        logger.debug(f"[usage] row for {user_id} {year}-{month:02d} created concurrently")

    with get_db_session() as session:
        row = _select_usage(session, user_id, year, month)
        return _row_to_usage(row)


def track_request(
    user_id: str,
    server_id: Optional[str],
    endpoint: str,
    method: str,
    *,
    response_code: int = 200,
    response_time_ms: int = 0,
    weight: int = 1,
    now: Optional[datetime] = None,
) -> UserUsage:
    """
    Count one billable call against the current month.

    The increment is a single UPDATE ... SET request_count = request_count + w
    so concurrent callers never lose updates.
    """
    if weight < 1:
        raise ValidationError("weight must be positive")
    at = normalize_now(now)
    usage = get_or_create_usage(user_id, at)

    with get_db_session() as session:
        session.execute(
            update(user_usage)
            .where(user_usage.c.usage_id == usage.usage_id)
            .values(
                request_count=user_usage.c.request_count + weight,
                # Never moves backwards when an older reading lands second
                last_updated=case((user_usage.c.last_updated < at, at), else_=user_usage.c.last_updated),
            )
        )
        session.execute(
            insert(request_logs).values(
                user_id=user_id,
                usage_id=usage.usage_id,
                server_instance_id=server_id,
                endpoint=endpoint,
                method=method.upper(),
                response_code=response_code,
                response_time_ms=response_time_ms,
                weight=weight,
                request_timestamp=at,
            )
        )
        row = session.execute(
            select(user_usage).where(user_usage.c.usage_id == usage.usage_id)
        ).first()

    usage_increments_total.inc(labels={"endpoint": endpoint})
    return _row_to_usage(row)


def track_server_creation(user_id: str, server_id: str, now: Optional[datetime] = None) -> UserUsage:
    """Server creation is billed as one request."""
    return track_request(
        user_id,
        server_id,
        SERVER_CREATION_ENDPOINT,
        SERVER_CREATION_METHOD,
        response_code=201,
        weight=1,
        now=now,
    )


def list_request_logs(user_id: str, year: Optional[int] = None, month: Optional[int] = None) -> List[RequestLog]:
    """Request log entries for a user, oldest first, optionally for one month."""
    stmt = (
        select(request_logs)
        .select_from(request_logs.join(user_usage, request_logs.c.usage_id == user_usage.c.usage_id))
        .where(request_logs.c.user_id == user_id)
        .order_by(request_logs.c.request_timestamp, request_logs.c.id)
    )
    if year is not None:
        stmt = stmt.where(user_usage.c.year == year)
    if month is not None:
        stmt = stmt.where(user_usage.c.month == month)

    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()
        return [
            RequestLog(
                user_id=row.user_id,
                usage_id=row.usage_id,
                server_instance_id=row.server_instance_id,
                endpoint=row.endpoint,
                method=row.method,
                response_code=row.response_code,
                response_time_ms=row.response_time_ms,
                weight=row.weight,
                request_timestamp=ensure_utc(row.request_timestamp),
            )
            for row in rows
        ]
