"""
User domain service.
- get_or_create_user(external_id, email, ...)
- get_user(user_id) / get_user_by_external_id(external_id)

Local users are keyed by the identity provider's immutable subject id.
A new user starts on the default plan.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from mymcp.core.clock import ensure_utc, normalize_now
from mymcp.core.config import settings
from mymcp.core.database import get_db_session, users as app_users
from mymcp.core.errors import ConfigurationError, NotFoundError
from mymcp.features.subscriptions.service import list_subscriptions, start_subscription
from mymcp.models.plan import BillingCycle, PlanTier
from mymcp.models.user import User


logger = logging.getLogger("mymcp")


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        external_id=row.external_id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        created_at=ensure_utc(row.created_at),
    )


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        if not row:
            return None
        return _row_to_user(row)


def get_user_by_external_id(external_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(
            select(app_users).where(app_users.c.external_id == external_id)
        ).first()
        if not row:
            return None
        return _row_to_user(row)


def _refresh_profile(existing: User, email: str, first_name: Optional[str], last_name: Optional[str], at: datetime) -> User:
    changes = {}
    if email and email != existing.email:
        changes["email"] = email
    if first_name and first_name != existing.first_name:
        changes["first_name"] = first_name
    if last_name and last_name != existing.last_name:
        changes["last_name"] = last_name
    if not changes:
        return existing

    with get_db_session() as session:
        session.execute(
            update(app_users)
            .where(app_users.c.user_id == existing.user_id)
            .values(updated_at=at, **changes)
        )
    return existing.model_copy(update=changes)


def _start_default_subscription(user_id: str, at: datetime) -> None:
    try:
        start_subscription(user_id, settings.DEFAULT_PLAN_TIER or PlanTier.FREE, BillingCycle.MONTHLY, now=at)
    except (ValueError, NotFoundError) as exc:
        # Covers unknown tiers, retired plans and an unseeded catalog
        raise ConfigurationError(f"Default plan unavailable: {settings.DEFAULT_PLAN_TIER}") from exc


def get_or_create_user(
    external_id: str,
    email: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> User:
    at = normalize_now(now)
    email = (email or "").strip()

    existing = get_user_by_external_id(external_id)
    if existing:
        if not list_subscriptions(existing.user_id):
            # Registration stopped before the default plan was attached
            _start_default_subscription(existing.user_id, at)
        return _refresh_profile(existing, email, first_name, last_name, at)

    user_id = str(uuid.uuid4())
    try:
        with get_db_session() as session:
            session.execute(
                insert(app_users).values(
                    user_id=user_id,
                    external_id=external_id,
                    email=email,
                    first_name=first_name,
                    last_name=last_name,
                    created_at=at,
                    updated_at=at,
                )
            )
    except IntegrityError:
        # Another request registered the same subject first
        winner = get_user_by_external_id(external_id)
        if winner is None:
            raise
        return winner

    _start_default_subscription(user_id, at)
    logger.info("[users] registered", extra={"user_id": user_id})

    return get_user(user_id)
