"""
mymcp/features/subscriptions/service.py

Subscription lifecycle.

- start_subscription: open a new Active subscription, closing the previous one
- get_active_subscription: newest subscription active at `now`
- update_subscription_status / renew_subscription: billing collaborator hooks

Subscriptions are never deleted; history is kept through status and end_date.
"""

import calendar
import logging
import uuid
from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy import select, insert, update

from mymcp.core.clock import ensure_utc, normalize_now
from mymcp.core.database import get_db_session, plans, subscriptions
from mymcp.core.errors import NotFoundError, ValidationError
from mymcp.features.plans.service import get_plan_for
from mymcp.models.plan import BillingCycle, PlanTier
from mymcp.models.subscription import Subscription, SubscriptionStatus


logger = logging.getLogger("mymcp")


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_billing_after(value: datetime, cycle: Union[BillingCycle, str]) -> datetime:
    """One billing cycle after `value`, clamping to the end of short months."""
    if BillingCycle(cycle) == BillingCycle.YEARLY:
        return _add_months(value, 12)
    return _add_months(value, 1)


def _joined_select():
    return select(
        subscriptions,
        plans.c.tier,
        plans.c.billing_cycle,
    ).select_from(subscriptions.join(plans, subscriptions.c.plan_id == plans.c.plan_id))


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        subscription_id=row.subscription_id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        tier=PlanTier(row.tier),
        billing_cycle=BillingCycle(row.billing_cycle),
        status=SubscriptionStatus(row.status),
        start_date=ensure_utc(row.start_date),
        end_date=ensure_utc(row.end_date),
        next_billing_date=ensure_utc(row.next_billing_date),
        created_at=ensure_utc(row.created_at),
    )


def get_subscription(subscription_id: str) -> Optional[Subscription]:
    with get_db_session() as session:
        row = session.execute(
            _joined_select().where(subscriptions.c.subscription_id == subscription_id)
        ).first()
        if not row:
            return None
        return _row_to_subscription(row)


def list_subscriptions(user_id: str) -> List[Subscription]:
    """Subscription history for a user, newest first."""
    with get_db_session() as session:
        rows = session.execute(
            _joined_select()
            .where(subscriptions.c.user_id == user_id)
            .order_by(subscriptions.c.created_at.desc(), subscriptions.c.start_date.desc())
        ).fetchall()
        return [_row_to_subscription(row) for row in rows]


def get_active_subscription(user_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
    """Newest Status=Active subscription whose dates cover `now`."""
    at = normalize_now(now)
    with get_db_session() as session:
        rows = session.execute(
            _joined_select()
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
            .order_by(subscriptions.c.created_at.desc(), subscriptions.c.start_date.desc())
        ).fetchall()
    for row in rows:
        candidate = _row_to_subscription(row)
        if candidate.is_active(at):
            return candidate
    return None


def start_subscription(
    user_id: str,
    tier: Union[PlanTier, str] = PlanTier.FREE,
    cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Subscribe a user to the (tier, cycle) plan starting at `now`.

    Any currently Active subscription is canceled with end_date=now so that
    at most one subscription is Active per user.

    Raises:
        NotFoundError: no plan exists for (tier, cycle)
        ValidationError: the plan has been retired
    """
    at = normalize_now(now)
    plan = get_plan_for(tier, cycle)
    if plan is None:
        raise NotFoundError(f"No plan for {PlanTier(tier).value}/{BillingCycle(cycle).value}")
    if not plan.is_active:
        raise ValidationError(f"Plan {plan.plan_id} is retired")

    subscription_id = str(uuid.uuid4())
    with get_db_session() as session:
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
            .values(status=SubscriptionStatus.CANCELED.value, end_date=at, updated_at=at)
        )
        session.execute(
            insert(subscriptions).values(
                subscription_id=subscription_id,
                user_id=user_id,
                plan_id=plan.plan_id,
                status=SubscriptionStatus.ACTIVE.value,
                start_date=at,
                end_date=None,
                next_billing_date=next_billing_after(at, plan.billing_cycle),
                created_at=at,
                updated_at=at,
            )
        )

    logger.info(
        f"[subscriptions] started {plan.plan_id}",
        extra={"user_id": user_id, "operation": "subscribe"},
    )
    return get_subscription(subscription_id)


def update_subscription_status(
    subscription_id: str,
    status: Union[SubscriptionStatus, str],
    now: Optional[datetime] = None,
) -> Subscription:
    """Apply a status change reported by billing. Canceling stamps end_date."""
    at = normalize_now(now)
    new_status = SubscriptionStatus(status)
    values = {"status": new_status.value, "updated_at": at}
    if new_status == SubscriptionStatus.CANCELED:
        values["end_date"] = at
    with get_db_session() as session:
        result = session.execute(
            update(subscriptions)
            .where(subscriptions.c.subscription_id == subscription_id)
            .values(**values)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
    return get_subscription(subscription_id)


def renew_subscription(subscription_id: str, now: Optional[datetime] = None) -> Subscription:
    """Advance next_billing_date by one cycle. Only Active subscriptions renew."""
    at = normalize_now(now)
    current = get_subscription(subscription_id)
    if current is None:
        raise NotFoundError(f"Subscription not found: {subscription_id}")
    if not current.is_active(at):
        raise ValidationError("Only active subscriptions can be renewed")

    with get_db_session() as session:
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.subscription_id == subscription_id)
            .values(
                next_billing_date=next_billing_after(current.next_billing_date, current.billing_cycle),
                updated_at=at,
            )
        )
    return get_subscription(subscription_id)
