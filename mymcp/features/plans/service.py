"""
mymcp/features/plans/service.py

Plan persistence.

Handles:
- Plan seeding (one row per priced (tier, cycle) pair)
- Plan lookup by id or by (tier, cycle)
- Retiring plans without deleting them
"""

import logging
from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from mymcp.core.clock import ensure_utc, normalize_now
from mymcp.core.database import get_db_session, plans
from mymcp.core.errors import NotFoundError
from mymcp.features.plans.catalog import declared_plans
from mymcp.models.plan import BillingCycle, Plan, PlanTier, plan_id_for


logger = logging.getLogger("mymcp")


def _row_to_plan(row) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        tier=PlanTier(row.tier),
        billing_cycle=BillingCycle(row.billing_cycle),
        is_active=bool(row.is_active),
        created_at=ensure_utc(row.created_at),
    )


def seed_plans(now: Optional[datetime] = None) -> None:
    """
    Seed catalog plans into the database (idempotent).

    Safe to call concurrently: the (tier, billing_cycle) unique constraint
    rejects duplicates and the loser simply moves on.
    """
    at = normalize_now(now)
    for tier, cycle in declared_plans():
        plan_id = plan_id_for(tier, cycle)
        with get_db_session() as session:
            existing = session.execute(
                select(plans.c.plan_id).where(plans.c.plan_id == plan_id)
            ).first()
            if existing:
                continue
        try:
            with get_db_session() as session:
                session.execute(
                    insert(plans).values(
                        plan_id=plan_id,
                        tier=tier.value,
                        billing_cycle=cycle.value,
                        is_active=True,
                        created_at=at,
                        updated_at=at,
                    )
                )
        except IntegrityError:
            logger.debug(f"[plans] {plan_id} seeded concurrently")


def get_plan(plan_id: str) -> Optional[Plan]:
    with get_db_session() as session:
        row = session.execute(select(plans).where(plans.c.plan_id == plan_id)).first()
        if not row:
            return None
        return _row_to_plan(row)


def get_plan_for(tier: Union[PlanTier, str], cycle: Union[BillingCycle, str]) -> Optional[Plan]:
    with get_db_session() as session:
        row = session.execute(
            select(plans)
            .where(plans.c.tier == PlanTier(tier).value)
            .where(plans.c.billing_cycle == BillingCycle(cycle).value)
        ).first()
        if not row:
            return None
        return _row_to_plan(row)


def list_plans(active_only: bool = True) -> List[Plan]:
    stmt = select(plans).order_by(plans.c.plan_id)
    if active_only:
        stmt = stmt.where(plans.c.is_active == True)  # noqa: E712
    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()
        return [_row_to_plan(row) for row in rows]


def retire_plan(plan_id: str, now: Optional[datetime] = None) -> Plan:
    """Hide a plan from new subscriptions. Existing subscriptions keep it."""
    at = normalize_now(now)
    with get_db_session() as session:
        result = session.execute(
            update(plans)
            .where(plans.c.plan_id == plan_id)
            .values(is_active=False, updated_at=at)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Plan not found: {plan_id}")
    logger.info(f"[plans] retired {plan_id}")
    return get_plan(plan_id)
