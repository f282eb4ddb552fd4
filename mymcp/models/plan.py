"""
mymcp/models/plan.py

Plan catalog models.

A Plan row identifies one (tier, billing cycle) pair. The quotas and prices
behind a tier live in the plan catalog (features/plans/catalog.py), not in
the database.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

_CENTS = Decimal("0.01")


class PlanTier(str, Enum):
    FREE = "free"
    INDIVIDUAL = "individual"
    TEAM = "team"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


def plan_id_for(tier: PlanTier, cycle: BillingCycle) -> str:
    """Stable catalog id, e.g. 'individual-yearly'."""
    return f"{PlanTier(tier).value}-{BillingCycle(cycle).value}"


class PlanPricing(BaseModel):
    """
    Price of a tier for one billing cycle.

    Equivalents convert between cycles; results are quantized to cents.
    """
    model_config = ConfigDict(frozen=True)

    cycle: BillingCycle
    amount: Decimal

    @property
    def monthly_equivalent(self) -> Decimal:
        if self.cycle == BillingCycle.YEARLY:
            return (self.amount / 12).quantize(_CENTS, rounding=ROUND_HALF_UP)
        return self.amount.quantize(_CENTS, rounding=ROUND_HALF_UP)

    @property
    def yearly_equivalent(self) -> Decimal:
        if self.cycle == BillingCycle.MONTHLY:
            return (self.amount * 12).quantize(_CENTS, rounding=ROUND_HALF_UP)
        return self.amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


class Plan(BaseModel):
    """
    Plan represents a purchasable (tier, cycle) catalog entry.

    Constraint: at most one Plan per (tier, billing_cycle).
    Retired plans keep their row with is_active=False.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    tier: PlanTier
    billing_cycle: BillingCycle
    is_active: bool = True
    created_at: Optional[datetime] = None
