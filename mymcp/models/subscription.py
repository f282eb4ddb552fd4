"""
mymcp/models/subscription.py

Subscription binds a user to a Plan for a validity window.

Activity is derived at evaluation time from status and dates; callers pass
the instant to evaluate at.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from mymcp.core.clock import ensure_utc, normalize_now
from mymcp.features.plans.catalog import PlanPolicy, get_plan_policy
from mymcp.models.plan import BillingCycle, PlanTier


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription_id: str
    user_id: str
    plan_id: str
    tier: PlanTier
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    start_date: datetime
    end_date: Optional[datetime] = None
    next_billing_date: datetime
    created_at: Optional[datetime] = None

    @property
    def policy(self) -> PlanPolicy:
        return get_plan_policy(self.tier)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        at = normalize_now(now)
        if self.status != SubscriptionStatus.ACTIVE:
            return False
        if ensure_utc(self.start_date) > at:
            return False
        end = ensure_utc(self.end_date)
        return end is None or end > at

    def can_make_request(self, current_monthly_requests: int, now: Optional[datetime] = None) -> bool:
        if not self.is_active(now):
            return False
        return self.policy.can_make_request(current_monthly_requests)

    def can_create_server(self, current_server_count: int, now: Optional[datetime] = None) -> bool:
        if not self.is_active(now):
            return False
        return self.policy.can_create_server(current_server_count)
