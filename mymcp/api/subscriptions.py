"""
Plan, subscription and usage API routes.

- GET /api/v1/plans          catalog with limits and prices
- GET /api/v1/subscription   caller's active subscription
- GET /api/v1/usage          caller's usage for the current month
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from mymcp.core.auth import get_current_user
from mymcp.core.clock import utc_now
from mymcp.core.errors import NotFoundError
from mymcp.features.plans.catalog import get_plan_policy
from mymcp.features.plans.service import list_plans
from mymcp.features.servers.repository import count_user_server_instances
from mymcp.features.subscriptions.service import get_active_subscription
from mymcp.features.usage.service import get_current_usage
from mymcp.models.user import User


router = APIRouter(prefix="/api/v1", tags=["subscriptions"])


class PlanResponse(BaseModel):
    plan_id: str
    tier: str
    billing_cycle: str
    name: str
    description: str
    price: str
    monthly_equivalent: str
    yearly_equivalent: str
    monthly_request_limit: int
    max_servers: int
    allows_custom_servers: bool
    allows_team_management: bool


class SubscriptionResponse(BaseModel):
    subscription_id: str
    plan_id: str
    tier: str
    billing_cycle: str
    status: str
    start_date: datetime
    end_date: Optional[datetime] = None
    next_billing_date: datetime


class UsageResponse(BaseModel):
    year: int
    month: int
    request_count: int
    monthly_request_limit: Optional[int] = None
    server_count: int
    max_servers: Optional[int] = None
    last_updated: Optional[datetime] = None


@router.get("/plans", response_model=List[PlanResponse])
def get_plans():
    result = []
    for plan in list_plans(active_only=True):
        policy = get_plan_policy(plan.tier)
        pricing = policy.get_pricing(plan.billing_cycle)
        result.append(PlanResponse(
            plan_id=plan.plan_id,
            tier=plan.tier.value,
            billing_cycle=plan.billing_cycle.value,
            name=policy.name,
            description=policy.description,
            price=str(pricing.amount),
            monthly_equivalent=str(pricing.monthly_equivalent),
            yearly_equivalent=str(pricing.yearly_equivalent),
            monthly_request_limit=policy.monthly_request_limit,
            max_servers=policy.max_servers,
            allows_custom_servers=policy.allows_custom_servers,
            allows_team_management=policy.allows_team_management,
        ))
    return result


@router.get("/subscription", response_model=SubscriptionResponse)
def get_subscription(user: User = Depends(get_current_user)):
    subscription = get_active_subscription(user.user_id)
    if subscription is None:
        raise NotFoundError("No active subscription")
    return SubscriptionResponse(
        subscription_id=subscription.subscription_id,
        plan_id=subscription.plan_id,
        tier=subscription.tier.value,
        billing_cycle=subscription.billing_cycle.value,
        status=subscription.status.value,
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        next_billing_date=subscription.next_billing_date,
    )


@router.get("/usage", response_model=UsageResponse)
def get_usage(user: User = Depends(get_current_user)):
    now = utc_now()
    usage = get_current_usage(user.user_id, now)
    subscription = get_active_subscription(user.user_id, now)
    policy = subscription.policy if subscription else None
    return UsageResponse(
        year=now.year,
        month=now.month,
        request_count=usage.request_count if usage else 0,
        monthly_request_limit=policy.monthly_request_limit if policy else None,
        server_count=count_user_server_instances(user.user_id),
        max_servers=policy.max_servers if policy else None,
        last_updated=usage.last_updated if usage else None,
    )
