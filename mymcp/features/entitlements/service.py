"""
mymcp/features/entitlements/service.py

Entitlement gate.

check_* functions return a decision and never raise for a denial;
enforce_* functions raise QuotaExceededError and log the denial. All of
them evaluate against an explicit `now`.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from mymcp.core.clock import normalize_now
from mymcp.core.errors import QuotaExceededError
from mymcp.core.logging import log_event
from mymcp.core.metrics import quota_denials_total
from mymcp.features.servers.repository import count_user_server_instances
from mymcp.features.subscriptions.service import get_active_subscription
from mymcp.features.usage.service import get_monthly_request_count
from mymcp.models.plan import PlanTier


class DenialReason(str, Enum):
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    SERVER_LIMIT = "server_limit"
    REQUEST_LIMIT = "request_limit"


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    reason: Optional[DenialReason]
    limit: Optional[int]
    current: Optional[int]
    tier: Optional[PlanTier]


_NO_SUBSCRIPTION = EntitlementDecision(
    allowed=False,
    reason=DenialReason.NO_ACTIVE_SUBSCRIPTION,
    limit=None,
    current=None,
    tier=None,
)


def check_server_creation(user_id: str, now: Optional[datetime] = None) -> EntitlementDecision:
    at = normalize_now(now)
    subscription = get_active_subscription(user_id, at)
    if subscription is None:
        return _NO_SUBSCRIPTION

    policy = subscription.policy
    current = count_user_server_instances(user_id)
    allowed = subscription.can_create_server(current, at)
    return EntitlementDecision(
        allowed=allowed,
        reason=None if allowed else DenialReason.SERVER_LIMIT,
        limit=policy.max_servers,
        current=current,
        tier=subscription.tier,
    )


def check_request_quota(user_id: str, now: Optional[datetime] = None) -> EntitlementDecision:
    at = normalize_now(now)
    subscription = get_active_subscription(user_id, at)
    if subscription is None:
        return _NO_SUBSCRIPTION

    policy = subscription.policy
    current = get_monthly_request_count(user_id, at)
    allowed = subscription.can_make_request(current, at)
    return EntitlementDecision(
        allowed=allowed,
        reason=None if allowed else DenialReason.REQUEST_LIMIT,
        limit=policy.monthly_request_limit,
        current=current,
        tier=subscription.tier,
    )


def _deny(user_id: str, decision: EntitlementDecision, operation: str) -> None:
    reason = decision.reason.value if decision.reason else "denied"
    quota_denials_total.inc(labels={"reason": reason})
    log_event(
        "warning",
        "entitlement.denied",
        user_id=user_id,
        operation=operation,
        error_code="quota_exceeded",
        extra={
            "reason": reason,
            "limit": decision.limit,
            "current": decision.current,
            "tier": decision.tier.value if decision.tier else None,
        },
    )
    if decision.reason == DenialReason.NO_ACTIVE_SUBSCRIPTION:
        raise QuotaExceededError("No active subscription")
    if decision.reason == DenialReason.SERVER_LIMIT:
        raise QuotaExceededError(
            f"Server limit reached ({decision.current}/{decision.limit}) for the {decision.tier.value} plan"
        )
    raise QuotaExceededError(
        f"Monthly request limit reached ({decision.current}/{decision.limit}) for the {decision.tier.value} plan"
    )


def enforce_server_creation(user_id: str, now: Optional[datetime] = None) -> EntitlementDecision:
    """
    Gate a server creation: both the server count and the monthly request
    count must be under the plan limits, since creation is itself billed.
    """
    at = normalize_now(now)
    decision = check_server_creation(user_id, at)
    if not decision.allowed:
        _deny(user_id, decision, "create_server")

    requests = check_request_quota(user_id, at)
    if not requests.allowed:
        _deny(user_id, requests, "create_server")
    return decision


def enforce_request_quota(user_id: str, now: Optional[datetime] = None) -> EntitlementDecision:
    decision = check_request_quota(user_id, now)
    if not decision.allowed:
        _deny(user_id, decision, "request")
    return decision
