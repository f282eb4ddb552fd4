"""
Plan catalog: fixed per-tier policy table.

Pure lookups, no I/O. Limits are exclusive upper bounds on the caller's
current count, so a Free user with 1 server cannot create a second.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Tuple, Union

from mymcp.core.errors import ConfigurationError
from mymcp.models.plan import BillingCycle, PlanPricing, PlanTier


@dataclass(frozen=True)
class PlanPolicy:
    tier: PlanTier
    name: str
    description: str
    monthly_request_limit: int
    max_servers: int
    allows_custom_servers: bool
    allows_team_management: bool
    prices: Tuple[Tuple[BillingCycle, Decimal], ...]

    def can_create_server(self, current_server_count: int) -> bool:
        return current_server_count < self.max_servers

    def can_make_request(self, current_monthly_requests: int) -> bool:
        return current_monthly_requests < self.monthly_request_limit

    @property
    def billing_cycles(self) -> Tuple[BillingCycle, ...]:
        return tuple(cycle for cycle, _ in self.prices)

    def get_pricing(self, cycle: Union[BillingCycle, str]) -> PlanPricing:
        """Price for a declared cycle; undeclared cycles are a configuration error."""
        try:
            wanted = BillingCycle(cycle)
        except ValueError:
            raise ConfigurationError(f"Unknown billing cycle: {cycle}")
        for declared, amount in self.prices:
            if declared == wanted:
                return PlanPricing(cycle=declared, amount=amount)
        raise ConfigurationError(
            f"{self.name} has no {wanted.value} pricing"
        )


PLAN_POLICIES: Dict[PlanTier, PlanPolicy] = {
    PlanTier.FREE: PlanPolicy(
        tier=PlanTier.FREE,
        name="Free",
        description="Try a single MCP server with a small monthly request allowance.",
        monthly_request_limit=100,
        max_servers=1,
        allows_custom_servers=False,
        allows_team_management=False,
        prices=((BillingCycle.MONTHLY, Decimal("0")),),
    ),
    PlanTier.INDIVIDUAL: PlanPolicy(
        tier=PlanTier.INDIVIDUAL,
        name="Individual",
        description="For developers running several servers, custom servers included.",
        monthly_request_limit=10_000,
        max_servers=10,
        allows_custom_servers=True,
        allows_team_management=False,
        prices=(
            (BillingCycle.MONTHLY, Decimal("10")),
            (BillingCycle.YEARLY, Decimal("100")),
        ),
    ),
    PlanTier.TEAM: PlanPolicy(
        tier=PlanTier.TEAM,
        name="Team",
        description="Shared servers and member management for teams.",
        monthly_request_limit=100_000,
        max_servers=50,
        allows_custom_servers=True,
        allows_team_management=True,
        prices=(
            (BillingCycle.MONTHLY, Decimal("100")),
            (BillingCycle.YEARLY, Decimal("1000")),
        ),
    ),
}


def get_plan_policy(tier: Union[PlanTier, str]) -> PlanPolicy:
    try:
        return PLAN_POLICIES[PlanTier(tier)]
    except (KeyError, ValueError):
        raise ConfigurationError(f"Unknown plan tier: {tier}")


def declared_plans() -> Tuple[Tuple[PlanTier, BillingCycle], ...]:
    """Every (tier, cycle) pair that has a price, in catalog order."""
    return tuple(
        (policy.tier, cycle)
        for policy in PLAN_POLICIES.values()
        for cycle in policy.billing_cycles
    )
