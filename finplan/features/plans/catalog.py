"""
finplan/features/plans/catalog.py

Static plan catalog.

Handles:
- Plan lookup by tier
- Quota limits and capability flags per tier
- Tier ordering (compare, next, previous)
- Pricing helpers (yearly savings, price per billing period)
- Feature comparison matrix for the public plans endpoint

The catalog is built once at import time and never mutated. Unknown tiers
or capabilities are programmer errors and fail immediately.
"""

from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Union

from finplan.models.plan import (
    BillingPeriod,
    Limit,
    Plan,
    PlanTier,
    ResourceKind,
    TierComparison,
)


CAPABILITIES = (
    "ai_insights",
    "advanced_reports",
    "priority_support",
    "api_access",
    "export_data",
    "custom_categories",
    "bank_sync",
    "multi_currency",
    "collaborative_accounts",
    "investment_tracking",
    "tax_reporting",
    "mobile_app",
)

UNLIMITED = Limit.unlimited()


def _limits(**caps: Union[int, Limit]) -> Dict[ResourceKind, Limit]:
    return {
        ResourceKind(kind): cap if isinstance(cap, Limit) else Limit.capped(cap)
        for kind, cap in caps.items()
    }


def _capabilities(enabled: Iterable[str]) -> Dict[str, bool]:
    enabled = set(enabled)
    unknown = enabled - set(CAPABILITIES)
    if unknown:
        raise ValueError(f"Unknown capabilities: {sorted(unknown)}")
    return {name: name in enabled for name in CAPABILITIES}


DEFAULT_PLANS = (
    Plan(
        tier=PlanTier.FREE,
        name="Free",
        description="Perfect for getting started with basic financial tracking",
        monthly_price=Decimal("0"),
        yearly_price=Decimal("0"),
        yearly_discount_percent=0,
        trial_days=0,
        limits=_limits(account=2, wallet=3, transaction=100, category=10, budget=3, goal=2),
        capabilities=_capabilities(["mobile_app"]),
    ),
    Plan(
        tier=PlanTier.PRO,
        name="Pro",
        description="Advanced features for serious financial management",
        monthly_price=Decimal("19.99"),
        yearly_price=Decimal("199.99"),
        yearly_discount_percent=17,
        trial_days=14,
        popular=True,
        limits=_limits(account=5, wallet=5, transaction=5000, category=50, budget=20, goal=15),
        capabilities=_capabilities([
            "ai_insights",
            "advanced_reports",
            "api_access",
            "export_data",
            "custom_categories",
            "bank_sync",
            "multi_currency",
            "investment_tracking",
            "mobile_app",
        ]),
    ),
    Plan(
        tier=PlanTier.ULTIMATE,
        name="Ultimate",
        description="Complete financial ecosystem for professionals and businesses",
        monthly_price=Decimal("49.99"),
        yearly_price=Decimal("499.99"),
        yearly_discount_percent=17,
        trial_days=30,
        limits=_limits(
            account=UNLIMITED,
            wallet=UNLIMITED,
            transaction=UNLIMITED,
            category=UNLIMITED,
            budget=UNLIMITED,
            goal=UNLIMITED,
        ),
        capabilities=_capabilities(CAPABILITIES),
    ),
)


class PlanCatalog:
    """Immutable registry of plan tiers."""

    def __init__(self, plans: Iterable[Plan] = DEFAULT_PLANS):
        by_tier = {plan.tier: plan for plan in plans}
        missing = [tier for tier in PlanTier if tier not in by_tier]
        if missing:
            raise ValueError(f"Catalog is missing tiers: {[t.value for t in missing]}")
        self._plans: Mapping[PlanTier, Plan] = MappingProxyType(by_tier)
        self._ordered: List[Plan] = sorted(by_tier.values(), key=lambda p: p.tier.rank)

    def get(self, tier: PlanTier) -> Plan:
        return self._plans[PlanTier(tier)]

    def all_plans(self) -> List[Plan]:
        """Plans in tier order (FREE first)."""
        return list(self._ordered)

    def limit_for(self, tier: PlanTier, resource_kind: ResourceKind) -> Limit:
        return self.get(tier).limits[ResourceKind(resource_kind)]

    def capability_enabled(self, tier: PlanTier, capability: str) -> bool:
        capabilities = self.get(tier).capabilities
        if capability not in capabilities:
            raise KeyError(f"Unknown capability: {capability}")
        return capabilities[capability]

    def compare_tiers(self, a: PlanTier, b: PlanTier) -> TierComparison:
        rank_a, rank_b = PlanTier(a).rank, PlanTier(b).rank
        if rank_a < rank_b:
            return TierComparison.LESS
        if rank_a > rank_b:
            return TierComparison.GREATER
        return TierComparison.EQUAL

    def next_tier(self, tier: PlanTier) -> Optional[Plan]:
        index = PlanTier(tier).rank + 1
        return self._ordered[index] if index < len(self._ordered) else None

    def previous_tier(self, tier: PlanTier) -> Optional[Plan]:
        index = PlanTier(tier).rank - 1
        return self._ordered[index] if index >= 0 else None

    def yearly_savings(self, tier: PlanTier) -> Decimal:
        plan = self.get(tier)
        return plan.monthly_price * 12 - plan.yearly_price

    def price_for(self, tier: PlanTier, billing_period: BillingPeriod) -> Decimal:
        return self.get(tier).price_for(BillingPeriod(billing_period))

    def comparison_matrix(self) -> Dict[str, object]:
        """Feature matrix across all plans, keyed by limit / capability name."""
        tiers = [plan.tier.value for plan in self._ordered]
        limits = {
            kind.value: {plan.tier.value: plan.limits[kind].to_json() for plan in self._ordered}
            for kind in ResourceKind
        }
        capabilities = {
            name: {plan.tier.value: plan.capabilities[name] for plan in self._ordered}
            for name in CAPABILITIES
        }
        return {"tiers": tiers, "limits": limits, "capabilities": capabilities}


CATALOG = PlanCatalog()
