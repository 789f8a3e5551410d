"""
finplan/models/plan.py

Plan tiers, resource kinds and the quota value type.

Plans are immutable descriptors; the registry that holds them lives in
finplan/features/plans/catalog.py.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class PlanTier(str, Enum):
    """Ordered plan levels. Declaration order is the tier order."""
    FREE = "FREE"
    PRO = "PRO"
    ULTIMATE = "ULTIMATE"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {tier: index for index, tier in enumerate(PlanTier)}


class BillingPeriod(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class ResourceKind(str, Enum):
    """Quota-bounded resources a user can own."""
    WALLET = "wallet"
    ACCOUNT = "account"
    TRANSACTION = "transaction"
    CATEGORY = "category"
    BUDGET = "budget"
    GOAL = "goal"


class TierComparison(str, Enum):
    LESS = "less"
    EQUAL = "equal"
    GREATER = "greater"


@dataclass(frozen=True)
class Limit:
    """
    A quota value: either a non-negative cap or unlimited.

    Use Limit.capped(n) / Limit.unlimited(); `cap` is None only when
    unlimited.
    """
    cap: Optional[int] = None

    def __post_init__(self):
        if self.cap is not None and self.cap < 0:
            raise ValueError(f"Limit cap must be non-negative, got {self.cap}")

    @classmethod
    def capped(cls, cap: int) -> "Limit":
        return cls(cap=int(cap))

    @classmethod
    def unlimited(cls) -> "Limit":
        return cls(cap=None)

    @property
    def is_unlimited(self) -> bool:
        return self.cap is None

    def allows(self, current_count: int) -> bool:
        return self.is_unlimited or current_count < self.cap

    def remaining(self, current_count: int) -> "Limit":
        if self.is_unlimited:
            return self
        return Limit.capped(max(0, self.cap - current_count))

    def to_json(self) -> Union[int, str]:
        return "unlimited" if self.is_unlimited else self.cap

    def __str__(self) -> str:
        return "unlimited" if self.is_unlimited else str(self.cap)


class Plan(BaseModel):
    """
    Plan represents a priced capability tier.

    `limits` caps each quota-bounded resource kind; `capabilities` are
    boolean feature flags (bank_sync, ai_insights, ...).
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    tier: PlanTier
    name: str
    description: str = ""
    monthly_price: Decimal = Field(ge=0)
    yearly_price: Decimal = Field(ge=0)
    yearly_discount_percent: int = Field(default=0, ge=0, le=100)
    trial_days: int = Field(default=0, ge=0)
    popular: bool = False
    limits: Mapping[ResourceKind, Limit]
    capabilities: Mapping[str, bool]

    @property
    def is_paid(self) -> bool:
        return self.monthly_price > 0 or self.yearly_price > 0

    def price_for(self, billing_period: BillingPeriod) -> Decimal:
        if billing_period == BillingPeriod.YEARLY:
            return self.yearly_price
        return self.monthly_price
