"""
finplan/models/subscription.py

Subscription and history read models.

Constraint: each user has at most one subscription in a non-terminal status
(TRIALING, ACTIVE, PENDING_CANCELLATION).
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from finplan.models.plan import BillingPeriod, PlanTier


class SubscriptionStatus(str, Enum):
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PENDING_CANCELLATION = "PENDING_CANCELLATION"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)


NON_TERMINAL_STATUSES = (
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PENDING_CANCELLATION,
)


class HistoryAction(str, Enum):
    CREATE = "CREATE"
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"
    CANCEL = "CANCEL"
    REACTIVATE = "REACTIVATE"
    RENEW = "RENEW"


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_tier: PlanTier
    billing_period: BillingPeriod
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None
    pending_tier: Optional[PlanTier] = None
    # Opaque provider token; never rendered in responses
    payment_method_token: Optional[str] = Field(default=None, exclude=True)
    # Provider reference of the charge that paid for the current period
    last_payment_reference: Optional[str] = Field(default=None, exclude=True)
    canceled_at: Optional[datetime] = None
    version: int = 1
    created_at: datetime
    updated_at: datetime


class SubscriptionHistoryEntry(BaseModel):
    """Append-only record of a lifecycle transition."""
    model_config = ConfigDict(frozen=True)

    id: int
    subscription_id: str
    user_id: str
    from_tier: Optional[PlanTier] = None
    to_tier: PlanTier
    action: HistoryAction
    occurred_at: datetime


class TransitionOutcome(BaseModel):
    """
    Result of a lifecycle transition.

    `effective_at` is when the change applies: now for immediate
    transitions, the period end for scheduled ones (downgrade).
    """
    model_config = ConfigDict(frozen=True)

    subscription: Subscription
    action: HistoryAction
    effective_at: datetime
    scheduled: bool = False
