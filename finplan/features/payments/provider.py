"""
Payment provider protocol.

Defines the interface the subscription lifecycle uses to move money
(Stripe, or a no-op provider when billing is disabled). Business logic
never imports stripe directly.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol
from uuid import uuid4

from finplan.models.plan import BillingPeriod, PlanTier


@dataclass(frozen=True)
class PaymentReceipt:
    """
    Provider acknowledgement for a charge, refund or plan change.

    `reference` is None when nothing was owed and no money moved.
    """
    reference: Optional[str]
    amount: Decimal = Decimal("0")
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Every method either returns a PaymentReceipt or raises
    PaymentFailedError when the provider declines.
    """

    def charge(
        self,
        user_id: str,
        plan_tier: PlanTier,
        billing_period: BillingPeriod,
        payment_method_token: Optional[str],
        amount: Decimal,
    ) -> PaymentReceipt:
        """Charge `amount` for one billing period of `plan_tier`."""
        ...

    def refund(
        self,
        user_id: str,
        subscription_id: str,
        payment_reference: Optional[str],
    ) -> PaymentReceipt:
        """Refund the charge identified by `payment_reference`."""
        ...

    def change_plan(
        self,
        user_id: str,
        from_tier: PlanTier,
        to_tier: PlanTier,
        billing_period: BillingPeriod,
        payment_method_token: Optional[str],
        amount: Decimal,
    ) -> PaymentReceipt:
        """Collect `amount` (the tier price difference owed now) for a mid-period plan change."""
        ...


class NullPaymentProvider:
    """Accepts every operation. Used when STRIPE_SECRET_KEY is not configured."""

    def charge(self, user_id, plan_tier, billing_period, payment_method_token, amount):
        return PaymentReceipt(reference=f"null_{uuid4().hex}", amount=Decimal(amount))

    def refund(self, user_id, subscription_id, payment_reference):
        return PaymentReceipt(reference=f"null_{uuid4().hex}")

    def change_plan(self, user_id, from_tier, to_tier, billing_period, payment_method_token, amount):
        if Decimal(amount) <= 0:
            return PaymentReceipt(reference=None)
        return PaymentReceipt(reference=f"null_{uuid4().hex}", amount=Decimal(amount))
