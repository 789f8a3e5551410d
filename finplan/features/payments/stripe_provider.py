"""
Stripe payment provider.

Implements the PaymentProvider protocol with PaymentIntents and Refunds.
Card declines and API failures surface as PaymentFailedError.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from finplan.core.config import settings
from finplan.core.errors import PaymentFailedError
from finplan.features.payments.provider import NullPaymentProvider, PaymentProvider, PaymentReceipt


logger = logging.getLogger(__name__)


def _to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


class StripePaymentProvider:
    """Stripe implementation of PaymentProvider."""

    def __init__(self, secret_key: Optional[str] = None, currency: Optional[str] = None):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.currency = currency or settings.STRIPE_CURRENCY

        if not self.secret_key:
            raise ValueError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def _collect(
        self,
        user_id: str,
        payment_method_token: Optional[str],
        amount: Decimal,
        metadata: Dict[str, Any],
    ) -> PaymentReceipt:
        """Confirm an off-session PaymentIntent for `amount`."""
        if not payment_method_token:
            raise PaymentFailedError("No payment method on file")
        try:
            intent = stripe.PaymentIntent.create(
                amount=_to_minor_units(amount),
                currency=self.currency,
                payment_method=payment_method_token,
                confirm=True,
                off_session=True,
                metadata={"user_id": user_id, **metadata},
            )
        except stripe.StripeError as e:
            logger.warning(
                "[payments] charge declined",
                extra={"user_id": user_id, "stripe_error": str(e), **metadata},
            )
            raise PaymentFailedError(f"Payment declined: {getattr(e, 'user_message', None) or 'charge failed'}")

        if intent.status != "succeeded":
            raise PaymentFailedError(f"Payment not completed (status={intent.status})")
        return PaymentReceipt(reference=intent.id, amount=Decimal(amount), metadata=metadata)

    def charge(self, user_id, plan_tier, billing_period, payment_method_token, amount) -> PaymentReceipt:
        return self._collect(
            user_id,
            payment_method_token,
            amount,
            {"plan_tier": plan_tier.value, "billing_period": billing_period.value},
        )

    def refund(self, user_id, subscription_id, payment_reference) -> PaymentReceipt:
        if not payment_reference:
            raise PaymentFailedError("No settled payment to refund")
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_reference,
                metadata={"user_id": user_id, "subscription_id": subscription_id},
            )
        except stripe.StripeError as e:
            logger.warning(
                "[payments] refund failed",
                extra={"user_id": user_id, "subscription_id": subscription_id, "stripe_error": str(e)},
            )
            raise PaymentFailedError("Refund failed")
        return PaymentReceipt(reference=refund.id, amount=Decimal(refund.amount) / 100)

    def change_plan(
        self, user_id, from_tier, to_tier, billing_period, payment_method_token, amount
    ) -> PaymentReceipt:
        """
        Charge the price difference owed now for a plan change.

        A change with nothing owed (billing-period switch, upgrade during a
        trial) needs no PaymentIntent and returns a receipt without reference.
        """
        metadata = {
            "from_tier": from_tier.value,
            "to_tier": to_tier.value,
            "billing_period": billing_period.value,
        }
        if Decimal(amount) <= 0:
            return PaymentReceipt(reference=None, metadata=metadata)
        return self._collect(user_id, payment_method_token, amount, metadata)


def get_payment_provider() -> PaymentProvider:
    """Stripe when configured, otherwise the accept-all provider."""
    if not settings.STRIPE_SECRET_KEY:
        return NullPaymentProvider()
    return StripePaymentProvider()
