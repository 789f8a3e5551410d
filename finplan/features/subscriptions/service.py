"""
finplan/features/subscriptions/service.py

Subscription lifecycle manager.

Handles:
- create / update / upgrade / downgrade / cancel / reactivate
- Period rollover (renew) for the renewal worker
- Append-only history

State machine:
    TRIALING -> ACTIVE                 (trial ends, is charged, period restarts at trial_end)
    TRIALING | ACTIVE -> PENDING_CANCELLATION -> ACTIVE (reactivate)
    PENDING_CANCELLATION -> EXPIRED    (period end)
    any non-terminal -> CANCELED       (immediate cancel)
    any non-terminal -> EXPIRED        (renewal charge declined)

Every transition runs in one transaction together with its payment call.
Row updates are guarded by the `version` column; a lost race raises
ConcurrentModificationError.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from finplan.core.clock import add_months, ensure_utc, normalize_now
from finplan.core.database import get_db_session, subscription_history, subscriptions
from finplan.core.errors import (
    ConcurrentModificationError,
    ConflictError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PaymentFailedError,
    PaymentMethodRequiredError,
    ValidationError,
)
from finplan.features.payments.provider import PaymentProvider, PaymentReceipt
from finplan.features.payments.stripe_provider import get_payment_provider
from finplan.features.plans.catalog import CATALOG, PlanCatalog
from finplan.models.plan import BillingPeriod, PlanTier, TierComparison
from finplan.models.subscription import (
    NON_TERMINAL_STATUSES,
    HistoryAction,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
    TransitionOutcome,
)


logger = logging.getLogger(__name__)

MUTABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


def add_billing_period(start: datetime, billing_period: BillingPeriod) -> datetime:
    months = 12 if BillingPeriod(billing_period) == BillingPeriod.YEARLY else 1
    return add_months(start, months)


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        plan_tier=PlanTier(row.plan_tier),
        billing_period=BillingPeriod(row.billing_period),
        status=SubscriptionStatus(row.status),
        current_period_start=ensure_utc(row.current_period_start),
        current_period_end=ensure_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        trial_end=ensure_utc(row.trial_end),
        pending_tier=PlanTier(row.pending_tier) if row.pending_tier else None,
        payment_method_token=row.payment_method_token,
        last_payment_reference=row.last_payment_reference,
        canceled_at=ensure_utc(row.canceled_at),
        version=row.version,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _row_to_history(row) -> SubscriptionHistoryEntry:
    return SubscriptionHistoryEntry(
        id=row.id,
        subscription_id=row.subscription_id,
        user_id=row.user_id,
        from_tier=PlanTier(row.from_tier) if row.from_tier else None,
        to_tier=PlanTier(row.to_tier),
        action=HistoryAction(row.action),
        occurred_at=ensure_utc(row.occurred_at),
    )


def _column_value(value: Any) -> Any:
    return getattr(value, "value", value)


def apply_versioned_update(
    session: Session, current: Subscription, changes: Dict[str, Any], now: datetime
) -> Subscription:
    """
    Write `changes` only if the row still has `current.version`.

    Raises:
        ConcurrentModificationError: another writer updated the row first
    """
    next_version = current.version + 1
    result = session.execute(
        update(subscriptions)
        .where(subscriptions.c.id == current.id)
        .where(subscriptions.c.version == current.version)
        .values(
            **{key: _column_value(value) for key, value in changes.items()},
            version=next_version,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        logger.warning(
            "[subscriptions] version conflict",
            extra={"subscription_id": current.id, "expected_version": current.version},
        )
        raise ConcurrentModificationError(
            "Subscription was modified concurrently; reload and retry",
            details={"subscription_id": current.id},
        )
    return current.model_copy(update={**changes, "version": next_version, "updated_at": now})


def _record_history(
    session: Session,
    subscription: Subscription,
    action: HistoryAction,
    from_tier: Optional[PlanTier],
    to_tier: PlanTier,
    now: datetime,
) -> None:
    session.execute(
        insert(subscription_history).values(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            from_tier=_column_value(from_tier),
            to_tier=_column_value(to_tier),
            action=action.value,
            occurred_at=now,
        )
    )


class SubscriptionManager:
    def __init__(
        self,
        session_scope: Optional[Callable] = None,
        payments: Optional[PaymentProvider] = None,
        catalog: Optional[PlanCatalog] = None,
    ):
        self.session_scope = session_scope or get_db_session
        self.payments = payments or get_payment_provider()
        self.catalog = catalog or CATALOG

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load(self, session: Session, subscription_id: str) -> Subscription:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.id == subscription_id)
        ).first()
        if row is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return _row_to_subscription(row)

    def _live_for_user(self, session: Session, user_id: str) -> Optional[Subscription]:
        row = session.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.status.in_([s.value for s in NON_TERMINAL_STATUSES]))
        ).first()
        return _row_to_subscription(row) if row else None

    def get(self, subscription_id: str) -> Subscription:
        with self.session_scope() as session:
            return self._load(session, subscription_id)

    def get_current(self, user_id: str) -> Subscription:
        """The user's live subscription, else their most recent one."""
        with self.session_scope() as session:
            live = self._live_for_user(session, user_id)
            if live:
                return live
            row = session.execute(
                select(subscriptions)
                .where(subscriptions.c.user_id == user_id)
                .order_by(subscriptions.c.created_at.desc())
                .limit(1)
            ).first()
        if row is None:
            raise NotFoundError("No subscription found for user")
        return _row_to_subscription(row)

    def history(self, user_id: str) -> List[SubscriptionHistoryEntry]:
        """All history entries across the user's subscriptions, oldest first."""
        with self.session_scope() as session:
            rows = session.execute(
                select(subscription_history)
                .where(subscription_history.c.user_id == user_id)
                .order_by(subscription_history.c.occurred_at, subscription_history.c.id)
            ).fetchall()
        return [_row_to_history(row) for row in rows]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _require_payment_method(self, tier: PlanTier, payment_method_token: Optional[str]) -> None:
        plan = self.catalog.get(tier)
        if plan.is_paid and not payment_method_token:
            raise PaymentMethodRequiredError(
                f"A payment method is required for the {plan.name} plan",
                details={"plan_tier": plan.tier.value},
            )

    def create(
        self,
        user_id: str,
        plan_tier: PlanTier,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
        payment_method_token: Optional[str] = None,
        *,
        now=None,
    ) -> Subscription:
        """
        Start a subscription.

        Raises:
            ConflictError: the user already has a live subscription
            PaymentMethodRequiredError: paid tier without a token and no trial covering the first period
            PaymentFailedError: the first charge was declined (nothing is persisted)
        """
        now = normalize_now(now)
        plan = self.catalog.get(plan_tier)
        billing_period = BillingPeriod(billing_period)

        with self.session_scope() as session:
            if self._live_for_user(session, user_id):
                raise ConflictError(
                    "User already has an active subscription",
                    details={"user_id": user_id},
                )

            trialed_before = session.execute(
                select(subscriptions.c.id)
                .where(subscriptions.c.user_id == user_id)
                .where(subscriptions.c.trial_end.is_not(None))
                .limit(1)
            ).first() is not None
            trialing = plan.trial_days > 0 and not trialed_before

            period_end = add_billing_period(now, billing_period)
            trial_end = now + timedelta(days=plan.trial_days) if trialing else None

            if not (trialing and trial_end >= period_end):
                self._require_payment_method(plan.tier, payment_method_token)

            subscription = Subscription(
                id=str(uuid4()),
                user_id=user_id,
                plan_tier=plan.tier,
                billing_period=billing_period,
                status=SubscriptionStatus.TRIALING if trialing else SubscriptionStatus.ACTIVE,
                current_period_start=now,
                current_period_end=period_end,
                cancel_at_period_end=False,
                trial_end=trial_end,
                payment_method_token=payment_method_token,
                version=1,
                created_at=now,
                updated_at=now,
            )
            try:
                session.execute(
                    insert(subscriptions).values(
                        **{key: _column_value(value) for key, value in subscription.model_dump().items()},
                        payment_method_token=payment_method_token,
                    )
                )
            except IntegrityError as e:
                # Lost the race against a concurrent create for the same user
                raise ConflictError("User already has an active subscription", details={"user_id": user_id}) from e

            _record_history(session, subscription, HistoryAction.CREATE, None, plan.tier, now)

            if plan.is_paid and not trialing:
                receipt = self.payments.charge(
                    user_id,
                    plan.tier,
                    billing_period,
                    payment_method_token,
                    plan.price_for(billing_period),
                )
                session.execute(
                    update(subscriptions)
                    .where(subscriptions.c.id == subscription.id)
                    .values(last_payment_reference=receipt.reference)
                )
                subscription = subscription.model_copy(update={"last_payment_reference": receipt.reference})

        logger.info(
            "[subscriptions] created",
            extra={
                "user_id": user_id,
                "subscription_id": subscription.id,
                "plan_tier": plan.tier.value,
                "status": subscription.status.value,
            },
        )
        return subscription

    def _require_mutable(self, subscription: Subscription, operation: str) -> None:
        if subscription.status not in MUTABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot {operation} a subscription in {subscription.status.value}",
                details={"subscription_id": subscription.id, "status": subscription.status.value},
            )

    def _amount_owed_for_change(self, current: Subscription, target_tier: PlanTier, now: datetime) -> Decimal:
        """Tier price difference for the running period; nothing is owed during a trial."""
        if current.status == SubscriptionStatus.TRIALING and current.trial_end and current.trial_end > now:
            return Decimal("0")
        difference = self.catalog.price_for(target_tier, current.billing_period) - self.catalog.price_for(
            current.plan_tier, current.billing_period
        )
        return max(difference, Decimal("0"))

    def _upgrade_in(
        self,
        session: Session,
        current: Subscription,
        target_tier: PlanTier,
        billing_period: Optional[BillingPeriod],
        payment_method_token: Optional[str],
        now: datetime,
    ) -> Subscription:
        if self.catalog.compare_tiers(target_tier, current.plan_tier) != TierComparison.GREATER:
            raise InvalidTransitionError(
                f"Cannot upgrade from {current.plan_tier.value} to {target_tier.value}",
                details={"from_tier": current.plan_tier.value, "to_tier": target_tier.value},
            )
        token = payment_method_token or current.payment_method_token
        self._require_payment_method(target_tier, token)

        new_period = BillingPeriod(billing_period) if billing_period else current.billing_period
        updated = apply_versioned_update(
            session,
            current,
            {
                "plan_tier": target_tier,
                "billing_period": new_period,
                "pending_tier": None,
                "payment_method_token": token,
            },
            now,
        )
        _record_history(session, updated, HistoryAction.UPGRADE, current.plan_tier, target_tier, now)

        receipt = self.payments.change_plan(
            current.user_id,
            current.plan_tier,
            target_tier,
            new_period,
            token,
            self._amount_owed_for_change(current, target_tier, now),
        )
        if receipt.reference and not updated.last_payment_reference:
            # First money paid in this subscription (e.g. FREE -> PRO)
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == updated.id)
                .values(last_payment_reference=receipt.reference)
            )
            updated = updated.model_copy(update={"last_payment_reference": receipt.reference})
        return updated

    def _downgrade_in(self, session: Session, current: Subscription, target_tier: PlanTier, now: datetime) -> Subscription:
        if self.catalog.compare_tiers(target_tier, current.plan_tier) != TierComparison.LESS:
            raise InvalidTransitionError(
                f"Cannot downgrade from {current.plan_tier.value} to {target_tier.value}",
                details={"from_tier": current.plan_tier.value, "to_tier": target_tier.value},
            )
        updated = apply_versioned_update(session, current, {"pending_tier": target_tier}, now)
        _record_history(session, updated, HistoryAction.DOWNGRADE, current.plan_tier, target_tier, now)
        return updated

    def upgrade(
        self,
        subscription_id: str,
        target_tier: PlanTier,
        billing_period: Optional[BillingPeriod] = None,
        payment_method_token: Optional[str] = None,
        *,
        now=None,
    ) -> TransitionOutcome:
        """
        Move to a higher tier immediately. Period boundaries are kept and the
        tier price difference for the running period is collected.

        Raises:
            PaymentMethodRequiredError: paid target tier and no token supplied or on file
            PaymentFailedError: the provider declined (nothing is persisted)
        """
        now = normalize_now(now)
        target_tier = PlanTier(target_tier)

        with self.session_scope() as session:
            current = self._load(session, subscription_id)
            self._require_mutable(current, "upgrade")
            updated = self._upgrade_in(session, current, target_tier, billing_period, payment_method_token, now)

        logger.info(
            "[subscriptions] upgraded",
            extra={
                "user_id": updated.user_id,
                "subscription_id": updated.id,
                "from_tier": current.plan_tier.value,
                "to_tier": target_tier.value,
            },
        )
        return TransitionOutcome(subscription=updated, action=HistoryAction.UPGRADE, effective_at=now)

    def downgrade(self, subscription_id: str, target_tier: PlanTier, *, now=None) -> TransitionOutcome:
        """Schedule a lower tier for the next rollover. plan_tier is unchanged until then."""
        now = normalize_now(now)
        target_tier = PlanTier(target_tier)

        with self.session_scope() as session:
            current = self._load(session, subscription_id)
            self._require_mutable(current, "downgrade")
            updated = self._downgrade_in(session, current, target_tier, now)

        logger.info(
            "[subscriptions] downgrade scheduled",
            extra={
                "user_id": updated.user_id,
                "subscription_id": updated.id,
                "from_tier": current.plan_tier.value,
                "to_tier": target_tier.value,
                "effective_at": updated.current_period_end.isoformat(),
            },
        )
        return TransitionOutcome(
            subscription=updated,
            action=HistoryAction.DOWNGRADE,
            effective_at=updated.current_period_end,
            scheduled=True,
        )

    def update(
        self,
        subscription_id: str,
        new_tier: Optional[PlanTier] = None,
        new_billing_period: Optional[BillingPeriod] = None,
        payment_method_token: Optional[str] = None,
        *,
        now=None,
    ) -> Subscription:
        """
        Generic mutation in a single transaction. A tier change follows the
        upgrade/downgrade rules; a billing-period change is recorded now and
        priced from the next rollover.
        """
        now = normalize_now(now)
        if new_tier is None and new_billing_period is None:
            raise ValidationError("Nothing to update: provide a tier or a billing period")

        new_tier = PlanTier(new_tier) if new_tier else None
        new_billing_period = BillingPeriod(new_billing_period) if new_billing_period else None

        with self.session_scope() as session:
            original = self._load(session, subscription_id)
            self._require_mutable(original, "update")
            current = original

            if new_tier and new_tier != current.plan_tier:
                if self.catalog.compare_tiers(new_tier, current.plan_tier) == TierComparison.GREATER:
                    current = self._upgrade_in(
                        session, current, new_tier, new_billing_period, payment_method_token, now
                    )
                else:
                    current = self._downgrade_in(session, current, new_tier, now)

            if new_billing_period and new_billing_period != current.billing_period:
                token = payment_method_token or current.payment_method_token
                current = apply_versioned_update(
                    session,
                    current,
                    {"billing_period": new_billing_period, "payment_method_token": token},
                    now,
                )
                self.payments.change_plan(
                    current.user_id,
                    current.plan_tier,
                    current.plan_tier,
                    new_billing_period,
                    token,
                    Decimal("0"),
                )
            elif payment_method_token and payment_method_token != current.payment_method_token:
                current = apply_versioned_update(session, current, {"payment_method_token": payment_method_token}, now)

        logger.info(
            "[subscriptions] updated",
            extra={
                "subscription_id": subscription_id,
                "from_tier": original.plan_tier.value,
                "to_tier": current.plan_tier.value,
                "pending_tier": _column_value(current.pending_tier),
                "from_period": original.billing_period.value,
                "to_period": current.billing_period.value,
            },
        )
        return current

    def cancel(self, subscription_id: str, immediately: bool = False, *, now=None) -> TransitionOutcome:
        """
        Cancel now (CANCELED, period ends now, the period's charge refunded)
        or at period end (PENDING_CANCELLATION, usable until current_period_end).
        """
        now = normalize_now(now)

        with self.session_scope() as session:
            current = self._load(session, subscription_id)
            if current.status.is_terminal:
                raise InvalidStateError(
                    f"Subscription is already {current.status.value}",
                    details={"subscription_id": current.id, "status": current.status.value},
                )

            if not immediately:
                if current.status == SubscriptionStatus.PENDING_CANCELLATION:
                    return TransitionOutcome(
                        subscription=current,
                        action=HistoryAction.CANCEL,
                        effective_at=current.current_period_end,
                        scheduled=True,
                    )
                updated = apply_versioned_update(
                    session,
                    current,
                    {"status": SubscriptionStatus.PENDING_CANCELLATION, "cancel_at_period_end": True},
                    now,
                )
                _record_history(session, updated, HistoryAction.CANCEL, current.plan_tier, current.plan_tier, now)
                outcome = TransitionOutcome(
                    subscription=updated,
                    action=HistoryAction.CANCEL,
                    effective_at=updated.current_period_end,
                    scheduled=True,
                )
            else:
                updated = apply_versioned_update(
                    session,
                    current,
                    {
                        "status": SubscriptionStatus.CANCELED,
                        "current_period_end": now,
                        "canceled_at": now,
                        "cancel_at_period_end": False,
                        "pending_tier": None,
                    },
                    now,
                )
                _record_history(session, updated, HistoryAction.CANCEL, current.plan_tier, current.plan_tier, now)
                in_trial = current.trial_end is not None and current.trial_end > now
                if current.last_payment_reference and not in_trial:
                    self.payments.refund(current.user_id, current.id, current.last_payment_reference)
                outcome = TransitionOutcome(subscription=updated, action=HistoryAction.CANCEL, effective_at=now)

        logger.info(
            "[subscriptions] canceled",
            extra={
                "user_id": current.user_id,
                "subscription_id": current.id,
                "immediately": immediately,
                "status": outcome.subscription.status.value,
            },
        )
        return outcome

    def reactivate(self, subscription_id: str, *, now=None) -> Subscription:
        """Undo a pending cancellation while the period is still running."""
        now = normalize_now(now)

        with self.session_scope() as session:
            current = self._load(session, subscription_id)
            if current.status != SubscriptionStatus.PENDING_CANCELLATION:
                raise InvalidStateError(
                    f"Cannot reactivate a subscription in {current.status.value}",
                    details={"subscription_id": current.id, "status": current.status.value},
                )
            if now >= current.current_period_end:
                raise InvalidStateError(
                    "Billing period has ended; start a new subscription instead",
                    details={"subscription_id": current.id},
                )
            updated = apply_versioned_update(
                session,
                current,
                {"status": SubscriptionStatus.ACTIVE, "cancel_at_period_end": False},
                now,
            )
            _record_history(session, updated, HistoryAction.REACTIVATE, current.plan_tier, current.plan_tier, now)

        logger.info(
            "[subscriptions] reactivated",
            extra={"user_id": updated.user_id, "subscription_id": updated.id},
        )
        return updated

    # ------------------------------------------------------------------
    # Rollover
    # ------------------------------------------------------------------

    def _charge_for_period(self, subscription: Subscription, tier: PlanTier) -> Optional[PaymentReceipt]:
        plan = self.catalog.get(tier)
        if not plan.is_paid:
            return None
        return self.payments.charge(
            subscription.user_id,
            tier,
            subscription.billing_period,
            subscription.payment_method_token,
            plan.price_for(subscription.billing_period),
        )

    def _expire(self, session: Session, current: Subscription, now: datetime, reason: str) -> Subscription:
        updated = apply_versioned_update(
            session,
            current,
            {"status": SubscriptionStatus.EXPIRED, "cancel_at_period_end": False, "pending_tier": None},
            now,
        )
        logger.warning(
            "[subscriptions] expired",
            extra={"user_id": current.user_id, "subscription_id": current.id, "reason": reason},
        )
        return updated

    def renew(self, subscription_id: str, *, now=None) -> Subscription:
        """
        Apply whatever is due for the subscription at `now`.

        A trial is due at trial_end and every other live subscription at
        current_period_end. A due pending cancellation expires. Otherwise the
        next tier (pending downgrade, else the current one) is charged and a
        new period starts at the boundary, so a converted trial is billed from
        trial_end onwards. A declined charge expires the subscription.
        """
        now = normalize_now(now)

        with self.session_scope() as session:
            current = self._load(session, subscription_id)
            if current.status.is_terminal:
                raise InvalidStateError(
                    f"Cannot renew a subscription in {current.status.value}",
                    details={"subscription_id": current.id, "status": current.status.value},
                )

            trialing = current.status == SubscriptionStatus.TRIALING and current.trial_end is not None
            boundary = current.trial_end if trialing else current.current_period_end
            if now < boundary:
                return current

            if current.status == SubscriptionStatus.PENDING_CANCELLATION:
                return self._expire(session, current, now, "canceled_at_period_end")

            next_tier = current.pending_tier or current.plan_tier
            try:
                receipt = self._charge_for_period(current, next_tier)
            except PaymentFailedError:
                return self._expire(
                    session, current, now, "trial_charge_declined" if trialing else "renewal_charge_declined"
                )

            start = boundary
            if add_billing_period(start, current.billing_period) <= now:
                # Missed more than one period; restart from now
                start = now
            updated = apply_versioned_update(
                session,
                current,
                {
                    "plan_tier": next_tier,
                    "pending_tier": None,
                    "status": SubscriptionStatus.ACTIVE,
                    "current_period_start": start,
                    "current_period_end": add_billing_period(start, current.billing_period),
                    "last_payment_reference": receipt.reference if receipt else None,
                },
                now,
            )
            _record_history(session, updated, HistoryAction.RENEW, current.plan_tier, next_tier, now)

        logger.info(
            "[subscriptions] trial converted" if trialing else "[subscriptions] renewed",
            extra={
                "user_id": updated.user_id,
                "subscription_id": updated.id,
                "plan_tier": updated.plan_tier.value,
                "current_period_end": updated.current_period_end.isoformat(),
            },
        )
        return updated


_manager: Optional[SubscriptionManager] = None


def get_subscription_manager() -> SubscriptionManager:
    global _manager
    if _manager is None:
        _manager = SubscriptionManager()
    return _manager
