"""
Subscription lifecycle manager tests.

Payments are a unittest.mock double; no Stripe calls.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from finplan.core.database import get_db_session
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
from finplan.features.plans.catalog import DEFAULT_PLANS, PlanCatalog
from finplan.features.subscriptions.service import SubscriptionManager, apply_versioned_update
from finplan.models.plan import BillingPeriod, PlanTier
from finplan.models.subscription import HistoryAction, SubscriptionStatus


@pytest.fixture
def no_trial_manager(payments):
    catalog = PlanCatalog(plans=[p.model_copy(update={"trial_days": 0}) for p in DEFAULT_PLANS])
    return SubscriptionManager(payments=payments, catalog=catalog)


class TestCreate:
    def test_free_round_trip(self, manager, now):
        created = manager.create("u1", PlanTier.FREE, BillingPeriod.MONTHLY, now=now)
        current = manager.get_current("u1")

        assert current.id == created.id
        assert current.status == SubscriptionStatus.ACTIVE
        assert current.plan_tier == PlanTier.FREE
        assert current.cancel_at_period_end is False
        assert current.current_period_start == now
        assert current.current_period_end == datetime(2026, 4, 10, 9, 30, tzinfo=timezone.utc)
        assert current.trial_end is None

    def test_yearly_period(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, BillingPeriod.YEARLY, now=now)
        assert sub.current_period_end == datetime(2027, 3, 10, 9, 30, tzinfo=timezone.utc)

    def test_month_end_is_clamped(self, manager):
        jan31 = datetime(2026, 1, 31, tzinfo=timezone.utc)
        sub = manager.create("u1", PlanTier.FREE, now=jan31)
        assert sub.current_period_end == datetime(2026, 2, 28, tzinfo=timezone.utc)

    def test_duplicate_live_subscription_conflicts(self, manager, now):
        manager.create("u1", PlanTier.FREE, now=now)
        with pytest.raises(ConflictError):
            manager.create("u1", PlanTier.PRO, payment_method_token="pm_card", now=now)

    def test_new_subscription_after_terminal_one(self, manager, now):
        first = manager.create("u1", PlanTier.FREE, now=now)
        manager.cancel(first.id, immediately=True, now=now)
        second = manager.create("u1", PlanTier.FREE, now=now + timedelta(minutes=1))
        assert second.id != first.id
        assert manager.get_current("u1").id == second.id

    def test_first_paid_subscription_starts_trialing(self, manager, payments, now):
        sub = manager.create("u1", PlanTier.PRO, payment_method_token="pm_card", now=now)
        assert sub.status == SubscriptionStatus.TRIALING
        assert sub.trial_end == now + timedelta(days=14)
        payments.charge.assert_not_called()

    def test_second_trial_is_not_granted(self, manager, payments, now):
        first = manager.create("u1", PlanTier.PRO, payment_method_token="pm_card", now=now)
        manager.cancel(first.id, immediately=True, now=now)

        second = manager.create("u1", PlanTier.PRO, payment_method_token="pm_card", now=now)
        assert second.status == SubscriptionStatus.ACTIVE
        assert second.trial_end is None
        payments.charge.assert_called_once_with(
            "u1", PlanTier.PRO, BillingPeriod.MONTHLY, "pm_card", Decimal("19.99")
        )

    def test_paid_tier_requires_payment_method(self, manager, now):
        # PRO trial (14 days) does not cover a monthly period
        with pytest.raises(PaymentMethodRequiredError) as exc:
            manager.create("u1", PlanTier.PRO, now=now)
        assert exc.value.status_code == 400
        with pytest.raises(NotFoundError):
            manager.get_current("u1")

    def test_trial_covering_the_period_needs_no_payment_method(self, manager):
        feb1 = datetime(2026, 2, 1, tzinfo=timezone.utc)
        sub = manager.create("u1", PlanTier.ULTIMATE, BillingPeriod.MONTHLY, now=feb1)
        assert sub.status == SubscriptionStatus.TRIALING
        assert sub.trial_end >= sub.current_period_end

    def test_payment_failure_persists_nothing(self, no_trial_manager, payments, now):
        payments.charge.side_effect = PaymentFailedError("Card declined")

        with pytest.raises(PaymentFailedError):
            no_trial_manager.create("u1", PlanTier.PRO, payment_method_token="pm_declined", now=now)

        with pytest.raises(NotFoundError):
            no_trial_manager.get_current("u1")
        assert no_trial_manager.history("u1") == []

    def test_token_is_never_serialized(self, manager, now):
        sub = manager.create("u1", PlanTier.PRO, payment_method_token="pm_secret", now=now)
        assert manager.get(sub.id).payment_method_token == "pm_secret"
        assert "payment_method_token" not in sub.model_dump(mode="json")


class TestUpgradeDowngrade:
    def test_upgrade_is_immediate_and_keeps_period(self, manager, payments, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        later = now + timedelta(days=5)

        outcome = manager.upgrade(sub.id, PlanTier.PRO, payment_method_token="pm_card", now=later)

        assert outcome.action == HistoryAction.UPGRADE
        assert outcome.scheduled is False
        assert outcome.effective_at == later
        assert outcome.subscription.plan_tier == PlanTier.PRO
        assert outcome.subscription.current_period_end == sub.current_period_end
        payments.change_plan.assert_called_once_with(
            "u1", PlanTier.FREE, PlanTier.PRO, BillingPeriod.MONTHLY, "pm_card", Decimal("19.99")
        )
        assert manager.get(sub.id).payment_method_token == "pm_card"

    def test_upgrade_to_paid_tier_requires_payment_method(self, manager, payments, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)

        with pytest.raises(PaymentMethodRequiredError):
            manager.upgrade(sub.id, PlanTier.PRO, now=now)

        assert manager.get(sub.id).plan_tier == PlanTier.FREE
        payments.change_plan.assert_not_called()

    def test_upgrade_uses_payment_method_on_file(self, no_trial_manager, payments, now):
        sub = no_trial_manager.create("u1", PlanTier.PRO, payment_method_token="pm_card", now=now)

        no_trial_manager.upgrade(sub.id, PlanTier.ULTIMATE, now=now)

        payments.change_plan.assert_called_once_with(
            "u1", PlanTier.PRO, PlanTier.ULTIMATE, BillingPeriod.MONTHLY, "pm_card", Decimal("30.00")
        )

    def test_upgrade_during_trial_owes_nothing(self, manager, payments, now):
        sub = manager.create("u1", PlanTier.PRO, payment_method_token="pm_card", now=now)

        manager.upgrade(sub.id, PlanTier.ULTIMATE, now=now + timedelta(days=1))

        assert payments.change_plan.call_args.args[-1] == Decimal("0")

    def test_upgrade_payment_failure_keeps_tier(self, manager, payments, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        payments.change_plan.side_effect = PaymentFailedError("Card declined")

        with pytest.raises(PaymentFailedError):
            manager.upgrade(sub.id, PlanTier.PRO, payment_method_token="pm_declined", now=now)

        current = manager.get(sub.id)
        assert current.plan_tier == PlanTier.FREE
        assert current.payment_method_token is None
        assert current.version == sub.version
        assert [h.action for h in manager.history("u1")] == [HistoryAction.CREATE]

    @pytest.mark.parametrize(
        "start,target",
        [
            (PlanTier.PRO, PlanTier.FREE),
            (PlanTier.ULTIMATE, PlanTier.PRO),
            (PlanTier.PRO, PlanTier.PRO),
        ],
    )
    def test_upgrade_must_go_up(self, manager, now, start, target):
        sub = manager.create("u1", start, payment_method_token="pm_card", now=now)
        with pytest.raises(InvalidTransitionError):
            manager.upgrade(sub.id, target, now=now)

    @pytest.mark.parametrize(
        "start,target",
        [
            (PlanTier.FREE, PlanTier.PRO),
            (PlanTier.PRO, PlanTier.ULTIMATE),
            (PlanTier.PRO, PlanTier.PRO),
        ],
    )
    def test_downgrade_must_go_down(self, manager, now, start, target):
        sub = manager.create("u1", start, payment_method_token="pm_card", now=now)
        with pytest.raises(InvalidTransitionError):
            manager.downgrade(sub.id, target, now=now)

    def test_upgrade_clears_pending_downgrade(self, manager, now):
        sub = manager.create("u1", PlanTier.PRO, payment_method_token="pm_card", now=now)
        manager.downgrade(sub.id, PlanTier.FREE, now=now)
        outcome = manager.upgrade(sub.id, PlanTier.ULTIMATE, now=now)
        assert outcome.subscription.pending_tier is None

    def test_downgrade_is_scheduled_for_period_end(self, manager, now):
        sub = manager.create("u1", PlanTier.PRO, payment_method_token="pm_card", now=now)

        outcome = manager.downgrade(sub.id, PlanTier.FREE, now=now)

        assert outcome.scheduled is True
        assert outcome.effective_at == sub.current_period_end
        current = manager.get(sub.id)
        assert current.plan_tier == PlanTier.PRO
        assert current.pending_tier == PlanTier.FREE

    def test_cannot_change_tier_of_canceled_subscription(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        manager.cancel(sub.id, immediately=True, now=now)
        with pytest.raises(InvalidStateError):
            manager.upgrade(sub.id, PlanTier.PRO, now=now)
        with pytest.raises(InvalidStateError):
            manager.update(sub.id, new_billing_period=BillingPeriod.YEARLY, now=now)


class TestUpdate:
    def test_billing_period_change_keeps_current_period(self, manager, payments, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        updated = manager.update(sub.id, new_billing_period=BillingPeriod.YEARLY, now=now)

        assert updated.billing_period == BillingPeriod.YEARLY
        assert updated.current_period_end == sub.current_period_end
        payments.change_plan.assert_called_once()

    def test_tier_change_routes_to_upgrade(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        updated = manager.update(sub.id, new_tier=PlanTier.PRO, payment_method_token="pm_card", now=now)
        assert updated.plan_tier == PlanTier.PRO

    def test_tier_change_routes_to_downgrade(self, manager, now):
        sub = manager.create("u1", PlanTier.ULTIMATE, payment_method_token="pm_card", now=now)
        updated = manager.update(sub.id, new_tier=PlanTier.PRO, new_billing_period=BillingPeriod.YEARLY, now=now)
        assert updated.plan_tier == PlanTier.ULTIMATE
        assert updated.pending_tier == PlanTier.PRO
        assert updated.billing_period == BillingPeriod.YEARLY

    def test_combined_update_is_all_or_nothing(self, manager, payments, now):
        sub = manager.create("u1", PlanTier.ULTIMATE, payment_method_token="pm_card", now=now)
        payments.change_plan.side_effect = PaymentFailedError("Card declined")

        with pytest.raises(PaymentFailedError):
            manager.update(sub.id, new_tier=PlanTier.PRO, new_billing_period=BillingPeriod.YEARLY, now=now)

        current = manager.get(sub.id)
        assert current.pending_tier is None
        assert current.billing_period == BillingPeriod.MONTHLY
        assert current.version == sub.version
        assert [h.action for h in manager.history("u1")] == [HistoryAction.CREATE]

    def test_update_upgrade_requires_payment_method(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        with pytest.raises(PaymentMethodRequiredError):
            manager.update(sub.id, new_tier=PlanTier.PRO, new_billing_period=BillingPeriod.YEARLY, now=now)
        assert manager.get(sub.id).billing_period == BillingPeriod.MONTHLY

    def test_empty_update_is_rejected(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        with pytest.raises(ValidationError):
            manager.update(sub.id, now=now)


class TestCancelReactivate:
    def test_cancel_then_reactivate_then_reactivate_again(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)

        canceled = manager.cancel(sub.id, immediately=False, now=now).subscription
        assert canceled.status == SubscriptionStatus.PENDING_CANCELLATION
        assert canceled.cancel_at_period_end is True

        reactivated = manager.reactivate(sub.id, now=now + timedelta(days=1))
        assert reactivated.status == SubscriptionStatus.ACTIVE
        assert reactivated.cancel_at_period_end is False

        with pytest.raises(InvalidStateError):
            manager.reactivate(sub.id, now=now + timedelta(days=2))

    def test_reactivate_after_period_end_fails(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        manager.cancel(sub.id, now=now)
        with pytest.raises(InvalidStateError):
            manager.reactivate(sub.id, now=sub.current_period_end)

    def test_reactivate_canceled_fails(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        manager.cancel(sub.id, immediately=True, now=now)
        with pytest.raises(InvalidStateError):
            manager.reactivate(sub.id, now=now)

    def test_immediate_cancel_ends_period_and_refunds(self, no_trial_manager, payments, now):
        sub = no_trial_manager.create("u1", PlanTier.PRO, payment_method_token="pm_card", now=now)
        later = now + timedelta(days=3)

        outcome = no_trial_manager.cancel(sub.id, immediately=True, now=later)

        assert outcome.subscription.status == SubscriptionStatus.CANCELED
        assert outcome.subscription.current_period_end == later
        assert outcome.subscription.canceled_at == later
        payments.refund.assert_called_once_with("u1", sub.id, "ch_test")

    def test_refund_failure_keeps_subscription(self, no_trial_manager, payments, now):
        sub = no_trial_manager.create("u1", PlanTier.PRO, payment_method_token="pm_card", now=now)
        payments.refund.side_effect = PaymentFailedError("Refund failed")

        with pytest.raises(PaymentFailedError):
            no_trial_manager.cancel(sub.id, immediately=True, now=now)

        assert no_trial_manager.get(sub.id).status == SubscriptionStatus.ACTIVE

    def test_immediate_cancel_after_upgrade_from_free_refunds_upgrade_charge(self, manager, payments, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        manager.upgrade(sub.id, PlanTier.PRO, payment_method_token="pm_card", now=now)

        manager.cancel(sub.id, immediately=True, now=now + timedelta(days=1))

        payments.refund.assert_called_once_with("u1", sub.id, "pc_test")

    def test_cancel_during_trial_does_not_refund(self, manager, payments, now):
        sub = manager.create("u1", PlanTier.PRO, payment_method_token="pm_card", now=now)
        manager.cancel(sub.id, immediately=True, now=now)
        payments.refund.assert_not_called()

    def test_cancel_terminal_fails(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        manager.cancel(sub.id, immediately=True, now=now)
        with pytest.raises(InvalidStateError):
            manager.cancel(sub.id, immediately=False, now=now)

    def test_pending_cancellation_can_be_canceled_immediately(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        manager.cancel(sub.id, now=now)
        outcome = manager.cancel(sub.id, immediately=True, now=now)
        assert outcome.subscription.status == SubscriptionStatus.CANCELED


class TestHistoryAndConcurrency:
    def test_history_is_ordered_oldest_first(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        manager.upgrade(sub.id, PlanTier.PRO, payment_method_token="pm_card", now=now + timedelta(hours=1))
        manager.downgrade(sub.id, PlanTier.FREE, now=now + timedelta(hours=2))
        manager.cancel(sub.id, now=now + timedelta(hours=3))
        manager.reactivate(sub.id, now=now + timedelta(hours=4))

        history = manager.history("u1")
        assert [h.action for h in history] == [
            HistoryAction.CREATE,
            HistoryAction.UPGRADE,
            HistoryAction.DOWNGRADE,
            HistoryAction.CANCEL,
            HistoryAction.REACTIVATE,
        ]
        assert history[0].from_tier is None
        assert (history[1].from_tier, history[1].to_tier) == (PlanTier.FREE, PlanTier.PRO)
        assert (history[2].from_tier, history[2].to_tier) == (PlanTier.PRO, PlanTier.FREE)
        assert manager.history("someone-else") == []

    def test_stale_write_is_rejected(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        stale = manager.get(sub.id)
        manager.cancel(sub.id, now=now)

        with pytest.raises(ConcurrentModificationError) as exc:
            with get_db_session() as session:
                apply_versioned_update(session, stale, {"status": SubscriptionStatus.ACTIVE}, now)
        assert exc.value.status_code == 409

        # The cancellation was not silently undone
        assert manager.get(sub.id).status == SubscriptionStatus.PENDING_CANCELLATION

    def test_version_increments_per_transition(self, manager, now):
        sub = manager.create("u1", PlanTier.FREE, now=now)
        assert sub.version == 1
        manager.cancel(sub.id, now=now)
        assert manager.reactivate(sub.id, now=now).version == 3

    def test_unknown_subscription(self, manager, now):
        with pytest.raises(NotFoundError):
            manager.cancel("missing", now=now)
