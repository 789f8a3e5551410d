"""
Subscription API routes.

Public:
- GET  /api/subscriptions/plans
- GET  /api/subscriptions/plans/comparison

Authenticated (Bearer JWT or X-User-Id):
- GET   /api/subscriptions/current
- POST  /api/subscriptions
- PATCH /api/subscriptions/current
- POST  /api/subscriptions/upgrade | downgrade | cancel | reactivate
- GET   /api/subscriptions/history
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from finplan.core.auth import get_current_user_id
from finplan.core.logging import log_event
from finplan.features.plans.catalog import CATALOG
from finplan.features.subscriptions.service import SubscriptionManager, get_subscription_manager
from finplan.models.plan import BillingPeriod, Plan, PlanTier
from finplan.models.subscription import TransitionOutcome


router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


class CreateSubscriptionRequest(BaseModel):
    plan_tier: PlanTier
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    payment_method_token: Optional[str] = None


class UpdateSubscriptionRequest(BaseModel):
    plan_tier: Optional[PlanTier] = None
    billing_period: Optional[BillingPeriod] = None
    payment_method_token: Optional[str] = None


class UpgradeRequest(BaseModel):
    plan_tier: PlanTier
    billing_period: Optional[BillingPeriod] = None
    payment_method_token: Optional[str] = None


class DowngradeRequest(BaseModel):
    plan_tier: PlanTier


class CancelRequest(BaseModel):
    immediately: bool = False


def _plan_to_dict(plan: Plan) -> Dict[str, Any]:
    return {
        "tier": plan.tier.value,
        "name": plan.name,
        "description": plan.description,
        "monthly_price": str(plan.monthly_price),
        "yearly_price": str(plan.yearly_price),
        "yearly_discount_percent": plan.yearly_discount_percent,
        "yearly_savings": str(CATALOG.yearly_savings(plan.tier)),
        "trial_days": plan.trial_days,
        "popular": plan.popular,
        "limits": {kind.value: limit.to_json() for kind, limit in plan.limits.items()},
        "capabilities": dict(plan.capabilities),
    }


def _outcome_to_dict(outcome: TransitionOutcome) -> Dict[str, Any]:
    return outcome.model_dump(mode="json")


@router.get("/plans")
def list_plans():
    """All plans in tier order. No auth."""
    return {"plans": [_plan_to_dict(plan) for plan in CATALOG.all_plans()]}


@router.get("/plans/comparison")
def plan_comparison():
    return CATALOG.comparison_matrix()


@router.get("/current")
def get_current_subscription(
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    subscription = manager.get_current(user_id)
    return {"subscription": subscription.model_dump(mode="json")}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_subscription(
    body: CreateSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    subscription = manager.create(
        user_id,
        body.plan_tier,
        body.billing_period,
        body.payment_method_token,
    )
    log_event(
        "info",
        "subscription.created",
        user_id=user_id,
        subscription_id=subscription.id,
        event_type="subscription.create",
        extra={"plan_tier": subscription.plan_tier.value},
    )
    return {"subscription": subscription.model_dump(mode="json")}


@router.patch("/current")
def update_subscription(
    body: UpdateSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    current = manager.get_current(user_id)
    subscription = manager.update(current.id, body.plan_tier, body.billing_period, body.payment_method_token)
    return {"subscription": subscription.model_dump(mode="json")}


@router.post("/upgrade")
def upgrade_subscription(
    body: UpgradeRequest,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    current = manager.get_current(user_id)
    outcome = manager.upgrade(current.id, body.plan_tier, body.billing_period, body.payment_method_token)
    log_event(
        "info",
        "subscription.upgraded",
        user_id=user_id,
        subscription_id=current.id,
        event_type="subscription.upgrade",
        extra={"from_tier": current.plan_tier.value, "to_tier": body.plan_tier.value},
    )
    return _outcome_to_dict(outcome)


@router.post("/downgrade")
def downgrade_subscription(
    body: DowngradeRequest,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    current = manager.get_current(user_id)
    outcome = manager.downgrade(current.id, body.plan_tier)
    payload = _outcome_to_dict(outcome)
    payload["message"] = f"Downgrade to {body.plan_tier.value} scheduled for the end of the current period"
    return payload


@router.post("/cancel")
def cancel_subscription(
    body: Optional[CancelRequest] = None,
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    immediately = body.immediately if body else False
    current = manager.get_current(user_id)
    outcome = manager.cancel(current.id, immediately)
    log_event(
        "info",
        "subscription.canceled",
        user_id=user_id,
        subscription_id=current.id,
        event_type="subscription.cancel",
        extra={"immediately": immediately},
    )
    return _outcome_to_dict(outcome)


@router.post("/reactivate")
def reactivate_subscription(
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    current = manager.get_current(user_id)
    subscription = manager.reactivate(current.id)
    return {"subscription": subscription.model_dump(mode="json")}


@router.get("/history")
def subscription_history(
    user_id: str = Depends(get_current_user_id),
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    entries = manager.history(user_id)
    return {"history": [entry.model_dump(mode="json") for entry in entries]}
