"""Usage and limit API routes (authenticated)."""
from fastapi import APIRouter, Depends

from finplan.core.auth import get_current_user_id
from finplan.features.limits.gate import QuotaGate, get_quota_gate
from finplan.features.limits.service import PlanLimitEnforcer, get_limit_enforcer
from finplan.features.usage.service import UsageCounter, get_usage_counter
from finplan.models.plan import ResourceKind


router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("/limits")
def limits_overview(
    user_id: str = Depends(get_current_user_id),
    enforcer: PlanLimitEnforcer = Depends(get_limit_enforcer),
    usage: UsageCounter = Depends(get_usage_counter),
):
    """Usage against every limit of the user's active plan."""
    tier = enforcer.resolve_tier(user_id)
    return {"plan_tier": tier.value, "limits": usage.overview(user_id, tier)}


@router.get("/limits/{resource_kind}")
def check_limit(
    resource_kind: ResourceKind,
    user_id: str = Depends(get_current_user_id),
    gate: QuotaGate = Depends(get_quota_gate),
):
    return gate.check_limits(user_id, resource_kind).to_dict()
