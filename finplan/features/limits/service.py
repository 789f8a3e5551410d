"""
finplan/features/limits/service.py

Plan limit enforcement.

Handles:
- Active tier resolution (no live subscription means FREE)
- Read-only limit checks
- Hard enforcement raising LimitExceededError
- Capability gating

Structured logs only.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from finplan.core.database import get_db_session, session_or_scope, subscriptions
from finplan.core.errors import CapabilityRequiredError, LimitExceededError
from finplan.features.plans.catalog import CATALOG, PlanCatalog
from finplan.features.usage.service import UsageCounter
from finplan.models.plan import Limit, PlanTier, ResourceKind
from finplan.models.subscription import NON_TERMINAL_STATUSES


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LimitCheckResult:
    allowed: bool
    current_count: int
    limit: Limit
    remaining: Limit
    plan_tier: PlanTier
    resource_kind: ResourceKind

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "current_count": self.current_count,
            "limit": self.limit.to_json(),
            "remaining": self.remaining.to_json(),
            "plan_tier": self.plan_tier.value,
            "resource_kind": self.resource_kind.value,
        }


class PlanLimitEnforcer:
    def __init__(
        self,
        session_scope: Optional[Callable] = None,
        catalog: Optional[PlanCatalog] = None,
        usage: Optional[UsageCounter] = None,
    ):
        self.session_scope = session_scope or get_db_session
        self.catalog = catalog or CATALOG
        self.usage = usage or UsageCounter(self.session_scope, self.catalog)

    def resolve_tier(self, user_id: str, *, session: Optional[Session] = None) -> PlanTier:
        """Tier of the user's live subscription; FREE when there is none."""
        with session_or_scope(session, self.session_scope) as s:
            tier = s.execute(
                select(subscriptions.c.plan_tier)
                .where(subscriptions.c.user_id == user_id)
                .where(subscriptions.c.status.in_([st.value for st in NON_TERMINAL_STATUSES]))
            ).scalar_one_or_none()
        return PlanTier(tier) if tier else PlanTier.FREE

    def check(self, user_id: str, resource_kind: ResourceKind, *, session: Optional[Session] = None) -> LimitCheckResult:
        """Whether one more `resource_kind` fits the user's plan. Never raises for over-limit."""
        kind = ResourceKind(resource_kind)
        tier = self.resolve_tier(user_id, session=session)
        limit = self.catalog.limit_for(tier, kind)

        if limit.is_unlimited:
            # Unlimited plans never read usage
            return LimitCheckResult(
                allowed=True,
                current_count=0,
                limit=limit,
                remaining=limit,
                plan_tier=tier,
                resource_kind=kind,
            )

        current = self.usage.count(user_id, kind, session=session)
        return LimitCheckResult(
            allowed=limit.allows(current),
            current_count=current,
            limit=limit,
            remaining=limit.remaining(current),
            plan_tier=tier,
            resource_kind=kind,
        )

    def enforce(self, user_id: str, resource_kind: ResourceKind, *, session: Optional[Session] = None) -> LimitCheckResult:
        result = self.check(user_id, resource_kind, session=session)
        if not result.allowed:
            logger.warning(
                "[limits] BLOCK",
                extra={
                    "user_id": user_id,
                    "resource_kind": result.resource_kind.value,
                    "plan_tier": result.plan_tier.value,
                    "limit": result.limit.to_json(),
                    "current_count": result.current_count,
                },
            )
            raise LimitExceededError(
                result.resource_kind,
                result.limit,
                result.current_count,
                result.plan_tier,
            )
        return result

    def require_capability(self, user_id: str, capability: str) -> PlanTier:
        tier = self.resolve_tier(user_id)
        if not self.catalog.capability_enabled(tier, capability):
            logger.warning(
                "[limits] capability missing",
                extra={"user_id": user_id, "capability": capability, "plan_tier": tier.value},
            )
            raise CapabilityRequiredError(
                f"Your {tier.value} plan does not include {capability}",
                details={"capability": capability, "plan_tier": tier.value, "upgrade_required": True},
            )
        return tier


_enforcer: Optional[PlanLimitEnforcer] = None


def get_limit_enforcer() -> PlanLimitEnforcer:
    global _enforcer
    if _enforcer is None:
        _enforcer = PlanLimitEnforcer()
    return _enforcer
