"""
finplan/features/limits/gate.py

Quota gate in front of resource-creation handlers.

QuotaGate normalizes failures: missing identity is 401, an exceeded quota
is the structured LimitExceededError, anything else becomes an opaque
InternalError after being logged with full context.

enforce_limit(kind), check_limits(kind) and require_capability(name) build
FastAPI dependencies:

    @router.post("", dependencies=[Depends(enforce_limit(ResourceKind.WALLET))])
"""

import logging
from typing import Optional

from fastapi import Depends, Request

from finplan.core.auth import get_current_user_id
from finplan.core.errors import AppError, InternalError, UnauthenticatedError
from finplan.features.limits.service import LimitCheckResult, PlanLimitEnforcer, get_limit_enforcer
from finplan.features.plans.catalog import CAPABILITIES
from finplan.models.plan import PlanTier, ResourceKind


logger = logging.getLogger(__name__)


class QuotaGate:
    def __init__(self, enforcer: Optional[PlanLimitEnforcer] = None):
        self.enforcer = enforcer or get_limit_enforcer()

    def _run(self, operation: str, user_id: Optional[str], resource_kind: ResourceKind) -> LimitCheckResult:
        if not user_id:
            raise UnauthenticatedError("Authentication required")
        kind = ResourceKind(resource_kind)
        try:
            if operation == "enforce":
                return self.enforcer.enforce(user_id, kind)
            return self.enforcer.check(user_id, kind)
        except AppError:
            raise
        except Exception as e:
            logger.error(
                "[limits] gate failure",
                exc_info=True,
                extra={"user_id": user_id, "resource_kind": kind.value, "operation": operation},
            )
            raise InternalError("Failed to check plan limits") from e

    def enforce(self, user_id: Optional[str], resource_kind: ResourceKind) -> LimitCheckResult:
        """Block when the user's plan has no room for one more `resource_kind`."""
        return self._run("enforce", user_id, resource_kind)

    def check_limits(self, user_id: Optional[str], resource_kind: ResourceKind) -> LimitCheckResult:
        """Read-only variant; never blocks on over-limit."""
        return self._run("check", user_id, resource_kind)

    def require_capability(self, user_id: Optional[str], capability: str) -> PlanTier:
        """Block when the user's plan does not include `capability`."""
        if not user_id:
            raise UnauthenticatedError("Authentication required")
        try:
            return self.enforcer.require_capability(user_id, capability)
        except AppError:
            raise
        except Exception as e:
            logger.error(
                "[limits] gate failure",
                exc_info=True,
                extra={"user_id": user_id, "capability": capability, "operation": "require_capability"},
            )
            raise InternalError("Failed to check plan capabilities") from e


def get_quota_gate() -> QuotaGate:
    return QuotaGate()


def enforce_limit(resource_kind: ResourceKind):
    def _dependency(
        user_id: str = Depends(get_current_user_id),
        gate: QuotaGate = Depends(get_quota_gate),
    ) -> LimitCheckResult:
        return gate.enforce(user_id, resource_kind)

    return _dependency


def check_limits(resource_kind: ResourceKind):
    def _dependency(
        request: Request,
        user_id: str = Depends(get_current_user_id),
        gate: QuotaGate = Depends(get_quota_gate),
    ) -> LimitCheckResult:
        result = gate.check_limits(user_id, resource_kind)
        request.state.limit_check = result
        return result

    return _dependency


def require_capability(capability: str):
    if capability not in CAPABILITIES:
        raise ValueError(f"Unknown capability: {capability}")

    def _dependency(
        user_id: str = Depends(get_current_user_id),
        gate: QuotaGate = Depends(get_quota_gate),
    ) -> PlanTier:
        return gate.require_capability(user_id, capability)

    return _dependency
