"""
finplan/features/usage/service.py

Usage counter reader.

Handles:
- Live resource counts per (user, kind)
- Limits overview across all resource kinds

Counts are derived from owned_resources on every call and never cached.
"""

from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from finplan.core.database import get_db_session, owned_resources, session_or_scope
from finplan.features.plans.catalog import CATALOG, PlanCatalog
from finplan.models.plan import PlanTier, ResourceKind


class UsageCounter:
    def __init__(self, session_scope: Optional[Callable] = None, catalog: Optional[PlanCatalog] = None):
        self.session_scope = session_scope or get_db_session
        self.catalog = catalog or CATALOG

    def count(self, user_id: str, resource_kind: ResourceKind, *, session: Optional[Session] = None) -> int:
        """Number of live (not soft-deleted) resources of `resource_kind` owned by the user."""
        kind = ResourceKind(resource_kind)
        with session_or_scope(session, self.session_scope) as s:
            return s.execute(
                select(func.count())
                .select_from(owned_resources)
                .where(owned_resources.c.user_id == user_id)
                .where(owned_resources.c.kind == kind.value)
                .where(owned_resources.c.deleted_at.is_(None))
            ).scalar_one()

    def counts(self, user_id: str, *, session: Optional[Session] = None) -> Dict[ResourceKind, int]:
        with session_or_scope(session, self.session_scope) as s:
            rows = s.execute(
                select(owned_resources.c.kind, func.count())
                .where(owned_resources.c.user_id == user_id)
                .where(owned_resources.c.deleted_at.is_(None))
                .group_by(owned_resources.c.kind)
            ).all()
        by_kind = {ResourceKind(kind): n for kind, n in rows}
        return {kind: by_kind.get(kind, 0) for kind in ResourceKind}

    def overview(self, user_id: str, tier: PlanTier) -> Dict[str, Dict[str, Any]]:
        """
        Per-kind usage against the plan's limits.

        Returns {kind: {current, limit, remaining, percentage}}. Unlimited
        kinds report limit/remaining as "unlimited" and percentage 0.
        """
        current = self.counts(user_id)
        result: Dict[str, Dict[str, Any]] = {}
        for kind in ResourceKind:
            limit = self.catalog.limit_for(tier, kind)
            used = current[kind]
            if limit.is_unlimited:
                percentage = 0
            elif limit.cap == 0:
                percentage = 100
            else:
                percentage = min(100, round(used * 100 / limit.cap))
            result[kind.value] = {
                "current": used,
                "limit": limit.to_json(),
                "remaining": limit.remaining(used).to_json(),
                "percentage": percentage,
            }
        return result


_counter: Optional[UsageCounter] = None


def get_usage_counter() -> UsageCounter:
    global _counter
    if _counter is None:
        _counter = UsageCounter()
    return _counter
