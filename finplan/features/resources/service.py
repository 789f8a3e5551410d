"""
finplan/features/resources/service.py

Quota-bounded resource creation.

create() runs lock -> enforce -> insert in a single transaction so two
concurrent requests at `limit - 1` cannot both pass the check. The lock is
a per (user, kind) row in quota_locks: bumping it makes the transaction a
writer up front (SQLite, with BEGIN IMMEDIATE) or row-locks it until commit
(PostgreSQL and other MVCC backends).
"""

import logging
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from finplan.core.clock import ensure_utc, normalize_now
from finplan.core.database import get_db_session, owned_resources, quota_locks
from finplan.core.errors import NotFoundError
from finplan.features.limits.service import PlanLimitEnforcer, get_limit_enforcer
from finplan.models.plan import ResourceKind
from finplan.models.resource import OwnedResource


logger = logging.getLogger(__name__)


def acquire_quota_lock(session: Session, user_id: str, kind: ResourceKind) -> None:
    """Hold the (user, kind) quota lock for the rest of the session's transaction."""
    bump = (
        update(quota_locks)
        .where(quota_locks.c.user_id == user_id)
        .where(quota_locks.c.kind == kind.value)
        .values(version=quota_locks.c.version + 1)
    )
    if session.execute(bump).rowcount:
        return
    try:
        with session.begin_nested():
            session.execute(insert(quota_locks).values(user_id=user_id, kind=kind.value, version=1))
    except IntegrityError:
        # Another transaction created the row first; wait on it
        session.execute(bump)


def _row_to_resource(row) -> OwnedResource:
    return OwnedResource(
        id=row.id,
        user_id=row.user_id,
        kind=ResourceKind(row.kind),
        name=row.name,
        created_at=ensure_utc(row.created_at),
        deleted_at=ensure_utc(row.deleted_at),
    )


class ResourceService:
    def __init__(self, session_scope: Optional[Callable] = None, enforcer: Optional[PlanLimitEnforcer] = None):
        self.session_scope = session_scope or get_db_session
        self.enforcer = enforcer or get_limit_enforcer()

    def create(self, user_id: str, kind: ResourceKind, name: str, *, now=None) -> OwnedResource:
        """
        Create a resource if the user's plan allows one more.

        Raises:
            LimitExceededError: the plan's cap for `kind` is already reached
        """
        kind = ResourceKind(kind)
        created_at = normalize_now(now)
        resource_id = str(uuid4())

        with self.session_scope() as session:
            acquire_quota_lock(session, user_id, kind)
            self.enforcer.enforce(user_id, kind, session=session)
            session.execute(
                insert(owned_resources).values(
                    id=resource_id,
                    user_id=user_id,
                    kind=kind.value,
                    name=name,
                    created_at=created_at,
                    deleted_at=None,
                )
            )

        logger.info(
            "[resources] created",
            extra={"user_id": user_id, "resource_kind": kind.value, "resource_id": resource_id},
        )
        return OwnedResource(id=resource_id, user_id=user_id, kind=kind, name=name, created_at=created_at)

    def delete(self, user_id: str, resource_id: str, *, now=None) -> None:
        """Soft-delete; the resource stops counting toward the quota."""
        deleted_at = normalize_now(now)
        with self.session_scope() as session:
            result = session.execute(
                update(owned_resources)
                .where(owned_resources.c.id == resource_id)
                .where(owned_resources.c.user_id == user_id)
                .where(owned_resources.c.deleted_at.is_(None))
                .values(deleted_at=deleted_at)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Resource {resource_id} not found")

    def list(self, user_id: str, kind: ResourceKind) -> List[OwnedResource]:
        with self.session_scope() as session:
            rows = session.execute(
                select(owned_resources)
                .where(owned_resources.c.user_id == user_id)
                .where(owned_resources.c.kind == ResourceKind(kind).value)
                .where(owned_resources.c.deleted_at.is_(None))
                .order_by(owned_resources.c.created_at)
            ).fetchall()
        return [_row_to_resource(row) for row in rows]


def get_resource_service() -> ResourceService:
    return ResourceService()
