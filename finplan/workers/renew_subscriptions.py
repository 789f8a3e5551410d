"""Period rollover job: trial conversions, scheduled cancellations, downgrades and renewals."""
from datetime import datetime
import logging
from typing import Optional

from sqlalchemy import and_, or_, select

from finplan.core.clock import normalize_now
from finplan.core.database import get_db_session, subscriptions
from finplan.core.errors import AppError
from finplan.features.subscriptions.service import SubscriptionManager, get_subscription_manager
from finplan.models.subscription import NON_TERMINAL_STATUSES, SubscriptionStatus

logger = logging.getLogger("finplan.workers.renew_subscriptions")


def find_due_subscription_ids(now: datetime, limit: int = 500) -> list[str]:
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions.c.id)
            .where(subscriptions.c.status.in_([s.value for s in NON_TERMINAL_STATUSES]))
            .where(
                or_(
                    and_(
                        subscriptions.c.status != SubscriptionStatus.TRIALING.value,
                        subscriptions.c.current_period_end <= now,
                    ),
                    and_(
                        subscriptions.c.status == SubscriptionStatus.TRIALING.value,
                        subscriptions.c.trial_end <= now,
                    ),
                )
            )
            .order_by(subscriptions.c.current_period_end)
            .limit(limit)
        ).fetchall()
    return [row.id for row in rows]


def renew_due_subscriptions(
    *,
    now: Optional[datetime] = None,
    limit: int = 500,
    manager: Optional[SubscriptionManager] = None,
) -> dict:
    now = normalize_now(now)
    manager = manager or get_subscription_manager()

    stats = {"candidates": 0, "renewed": 0, "expired": 0, "converted": 0, "failed": 0}
    due = find_due_subscription_ids(now, limit=limit)
    stats["candidates"] = len(due)

    for subscription_id in due:
        try:
            before = manager.get(subscription_id)
            after = manager.renew(subscription_id, now=now)
        except AppError as e:
            # One bad row must not stop the batch; it is retried on the next run
            stats["failed"] += 1
            logger.warning(
                "[renewals] renew failed",
                extra={"subscription_id": subscription_id, "error_code": e.code, "error_message": e.message},
            )
            continue
        except Exception:
            stats["failed"] += 1
            logger.error(
                "[renewals] renew crashed",
                exc_info=True,
                extra={"subscription_id": subscription_id},
            )
            continue

        if after.status == SubscriptionStatus.EXPIRED:
            stats["expired"] += 1
        elif before.status == SubscriptionStatus.TRIALING and after.status == SubscriptionStatus.ACTIVE:
            stats["converted"] += 1
        elif after.current_period_end != before.current_period_end:
            stats["renewed"] += 1

    logger.info("[renewals] run complete", extra={**stats, "now": now.isoformat()})
    return stats


if __name__ == "__main__":
    from finplan.core.logging import configure_logging
    from finplan.core.config import settings

    configure_logging(settings.ENV)
    result = renew_due_subscriptions()
    print(result)
