# finplan/conftest.py
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock
from uuid import uuid4

import pytest
from sqlalchemy import insert

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(scope="function", autouse=True)
def database(tmp_path):
    """
    Fresh file-backed SQLite database per test.

    File-backed (not :memory:) so worker threads in concurrency tests
    share the same database through separate connections.
    """
    from finplan.core.database import create_all_tables, init_engine

    engine = init_engine(f"sqlite+pysqlite:///{tmp_path / 'finplan-test.db'}")
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def now():
    return datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def payments():
    """Payment provider double that accepts everything."""
    from finplan.features.payments.provider import PaymentReceipt

    provider = Mock()
    provider.charge.return_value = PaymentReceipt(reference="ch_test", amount=Decimal("19.99"))
    provider.refund.return_value = PaymentReceipt(reference="re_test")
    provider.change_plan.return_value = PaymentReceipt(reference="pc_test")
    return provider


@pytest.fixture
def manager(payments):
    from finplan.features.subscriptions.service import SubscriptionManager

    return SubscriptionManager(payments=payments)


@pytest.fixture
def enforcer():
    from finplan.features.limits.service import PlanLimitEnforcer

    return PlanLimitEnforcer()


@pytest.fixture
def resource_service(enforcer):
    from finplan.features.resources.service import ResourceService

    return ResourceService(enforcer=enforcer)


@pytest.fixture
def seed_resources(now):
    """Insert `count` live resources of `kind` for a user, bypassing the quota gate."""
    from finplan.core.database import get_db_session, owned_resources

    def _seed(user_id: str, kind, count: int):
        if count == 0:
            return
        rows = [
            {
                "id": str(uuid4()),
                "user_id": user_id,
                "kind": kind.value,
                "name": f"{kind.value}-{i}",
                "created_at": now,
                "deleted_at": None,
            }
            for i in range(count)
        ]
        with get_db_session() as session:
            session.execute(insert(owned_resources), rows)

    return _seed


@pytest.fixture
def client(manager):
    from fastapi.testclient import TestClient

    from finplan.features.subscriptions.service import get_subscription_manager
    from finplan.main import app

    app.dependency_overrides[get_subscription_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()
