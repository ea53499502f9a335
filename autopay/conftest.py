# autopay/conftest.py
import pytest

from autopay.core.database import create_all_tables, drop_all_tables, init_engine
from autopay.tests.mocks import StubLedger

TEST_DB_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function", autouse=True)
def sqlite_db():
    """
    Fresh in-memory database per test.

    A new engine means a new connection, so nothing leaks between tests.
    """
    engine = init_engine(TEST_DB_URL)
    create_all_tables()
    yield engine
    drop_all_tables()
    engine.dispose()


@pytest.fixture
def stub_ledger():
    return StubLedger()


@pytest.fixture
def client(stub_ledger, monkeypatch):
    """TestClient whose plan-tier routes run against the stub ledger."""
    from fastapi.testclient import TestClient
    from autopay.api import plan_tier
    from autopay.features.payments.plan_state import PlanStateCache
    from autopay.main import app

    cache = PlanStateCache(stub_ledger)
    monkeypatch.setattr(plan_tier, "get_plan_state", lambda: cache)
    return TestClient(app)
