# mymcp/conftest.py
import os

# Settings are read at import time, so the test database must be chosen first
os.environ["ENV"] = "test"
os.environ["TEST_DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("ALLOW_HEADER_AUTH", "true")
os.environ.setdefault("ORCHESTRATOR_MODE", "mock")

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402

from mymcp.core.database import init_engine, create_all_tables  # noqa: E402
from mymcp.core.metrics import METRICS  # noqa: E402
from mymcp.features.audit.service import clear_buffered_audit_events  # noqa: E402
from mymcp.features.plans.service import seed_plans  # noqa: E402
from mymcp.features.servers.orchestrator import MockContainerOrchestrator, set_orchestrator  # noqa: E402


FIXED_NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function", autouse=True)
def fresh_db():
    """
    Point the engine at a brand-new in-memory SQLite database per test,
    with tables created and the plan catalog seeded.
    """
    init_engine(os.environ["TEST_DATABASE_URL"])
    create_all_tables()
    seed_plans(now=datetime(2025, 1, 1, tzinfo=timezone.utc))
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_process_state():
    """Metrics, audit buffer and the process-wide orchestrator are global."""
    METRICS.reset()
    clear_buffered_audit_events()
    set_orchestrator(None)
    yield
    set_orchestrator(None)


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def orchestrator():
    return MockContainerOrchestrator()


@pytest.fixture
def free_user(now):
    """A registered user on the default Free monthly plan."""
    from mymcp.features.users.service import get_or_create_user

    return get_or_create_user("user_free", email="free@example.com", now=now)
