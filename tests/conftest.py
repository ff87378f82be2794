"""
Pytest fixtures for the billing test suite.

Provides:
- An in-memory SQLite database per test, with every billing table created
- Deterministic clock, actor and company ids
- Factories for clients, projects and tasks
- Captured structured logs

Environment Variables:
- DATABASE_URL: run the database tests against another URL (for example
  PostgreSQL).  Defaults to an in-memory SQLite database.
"""

import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest

from billing_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from billing_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_kernel.services.retry_service import RetryPolicy
from billing_modules.projects.service import ProjectService

# Test actor ID for all test operations
TEST_ACTOR_ID = UUID("00000000-0000-4000-a000-000000000001")
TEST_COMPANY_ID = UUID("00000000-0000-4000-a000-000000000002")

DEFAULT_TEST_URL = "sqlite://"


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_TEST_URL)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, composer):
            composer.create_invoice(...)
            logs = captured_logs()
            assert any(r["message"] == "invoice_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    """Fresh schema per test; the engine is disposed afterwards."""
    eng = init_engine_from_url(get_database_url())
    create_tables()
    register_immutability_listeners()
    yield eng
    unregister_immutability_listeners()
    drop_tables()
    reset_engine()


@pytest.fixture
def session(engine):
    s = get_session()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2024, 3, 15, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def actor_id() -> UUID:
    return TEST_ACTOR_ID


@pytest.fixture
def company_id() -> UUID:
    return TEST_COMPANY_ID


@pytest.fixture
def no_wait_retry() -> RetryPolicy:
    """Retry policy that never sleeps."""
    return RetryPolicy(max_retries=2, base_delay=0, max_delay=0, sleep=lambda _: None)


# =============================================================================
# Entity factories
# =============================================================================


@pytest.fixture
def projects(session):
    return ProjectService(session)


@pytest.fixture
def client(projects, company_id, actor_id):
    return projects.create_client(company_id, "Acme Architects", actor_id, email="ap@acme.test")


@pytest.fixture
def project(projects, company_id, client, actor_id):
    return projects.create_project(company_id, client.id, "Harbor Office Fit-out", actor_id)


@pytest.fixture
def make_task(projects, project, actor_id):
    """Factory for tasks on the default project."""

    def _make(
        total_budget: Decimal | str = "10000",
        name: str | None = None,
        **kwargs,
    ):
        return projects.create_task(
            project.id,
            name or f"Task {uuid4().hex[:6]}",
            actor_id,
            total_budget=Decimal(str(total_budget)),
            **kwargs,
        )

    return _make
