"""
Shared test fixtures for the entitlement reconciler test suite.
"""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import structlog
from fastapi.testclient import TestClient

from reconciler.services.record_store import InMemoryRecordStore
from reconciler.services.reconciliation import ReconciliationService

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime = NOW):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests off real backends regardless of the developer's shell."""
    for name in ("SUPABASE_URL", "SUPABASE_SECRET_KEY", "STRIPE__SECRET_KEY", "APP_STORE__VERIFY_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DEBUG", "false")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def service(store: InMemoryRecordStore, clock: MutableClock) -> ReconciliationService:
    return ReconciliationService(store, now_provider=clock.now)


@pytest.fixture
def make_identity(store: InMemoryRecordStore):
    """Seed a raw identity row and return it (as stored)."""

    def _make(email: str = "smoker@example.com", **fields: Any) -> dict[str, Any]:
        row = {
            "id": fields.pop("id", None) or f"user-{uuid.uuid4().hex[:8]}",
            "email": email,
            "role": "user",
            "entitlement_tier": "free",
            "entitlement_level": "free",
            "entitlement_status": "inactive",
            "created_at": (NOW - timedelta(days=365)).isoformat(),
            "updated_at": (NOW - timedelta(days=30)).isoformat(),
        }
        row.update(fields)
        store.seed(store.identities_table, row)
        return row

    return _make


@pytest.fixture
def make_subscription(store: InMemoryRecordStore):
    """Seed a raw subscription row and return it."""

    def _make(user_id: str | None, **fields: Any) -> dict[str, Any]:
        row = {
            "id": f"sub-{uuid.uuid4().hex[:8]}",
            "user_id": user_id,
            "provider": "stripe",
            "provider_subscription_id": f"sub_{uuid.uuid4().hex[:10]}",
            "status": "active",
            "tier": "premium",
            "billing_interval": "month",
            "current_period_start": (NOW - timedelta(days=10)).isoformat(),
            "current_period_end": (NOW + timedelta(days=20)).isoformat(),
        }
        row.update(fields)
        store.seed(store.subscriptions_table, row)
        return row

    return _make


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from reconciler.config import get_settings

    get_settings.cache_clear()

    from reconciler.main import app

    return TestClient(app)
