"""Global pytest fixtures."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest
from fastapi.testclient import TestClient

from abuse_defense.api.deps import get_ledger, get_rate_limiter, get_redis, get_request_validator
from abuse_defense.config import get_settings
from abuse_defense.main import app
from abuse_defense.workers.celery_app import celery_app

TEST_AUTH_SECRET = "test-auth-secret"
TEST_CRON_SECRET = "test-cron-secret"

# Fixed clock: Tuesday 2025-01-07 12:30 UTC.
NOW = datetime(2025, 1, 7, 12, 30, tzinfo=UTC)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def setup_celery():
    """Configure Celery to use memory broker for tests."""
    celery_app.conf.update(
        broker_url="memory://",
        result_backend="memory://",
        task_always_eager=True,  # Run tasks synchronously in tests
        task_eager_propagates=True,
    )
    yield


@pytest.fixture(autouse=True)
def test_secrets(monkeypatch):
    """Known auth and cron secrets for every test."""
    monkeypatch.setenv("AUTH_SECRET", TEST_AUTH_SECRET)
    monkeypatch.setenv("CRON_SECRET", TEST_CRON_SECRET)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db_session() -> MagicMock:
    """Mock database session."""
    session = MagicMock()
    session.execute = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.flush = AsyncMock(return_value=None)
    session.refresh = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def session_factory(db_session: MagicMock) -> MagicMock:
    """``async_sessionmaker`` stand-in: every call yields ``db_session``."""
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=db_session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


def result_of(*, scalar=None, scalars=None, rows=None) -> MagicMock:
    """Build a mock SQLAlchemy Result."""
    result = MagicMock()
    result.scalar_one_or_none.return_value = scalar
    result.scalar_one.return_value = scalar
    result.scalars.return_value.all.return_value = list(scalars or [])
    result.all.return_value = list(rows or [])
    return result


def make_token(sub: str = "user-1", plan: str = "FREE", role: str = "USER", **claims) -> str:
    payload = {"sub": sub, "plan": plan, "role": role, "email": f"{sub}@example.com", **claims}
    return jwt.encode(payload, TEST_AUTH_SECRET, algorithm="HS256")


def auth_header(**kwargs) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(**kwargs)}"}


@pytest.fixture
def ledger() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def validator() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def limiter() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def client(ledger: AsyncMock, validator: AsyncMock, limiter: AsyncMock) -> TestClient:
    """Synchronous TestClient with mocked services."""
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_request_validator] = lambda: validator
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_redis] = lambda: AsyncMock()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
