"""Tests for the health check endpoint."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from abuse_defense.api.deps import get_db, get_redis
from abuse_defense.main import app


@pytest.fixture
def redis() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
async def client(db_session, redis):
    """Async test client with database and Redis overridden."""

    async def _db():
        yield db_session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_redis] = lambda: redis
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.mark.anyio
async def test_health_returns_200(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] == "connected"
    assert data["redis"] == "connected"
    assert data["mode"] == "sandbox"
    assert data["classifier"] == "heuristic"
    assert response.headers["X-Abuse-Defense-Env"] == "sandbox"
    assert "X-Request-ID" in response.headers


@pytest.mark.anyio
async def test_redis_down_is_degraded(client: AsyncClient, redis):
    """Rate limiting fails open without Redis, so health degrades instead of erroring."""
    redis.ping.side_effect = RedisConnectionError("refused")

    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"
    assert response.json()["redis"] == "disconnected"


@pytest.mark.anyio
async def test_database_down_is_degraded(client: AsyncClient, db_session):
    db_session.execute.side_effect = OSError("connection refused")

    response = await client.get("/health")

    assert response.json()["database"] == "disconnected"
    assert response.json()["status"] == "degraded"


@pytest.mark.anyio
async def test_request_id_is_echoed(client: AsyncClient):
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
