"""Dependency injection for API routes.

Provides FastAPI dependencies for configuration, database sessions,
Redis connections, JWT-based authentication, and the abuse-defense
services wired to them.

Called by: All route modules via type aliases (CurrentUser, LedgerDep, etc.)
Depends on: config.py, models/database.py, core/*
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from typing import Annotated

import jwt
import redis.asyncio as aioredis
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from abuse_defense.config import Settings, get_settings
from abuse_defense.core.abuse_ledger import AbuseScoreLedger, build_ledger
from abuse_defense.core.keyword_quality import KeywordQualityAssessor
from abuse_defense.core.policy import Plan
from abuse_defense.core.rate_limit import RateLimiter
from abuse_defense.core.registry import get_provider_registry
from abuse_defense.core.request_validator import RequestValidator
from abuse_defense.core.scan_patterns import ScanPatternAnalyzer
from abuse_defense.core.stores import SqlAuditSink, SqlScanActivitySource
from abuse_defense.models.database import async_session_factory, get_async_session

logger = logging.getLogger(__name__)

# ─── Settings ──────────────────────────────────────────────────────────────────


def get_config() -> Settings:
    """Return the application config."""
    return get_settings()


ConfigDep = Annotated[Settings, Depends(get_config)]

# ─── Database ──────────────────────────────────────────────────────────────────


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async for session in get_async_session():
        yield session


DBSession = Annotated[AsyncSession, Depends(get_db)]

# ─── Redis ─────────────────────────────────────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


async def get_redis(config: ConfigDep) -> aioredis.Redis:
    """Return a Redis connection from pool."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(config.redis_url, decode_responses=True)
    return _redis_pool


RedisDep = Annotated[aioredis.Redis, Depends(get_redis)]

# ─── Auth ──────────────────────────────────────────────────────────────────────


async def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate the web app's HS256 JWT and return the caller's context.

    Returns:
        Dict with ``id`` (token ``sub``), ``email``, ``plan`` (Plan) and ``role``.

    Raises:
        HTTPException: 401 if the token is missing or invalid, 503 if no
            AUTH_SECRET is configured.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Missing or invalid authorization header"},
        )

    token = authorization.split(" ", 1)[1]
    settings = get_settings()

    if not settings.auth_secret:
        logger.error("AUTH_SECRET not set — rejecting auth tokens")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Credentials cannot be verified right now."},
        )

    try:
        payload = jwt.decode(token, settings.auth_secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "TOKEN_EXPIRED", "message": "Authentication token has expired"},
        ) from None
    except jwt.InvalidTokenError as exc:
        logger.warning("JWT validation failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_TOKEN", "message": "Invalid authentication token"},
        ) from exc

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_TOKEN", "message": "Token missing user identity"},
        )

    # Unknown plan claims fall back to the most restrictive tier.
    try:
        plan = Plan(str(payload.get("plan") or Plan.FREE).upper())
    except ValueError:
        logger.warning("Unknown plan claim %r for user %s; using FREE", payload.get("plan"), sub)
        plan = Plan.FREE

    return {
        "id": str(sub),
        "email": payload.get("email"),
        "plan": plan,
        "role": payload.get("role") or "USER",
    }


CurrentUser = Annotated[dict, Depends(get_current_user)]


def is_admin(user: dict) -> bool:
    return user.get("role") == "ADMIN" or user.get("plan") == Plan.SUPER_USER


async def require_admin(user: CurrentUser) -> dict:
    """Raise 403 unless the caller is an admin."""
    if not is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": "Admin access required"},
        )
    return user


AdminUser = Annotated[dict, Depends(require_admin)]


async def verify_cron_secret(
    config: ConfigDep,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Accept only ``Authorization: Bearer <CRON_SECRET>``."""
    if not config.cron_secret:
        logger.error("CRON_SECRET not set — rejecting cron trigger")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "CRON_DISABLED", "message": "Cron trigger is not configured"},
        )
    expected = f"Bearer {config.cron_secret}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Invalid cron secret"},
        )


CronAuth = Depends(verify_cron_secret)

# ─── Services ──────────────────────────────────────────────────────────────────


def get_ledger(config: ConfigDep) -> AbuseScoreLedger:
    return build_ledger(config, async_session_factory)


def get_rate_limiter(redis: RedisDep) -> RateLimiter:
    return RateLimiter(redis, SqlAuditSink(async_session_factory))


def get_request_validator(
    config: ConfigDep,
    rate_limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
) -> RequestValidator:
    classifier = get_provider_registry().get_classifier()
    return RequestValidator(
        rate_limiter=rate_limiter,
        keyword_assessor=KeywordQualityAssessor(
            classifier, timeout_seconds=config.classifier_timeout_seconds
        ),
        scan_analyzer=ScanPatternAnalyzer(SqlScanActivitySource(async_session_factory)),
    )


LedgerDep = Annotated[AbuseScoreLedger, Depends(get_ledger)]
RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]
ValidatorDep = Annotated[RequestValidator, Depends(get_request_validator)]
