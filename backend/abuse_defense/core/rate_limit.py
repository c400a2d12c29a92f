"""rate_limit.py — Plan-aware Redis-backed rate limiting per (user, action).

Each (user, action) pair gets one counter per fixed hourly window:
    rate:{action}:{user_id}:{YYYY-MM-DDTHH}

The plan selects the quota and the user's abuse state scales it
(policy.RATE_LIMIT_MULTIPLIERS: WARNING x0.7, HIGH_RISK x0.3). Neither
touches the key, so an upgrade or a state change mid-window keeps the
count already spent. Counters are atomic via INCR and auto-expire after
one window.

Policy outcomes (limit exceeded) are returned as ``allowed=False``
results, never raised. If Redis is unreachable the limiter fails open.

Called by: request_validator.py, api/routes/abuse.py
Depends on: Redis, policy.py, protocols.py (AuditSink)
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from abuse_defense.core.policy import (
    RATE_WINDOW_SECONDS,
    UNLIMITED_REMAINING,
    AbuseState,
    Plan,
    policy_for,
    quota_for_state,
)
from abuse_defense.core.protocols import AuditSink
from abuse_defense.models.schemas import ActionUsage, RateLimitResult, RateLimitUsage

logger = logging.getLogger(__name__)

_WINDOW_FORMAT = "%Y-%m-%dT%H"


def _window_start(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def _counter_key(action: str, user_id: str, now: datetime) -> str:
    return f"rate:{action}:{user_id}:{now.strftime(_WINDOW_FORMAT)}"


class RateLimiter:
    """Fixed-window request counter keyed by (user, action), quota by plan."""

    def __init__(self, redis: aioredis.Redis, audit: AuditSink) -> None:
        self._redis = redis
        self._audit = audit

    async def check_rate_limit(
        self,
        user_id: str,
        action: str,
        plan: Plan,
        *,
        state: AbuseState = AbuseState.CLEAN,
        now: datetime | None = None,
    ) -> RateLimitResult:
        """Check the user's quota for ``action`` and consume one unit if allowed.

        Args:
            user_id: The user's ID.
            action: Free-form action key (e.g. ``keyword_search``).
            plan: The user's subscription plan.
            state: The user's abuse state; anything above CLEAN shrinks the quota.
            now: Clock override for tests.

        Returns:
            RateLimitResult. ``remaining`` is the quota left before this
            request was counted.
        """
        plan = Plan(plan)
        state = AbuseState(state)
        quota = policy_for(plan).quota_for(action)
        if quota is not None:
            quota = quota_for_state(quota, state)

        # Unlimited plans bypass Redis entirely
        if quota is None:
            return RateLimitResult(
                allowed=True,
                remaining=UNLIMITED_REMAINING,
                limit=None,
                reset_at=None,
                action=action,
            )

        now = now or datetime.now(UTC)
        key = _counter_key(action, user_id, now)
        reset_at = _window_start(now) + timedelta(seconds=RATE_WINDOW_SECONDS)

        try:
            raw = await self._redis.get(key)
            count = int(raw or 0)

            if count >= quota:
                if state is AbuseState.CLEAN:
                    advice = "or upgrade your plan for higher limits."
                else:
                    advice = "(limits are reduced while your account is flagged for review)."
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    limit=quota,
                    reset_at=reset_at,
                    action=action,
                    message=(
                        f"Rate limit exceeded for {action}: {quota} per hour on the "
                        f"{plan.value} plan. Try again after {reset_at:%H:%M} UTC "
                        f"{advice}"
                    ),
                )

            # Atomic increment; concurrent requests each get a distinct count
            current = await self._redis.incr(key)

            # Set TTL only on the first request of the window
            if current == 1:
                await self._redis.expire(key, RATE_WINDOW_SECONDS)
        except RedisError as exc:
            logger.warning(
                "rate_limit_backend_unavailable; allowing request",
                extra={
                    "action": action,
                    "plan": plan.value,
                    "user_id": user_id,
                    "error": str(exc),
                },
            )
            # Fail-open: the guarded feature stays available during a Redis outage.
            return RateLimitResult(
                allowed=True,
                remaining=quota,
                limit=quota,
                reset_at=None,
                action=action,
                degraded=True,
            )

        await self._audit.record(
            user_id,
            action,
            {"plan": plan.value, "count": count + 1, "limit": quota},
        )

        return RateLimitResult(
            allowed=True,
            remaining=quota - count,
            limit=quota,
            reset_at=reset_at,
            action=action,
        )

    async def get_usage(
        self,
        user_id: str,
        plan: Plan,
        *,
        state: AbuseState = AbuseState.CLEAN,
        now: datetime | None = None,
    ) -> RateLimitUsage:
        """Read-only snapshot of every named quota for ``plan`` in the current window.

        Limits are scaled by ``state`` the same way ``check_rate_limit`` scales them.
        """
        plan = Plan(plan)
        state = AbuseState(state)
        policy = policy_for(plan)
        if policy.unlimited:
            return RateLimitUsage(plan=plan)

        now = now or datetime.now(UTC)
        actions = list(policy.action_quotas)
        keys = [_counter_key(action, user_id, now) for action in actions]

        try:
            raw_counts = await self._redis.mget(keys)
        except RedisError as exc:
            logger.warning(
                "rate_limit_usage_unavailable",
                extra={"user_id": user_id, "error": str(exc)},
            )
            raw_counts = [None] * len(keys)
            degraded = True
        else:
            degraded = False

        usage: dict[str, ActionUsage] = {}
        for action, raw in zip(actions, raw_counts, strict=True):
            limit = quota_for_state(policy.action_quotas[action], state)
            used = int(raw or 0)
            usage[action] = ActionUsage(used=used, limit=limit, remaining=max(0, limit - used))

        return RateLimitUsage(
            plan=plan,
            reset_at=_window_start(now) + timedelta(seconds=RATE_WINDOW_SECONDS),
            actions=usage,
            degraded=degraded,
        )
