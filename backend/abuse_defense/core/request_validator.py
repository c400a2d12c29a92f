"""request_validator.py — One admission decision for a proposed user action.

Composes the three real-time checks:
    rate limit      → always
    keyword quality → when the request carries keywords
    scan patterns   → when the action is scan-related (policy.SCAN_ACTIONS)

Risk score (0–100) is a weighted sum of per-check signals in [0, 1]:

    signal             weight   value
    ─────────────────  ──────   ──────────────────────────────────────────
    rate limit           30     share of the hourly quota already used
                                (1.0 when exceeded, 0 when unlimited/degraded)
    keyword quality      40     1 - quality_score
    scan patterns        30     1.0 with any risk factor, otherwise half the
                                share of the plan's hourly scan ceiling used

Any hard block (a sub-check with ``allowed=False``) lifts the score to at
least ``CRITICAL_RISK_FLOOR``; without one the score is capped at
``MAX_ALLOWED_RISK``, so only a hard block reads above 70. Every signal
only grows as its input gets worse, so the composite is monotone.
Nothing is persisted.

Called by: api/routes/abuse.py
Depends on: rate_limit.py, keyword_quality.py, scan_patterns.py, policy.py
"""

from __future__ import annotations

import asyncio
import logging

from abuse_defense.core.keyword_quality import KeywordQualityAssessor
from abuse_defense.core.policy import (
    KEYWORD_DUPLICATION_SEVERITY,
    KEYWORD_UNIQUE_SHARE_FLOOR,
    SCAN_ACTIONS,
    Plan,
    ViolationType,
    policy_for,
)
from abuse_defense.core.rate_limit import RateLimiter
from abuse_defense.core.scan_patterns import ScanPatternAnalyzer
from abuse_defense.models.schemas import (
    CompositeValidationResult,
    KeywordQualityResult,
    RateLimitResult,
    ScanPatternResult,
    ValidationChecks,
    ValidationRequest,
    ViolationCreate,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_WEIGHT = 30
KEYWORD_QUALITY_WEIGHT = 40
SCAN_PATTERN_WEIGHT = 30
CRITICAL_RISK_FLOOR = 75
MAX_ALLOWED_RISK = 70


def rate_limit_signal(result: RateLimitResult) -> float:
    if not result.allowed:
        return 1.0
    if result.limit is None or result.limit <= 0 or result.degraded:
        return 0.0
    used = result.limit - result.remaining
    return min(max(used / result.limit, 0.0), 1.0)


def keyword_quality_signal(result: KeywordQualityResult | None) -> float:
    if result is None:
        return 0.0
    return min(max(1.0 - result.quality_score, 0.0), 1.0)


def scan_pattern_signal(result: ScanPatternResult | None, plan: Plan) -> float:
    if result is None:
        return 0.0
    if result.risk_factors:
        return 1.0
    ceiling = policy_for(plan).hourly_scan_ceiling
    if not ceiling:
        return 0.0
    return 0.5 * min(result.last_hour / ceiling, 1.0)


def composite_risk_score(
    checks: ValidationChecks,
    plan: Plan,
) -> int:
    """Weighted 0–100 risk for a set of sub-check results."""
    weighted = (
        RATE_LIMIT_WEIGHT * rate_limit_signal(checks.rate_limit)
        + KEYWORD_QUALITY_WEIGHT * keyword_quality_signal(checks.keyword_quality)
        + SCAN_PATTERN_WEIGHT * scan_pattern_signal(checks.scan_patterns, plan)
    )
    score = round(min(max(weighted, 0.0), 100.0))
    if _hard_blocked(checks):
        return max(score, CRITICAL_RISK_FLOOR)
    return min(score, MAX_ALLOWED_RISK)


def _hard_blocked(checks: ValidationChecks) -> bool:
    return any(
        result is not None and not result.allowed
        for result in (checks.rate_limit, checks.keyword_quality, checks.scan_patterns)
    )


def violations_for(result: CompositeValidationResult) -> list[ViolationCreate]:
    """Violations a caller should record for ``result``.

    One per hard block, plus keyword flooding when too few of the submitted
    keywords survive deduplication (recorded even if the batch was allowed).
    """
    checks = result.checks
    violations: list[ViolationCreate] = []

    if not checks.rate_limit.allowed:
        violations.append(
            ViolationCreate(
                type=ViolationType.EXCESSIVE_REQUESTS,
                description=f"Rate limit exceeded for {checks.rate_limit.action}",
                metadata={"action": checks.rate_limit.action, "limit": checks.rate_limit.limit},
            )
        )

    keywords = checks.keyword_quality
    if keywords is not None and not keywords.allowed:
        violations.append(
            ViolationCreate(
                type=ViolationType.SPAM_KEYWORDS,
                severity=round(min(max(1.0 - keywords.quality_score, 0.0), 1.0), 2),
                metadata={
                    "quality_score": round(keywords.quality_score, 3),
                    "flagged": [f.keyword for f in keywords.flagged_keywords],
                },
            )
        )

    if keywords is not None and keywords.unique_share < KEYWORD_UNIQUE_SHARE_FLOOR:
        violations.append(
            ViolationCreate(
                type=ViolationType.SPAM_KEYWORDS,
                severity=KEYWORD_DUPLICATION_SEVERITY,
                description="Excessive keyword duplication",
                metadata={
                    "submitted": keywords.submitted,
                    "unique": len(keywords.unique_keywords),
                },
            )
        )

    scans = checks.scan_patterns
    if scans is not None and not scans.allowed:
        violations.append(
            ViolationCreate(
                type=ViolationType.SUSPICIOUS_PATTERNS,
                description=scans.message,
                metadata={
                    "risk_factors": scans.risk_factors,
                    "last_hour": scans.last_hour,
                    "last_day": scans.last_day,
                },
            )
        )

    return violations


class RequestValidator:
    """Runs the applicable real-time checks and folds them into one decision."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        keyword_assessor: KeywordQualityAssessor,
        scan_analyzer: ScanPatternAnalyzer,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._keyword_assessor = keyword_assessor
        self._scan_analyzer = scan_analyzer

    async def validate_request(self, request: ValidationRequest) -> CompositeValidationResult:
        """Evaluate a proposed action.

        Args:
            request: The user, action, plan, and optional keywords.

        Returns:
            CompositeValidationResult with ``allowed`` false when any
            sub-check hard-blocks, the composite risk score, and every
            sub-result that ran.
        """
        plan = Plan(request.plan)

        async def _no_check() -> None:
            return None

        keyword_task = (
            self._keyword_assessor.check_keyword_quality(request.user_id, request.keywords)
            if request.keywords
            else _no_check()
        )
        scan_task = (
            self._scan_analyzer.check_scan_patterns(request.user_id, plan)
            if request.action in SCAN_ACTIONS
            else _no_check()
        )

        rate_limit, keyword_quality, scan_patterns = await asyncio.gather(
            self._rate_limiter.check_rate_limit(
                request.user_id, request.action, plan, state=request.abuse_state
            ),
            keyword_task,
            scan_task,
        )

        checks = ValidationChecks(
            rate_limit=rate_limit,
            keyword_quality=keyword_quality,
            scan_patterns=scan_patterns,
        )
        risk_score = composite_risk_score(checks, plan)
        allowed = not _hard_blocked(checks)

        if not allowed:
            logger.info(
                "request_rejected",
                extra={
                    "user_id": request.user_id,
                    "action": request.action,
                    "risk_score": risk_score,
                },
            )

        return CompositeValidationResult(
            allowed=allowed,
            risk_score=risk_score,
            checks=checks,
        )
