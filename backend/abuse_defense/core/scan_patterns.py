"""scan_patterns.py — Short-window vs. long-window scan anomaly detection.

Detection patterns (thresholds scale with the plan, see policy.py):
    1. Excessive scanning — last-hour scans above the plan's hourly ceiling
    2. Burst activity     — at least ``burst_min_scans`` in the last hour AND
                            the last hour holds >= 80% of the last 24 hours

Either pattern makes the result ``allowed=False``. A failing activity
source fails open with ``degraded=True``.

Called by: request_validator.py
Depends on: protocols.py (ScanActivitySource), policy.py
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError

from abuse_defense.core.policy import BURST_SHARE_THRESHOLD, Plan, policy_for
from abuse_defense.core.protocols import ScanActivitySample, ScanActivitySource
from abuse_defense.models.schemas import ScanPatternResult

logger = logging.getLogger(__name__)

EXCESSIVE_SCANNING = "excessive_scanning"
BURST_ACTIVITY = "burst_activity"


class ScanPatternAnalyzer:
    """Flags anomalous automated scanning independent of the rate limiter."""

    def __init__(self, source: ScanActivitySource) -> None:
        self._source = source

    @staticmethod
    def analyze(sample: ScanActivitySample, plan: Plan) -> ScanPatternResult:
        """Evaluate one activity sample against the plan's thresholds."""
        policy = policy_for(plan)
        risk_factors: list[str] = []

        ceiling = policy.hourly_scan_ceiling
        if ceiling is not None and sample.last_hour > ceiling:
            risk_factors.append(EXCESSIVE_SCANNING)

        if (
            ceiling is not None
            and sample.last_day > 0
            and sample.last_hour >= policy.burst_min_scans
            and sample.last_hour / sample.last_day >= BURST_SHARE_THRESHOLD
        ):
            risk_factors.append(BURST_ACTIVITY)

        message = None
        if risk_factors:
            message = (
                "Suspicious scanning pattern detected "
                f"({', '.join(risk_factors)}). Please reduce scan frequency."
            )

        return ScanPatternResult(
            allowed=not risk_factors,
            risk_factors=risk_factors,
            last_hour=sample.last_hour,
            last_day=sample.last_day,
            active_sessions=sample.active_sessions,
            message=message,
        )

    async def check_scan_patterns(
        self,
        user_id: str,
        plan: Plan,
        *,
        now: datetime | None = None,
    ) -> ScanPatternResult:
        """Sample the user's recent scans and analyze them."""
        now = now or datetime.now(UTC)
        try:
            sample = await self._source.sample(user_id, now)
        except (SQLAlchemyError, OSError) as exc:
            logger.warning(
                "scan_activity_unavailable; allowing request",
                extra={"user_id": user_id, "error": str(exc)},
            )
            return ScanPatternResult(allowed=True, degraded=True)

        result = self.analyze(sample, Plan(plan))
        if not result.allowed:
            logger.info(
                "scan_pattern_flagged",
                extra={
                    "user_id": user_id,
                    "plan": Plan(plan).value,
                    "risk_factors": result.risk_factors,
                    "last_hour": sample.last_hour,
                    "last_day": sample.last_day,
                },
            )
        return result
