"""policy.py — Plan quotas, abuse states, and the score boundary function.

Every tunable number the abuse engine uses lives here so the rate
limiter, scan analyzer, validator, and ledger all read the same table.

Plans map to a frozen ``PlanPolicy``; a tier missing from
``PLAN_POLICIES`` fails at lookup instead of silently falling back to
another tier's limits.

Called by: rate_limit.py, scan_patterns.py, request_validator.py, abuse_ledger.py
Depends on: nothing (pure data + functions)
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType


class Plan(StrEnum):
    FREE = "FREE"
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"
    SUPER_USER = "SUPER_USER"


class AbuseState(StrEnum):
    """Reputation tiers, declared from least to most severe."""

    CLEAN = "CLEAN"
    WARNING = "WARNING"
    HIGH_RISK = "HIGH_RISK"
    BLOCKED = "BLOCKED"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)


_STATE_ORDER: tuple[AbuseState, ...] = tuple(AbuseState)


class ViolationType(StrEnum):
    SPAM_KEYWORDS = "SPAM_KEYWORDS"
    EXCESSIVE_REQUESTS = "EXCESSIVE_REQUESTS"
    SUSPICIOUS_PATTERNS = "SUSPICIOUS_PATTERNS"
    MULTIPLE_ACCOUNTS = "MULTIPLE_ACCOUNTS"
    COMPETITOR_MONITORING = "COMPETITOR_MONITORING"
    FAKE_OWNERSHIP = "FAKE_OWNERSHIP"
    API_ABUSE = "API_ABUSE"
    SCRAPING = "SCRAPING"


# Severity used when a caller records a violation without its own severity.
BASE_SEVERITY: Mapping[ViolationType, float] = MappingProxyType({
    ViolationType.SPAM_KEYWORDS: 0.15,
    ViolationType.EXCESSIVE_REQUESTS: 0.1,
    ViolationType.SUSPICIOUS_PATTERNS: 0.2,
    ViolationType.MULTIPLE_ACCOUNTS: 0.4,
    ViolationType.COMPETITOR_MONITORING: 0.3,
    ViolationType.FAKE_OWNERSHIP: 0.5,
    ViolationType.API_ABUSE: 0.35,
    ViolationType.SCRAPING: 0.4,
})

VIOLATION_DESCRIPTIONS: Mapping[ViolationType, str] = MappingProxyType({
    ViolationType.SPAM_KEYWORDS: "Spam keyword creation",
    ViolationType.EXCESSIVE_REQUESTS: "Excessive requests",
    ViolationType.SUSPICIOUS_PATTERNS: "Suspicious usage patterns",
    ViolationType.MULTIPLE_ACCOUNTS: "Multiple accounts detected",
    ViolationType.COMPETITOR_MONITORING: "Competitor monitoring",
    ViolationType.FAKE_OWNERSHIP: "Fake ownership validation attempt",
    ViolationType.API_ABUSE: "API abuse",
    ViolationType.SCRAPING: "Scraping attempt",
})


# ─── Global Constants ─────────────────────────────────────────────────────────

RATE_WINDOW_SECONDS = 3600
# Reported as ``remaining`` for unlimited plans so clients can keep treating it as a number.
UNLIMITED_REMAINING = 999_999

# Keyword batches with a mean quality below this are rejected.
KEYWORD_QUALITY_FLOOR = 0.3
# Normalized keyword length bounds (inclusive).
KEYWORD_MIN_LENGTH = 3
KEYWORD_MAX_LENGTH = 50
# A batch whose unique share falls below this is recorded as keyword flooding.
KEYWORD_UNIQUE_SHARE_FLOOR = 0.3
KEYWORD_DUPLICATION_SEVERITY = 0.2
# Spam score assigned to a keyword the classifier could not score in time.
NEUTRAL_SPAM_SCORE = 0.5

# Share of a day's scans landing in the last hour that counts as a burst.
BURST_SHARE_THRESHOLD = 0.8

SCAN_ACTIONS: frozenset[str] = frozenset({
    "start_scan",
    "scan_request",
    "monitoring_session_create",
})

# Score written by a manual admin block.
MANUAL_BLOCK_SCORE = 999

# Violation history analysis run by the periodic sweep.
PATTERN_HISTORY_LIMIT = 50
PATTERN_MIN_HISTORY = 3
PATTERN_BURST_WINDOW_SECONDS = 3600
PATTERN_BURST_COUNT = 5
PATTERN_BURST_SEVERITY = 0.3
PATTERN_REPEAT_COUNT = 10
PATTERN_REPEAT_SEVERITY = 0.25
PATTERN_TREND_SAMPLE = 10
PATTERN_TREND_THRESHOLD = 0.5
PATTERN_TREND_SEVERITY = 0.35


# ─── Plan Policies ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PlanPolicy:
    """Quotas and scan thresholds for one subscription plan.

    ``None`` quotas and ceilings mean unlimited.
    """

    plan: Plan
    default_quota: int | None
    action_quotas: Mapping[str, int] = field(default_factory=dict)
    hourly_scan_ceiling: int | None = None
    burst_min_scans: int = 0
    monitoring_sessions: int | None = None

    @property
    def unlimited(self) -> bool:
        return self.default_quota is None

    def quota_for(self, action: str) -> int | None:
        """Hourly quota for ``action``; unknown actions use the default quota."""
        if self.unlimited:
            return None
        return self.action_quotas.get(action, self.default_quota)


def _quotas(
    keyword_search: int,
    start_scan: int,
    keyword_generation: int,
    monitoring_session_create: int,
    takedown_request: int,
) -> Mapping[str, int]:
    return MappingProxyType({
        "keyword_search": keyword_search,
        "start_scan": start_scan,
        "scan_request": start_scan,
        "keyword_generation": keyword_generation,
        "monitoring_session_create": monitoring_session_create,
        "takedown_request": takedown_request,
    })


PLAN_POLICIES: Mapping[Plan, PlanPolicy] = MappingProxyType({
    Plan.FREE: PlanPolicy(
        plan=Plan.FREE,
        default_quota=100,
        action_quotas=_quotas(10, 10, 50, 1, 10),
        hourly_scan_ceiling=20,
        burst_min_scans=10,
        monitoring_sessions=1,
    ),
    Plan.BASIC: PlanPolicy(
        plan=Plan.BASIC,
        default_quota=500,
        action_quotas=_quotas(30, 30, 200, 3, 50),
        hourly_scan_ceiling=40,
        burst_min_scans=20,
        monitoring_sessions=3,
    ),
    Plan.PREMIUM: PlanPolicy(
        plan=Plan.PREMIUM,
        default_quota=2000,
        action_quotas=_quotas(100, 100, 1000, 10, 200),
        hourly_scan_ceiling=100,
        burst_min_scans=50,
        monitoring_sessions=10,
    ),
    Plan.ENTERPRISE: PlanPolicy(
        plan=Plan.ENTERPRISE,
        default_quota=10000,
        action_quotas=_quotas(500, 500, 5000, 50, 1000),
        hourly_scan_ceiling=300,
        burst_min_scans=150,
        monitoring_sessions=50,
    ),
    Plan.SUPER_USER: PlanPolicy(
        plan=Plan.SUPER_USER,
        default_quota=None,
    ),
})


def policy_for(plan: Plan | str) -> PlanPolicy:
    """Return the policy for ``plan``.

    Raises:
        ValueError: If ``plan`` is not a known tier.
    """
    return PLAN_POLICIES[Plan(plan)]


# Share of the plan quota a user keeps at each reputation tier.
RATE_LIMIT_MULTIPLIERS: Mapping[AbuseState, float] = MappingProxyType({
    AbuseState.CLEAN: 1.0,
    AbuseState.WARNING: 0.7,
    AbuseState.HIGH_RISK: 0.3,
    AbuseState.BLOCKED: 0.0,
})


def quota_for_state(quota: int, state: AbuseState | str) -> int:
    """Scale a plan quota by the user's abuse state.

    Rounds down but never below 1 for a state that keeps any allowance;
    BLOCKED always yields 0.
    """
    multiplier = RATE_LIMIT_MULTIPLIERS[AbuseState(state)]
    if multiplier <= 0:
        return 0
    # round() first so 10 * 0.7 lands on 7, not 6.999...
    return max(1, math.floor(round(quota * multiplier, 6)))


# ─── Score → State ────────────────────────────────────────────────────────────

# Lower bound (inclusive) of each state, most severe first.
STATE_BOUNDARIES: tuple[tuple[int, AbuseState], ...] = (
    (200, AbuseState.BLOCKED),
    (100, AbuseState.HIGH_RISK),
    (50, AbuseState.WARNING),
)


def state_for_score(score: float) -> AbuseState:
    """Map an abuse score to its state: [0,50) CLEAN, [50,100) WARNING,
    [100,200) HIGH_RISK, [200,∞) BLOCKED."""
    for lower_bound, state in STATE_BOUNDARIES:
        if score >= lower_bound:
            return state
    return AbuseState.CLEAN


def decayed_state(previous: AbuseState, halved_score: float) -> AbuseState:
    """State after a decay step.

    Decay always lowers the state by at least one tier: the result is the
    less severe of the boundary state for the halved score and the tier
    just below ``previous``.
    """
    one_below = _STATE_ORDER[max(previous.rank - 1, 0)]
    by_score = state_for_score(halved_score)
    return by_score if by_score.rank <= one_below.rank else one_below


def score_delta(severity: float) -> int:
    """Score points contributed by a violation of ``severity`` in [0, 1].

    Rounds half up, so 0.125 contributes 13 points.
    """
    return math.floor(severity * 100 + 0.5)
