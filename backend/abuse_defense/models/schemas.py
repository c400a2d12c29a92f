"""Pydantic v2 schemas for engine results and API request/response bodies."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from abuse_defense.core.policy import (
    BASE_SEVERITY,
    VIOLATION_DESCRIPTIONS,
    AbuseState,
    Plan,
    ViolationType,
)

# ─── Health ────────────────────────────────────────────────────────────────────


class HealthResponse(BaseModel):
    status: str = "healthy"
    database: str = "connected"
    redis: str = "connected"
    mode: str = "sandbox"
    classifier: str = "heuristic"
    version: str = "0.1.0"


# ─── Rate Limiting ─────────────────────────────────────────────────────────────


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    limit: int | None = None  # None = unlimited plan
    reset_at: datetime | None = None
    action: str
    message: str | None = None
    # True when the counter store was unreachable and the request was let through.
    degraded: bool = False


class ActionUsage(BaseModel):
    used: int
    limit: int | None
    remaining: int


class RateLimitUsage(BaseModel):
    plan: Plan
    reset_at: datetime | None = None
    actions: dict[str, ActionUsage] = Field(default_factory=dict)
    degraded: bool = False


# ─── Keyword Quality ───────────────────────────────────────────────────────────


class FlaggedKeyword(BaseModel):
    keyword: str
    spam_score: float
    reasons: list[str] = Field(default_factory=list)


class KeywordQualityResult(BaseModel):
    allowed: bool
    quality_score: float
    flagged_keywords: list[FlaggedKeyword] = Field(default_factory=list)
    # Keywords scored neutral because the classifier timed out or failed.
    unscored: int = 0
    submitted: int = 0
    # Normalized keywords that passed the length check, deduplicated.
    unique_keywords: list[str] = Field(default_factory=list)
    rejected_keywords: list[str] = Field(default_factory=list)
    # len(unique_keywords) / submitted; 1.0 for an empty batch.
    unique_share: float = 1.0
    message: str | None = None


# ─── Scan Patterns ─────────────────────────────────────────────────────────────


class ScanPatternResult(BaseModel):
    allowed: bool
    risk_factors: list[str] = Field(default_factory=list)
    last_hour: int = 0
    last_day: int = 0
    active_sessions: int = 0
    message: str | None = None
    degraded: bool = False


# ─── Composite Validation ──────────────────────────────────────────────────────


class ValidationRequest(BaseModel):
    user_id: str
    action: str = Field(..., min_length=1, max_length=100)
    plan: Plan = Plan.FREE
    # Current reputation; tightens the rate quota below CLEAN.
    abuse_state: AbuseState = AbuseState.CLEAN
    keywords: list[str] | None = None


class ValidationChecks(BaseModel):
    rate_limit: RateLimitResult
    keyword_quality: KeywordQualityResult | None = None
    scan_patterns: ScanPatternResult | None = None


class CompositeValidationResult(BaseModel):
    allowed: bool
    risk_score: int = Field(..., ge=0, le=100)
    checks: ValidationChecks


# ─── Abuse Ledger ──────────────────────────────────────────────────────────────


class ViolationCreate(BaseModel):
    type: ViolationType
    # Omitted → the violation type's base severity.
    severity: float | None = Field(default=None, ge=0.0, le=1.0)
    description: str | None = Field(default=None, max_length=2000)
    metadata: dict[str, Any] | None = None

    @property
    def resolved_severity(self) -> float:
        if self.severity is not None:
            return self.severity
        return BASE_SEVERITY[self.type]

    @property
    def resolved_description(self) -> str:
        return self.description or VIOLATION_DESCRIPTIONS[self.type]


class ScoreChange(BaseModel):
    user_id: str
    previous_score: int
    score: int
    previous_state: AbuseState
    state: AbuseState
    suspended: bool = False


class AbuseCheck(BaseModel):
    state: AbuseState
    score: int
    can_proceed: bool
    message: str | None = None


class ViolationRead(BaseModel):
    type: str
    severity: float
    description: str | None = None
    occurred_at: datetime
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="details")

    model_config = {"from_attributes": True, "populate_by_name": True}


class AbuseReport(BaseModel):
    user_id: str
    current_score: int
    state: AbuseState
    last_violation: datetime | None = None
    violation_history: list[ViolationRead] = Field(default_factory=list)
    total_violations: int = 0
    violations_by_type: dict[str, int] = Field(default_factory=dict)


class AbuseScoreSummary(BaseModel):
    user_id: str
    current_score: int
    state: AbuseState
    last_violation: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class FlaggedUser(BaseModel):
    user_id: str
    state: AbuseState
    score: int


class MonitorSummary(BaseModel):
    processed: int = 0
    decayed: int = 0
    failed: int = 0
    # SUSPICIOUS_PATTERNS violations recorded from violation history.
    patterns_recorded: int = 0
    flagged: list[FlaggedUser] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime | None = None


class AbuseStats(BaseModel):
    # Users without a score row count as clean.
    total_users: int = 0
    clean_users: int = 0
    warning_users: int = 0
    high_risk_users: int = 0
    blocked_users: int = 0
    recent_violations: int = 0
    average_score: float = 0.0


# ─── API Bodies ────────────────────────────────────────────────────────────────


class ValidateRequestBody(BaseModel):
    action: str = Field(..., min_length=1, max_length=100)
    keywords: list[str] | None = Field(default=None, max_length=500)


class BlockUserBody(BaseModel):
    reason: str = Field(default="Manual block by admin", max_length=500)


class ErrorDetail(BaseModel):
    code: str
    message: str
