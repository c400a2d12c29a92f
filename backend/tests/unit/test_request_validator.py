"""Unit tests for the composite request validator and its risk score."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from abuse_defense.core.policy import AbuseState, Plan, ViolationType
from abuse_defense.core.request_validator import (
    CRITICAL_RISK_FLOOR,
    MAX_ALLOWED_RISK,
    RequestValidator,
    composite_risk_score,
    violations_for,
)
from abuse_defense.models.schemas import (
    CompositeValidationResult,
    FlaggedKeyword,
    KeywordQualityResult,
    RateLimitResult,
    ScanPatternResult,
    ValidationChecks,
    ValidationRequest,
)


def _rate(remaining: int, limit: int | None = 10, allowed: bool = True, **kw) -> RateLimitResult:
    return RateLimitResult(allowed=allowed, remaining=remaining, limit=limit, action="start_scan", **kw)


def _keywords(quality: float, allowed: bool = True) -> KeywordQualityResult:
    return KeywordQualityResult(allowed=allowed, quality_score=quality)


def _scans(last_hour: int, last_day: int, factors: list[str] | None = None) -> ScanPatternResult:
    return ScanPatternResult(
        allowed=not factors,
        risk_factors=factors or [],
        last_hour=last_hour,
        last_day=last_day,
    )


def _validator(rate, keywords=None, scans=None):
    rate_limiter = AsyncMock()
    rate_limiter.check_rate_limit.return_value = rate
    keyword_assessor = AsyncMock()
    keyword_assessor.check_keyword_quality.return_value = keywords
    scan_analyzer = AsyncMock()
    scan_analyzer.check_scan_patterns.return_value = scans
    validator = RequestValidator(rate_limiter, keyword_assessor, scan_analyzer)
    return validator, rate_limiter, keyword_assessor, scan_analyzer


class TestCompositeRiskScore:
    def test_all_clear_is_low_risk(self):
        checks = ValidationChecks(rate_limit=_rate(9), keyword_quality=_keywords(0.9),
                                  scan_patterns=_scans(2, 10))
        assert composite_risk_score(checks, Plan.FREE) < 30

    def test_borderline_activity_lands_mid_range(self):
        # 8 of 10 used, keywords scored 0.2 / 0.7 spam, 15 of 20 hourly scans.
        checks = ValidationChecks(
            rate_limit=_rate(2),
            keyword_quality=_keywords((0.8 + 0.3) / 2),
            scan_patterns=_scans(15, 40),
        )
        score = composite_risk_score(checks, Plan.FREE)
        assert 40 <= score <= 70
        assert score == 53

    def test_any_hard_block_is_critical(self):
        checks = ValidationChecks(rate_limit=_rate(0, allowed=False))
        assert composite_risk_score(checks, Plan.FREE) >= CRITICAL_RISK_FLOOR

    def test_spam_keywords_are_critical(self):
        checks = ValidationChecks(rate_limit=_rate(9), keyword_quality=_keywords(0.1, allowed=False))
        assert composite_risk_score(checks, Plan.FREE) > 70

    def test_unlimited_and_degraded_rate_limits_add_nothing(self):
        unlimited = ValidationChecks(rate_limit=_rate(999_999, limit=None))
        degraded = ValidationChecks(rate_limit=_rate(10, degraded=True))
        assert composite_risk_score(unlimited, Plan.SUPER_USER) == 0
        assert composite_risk_score(degraded, Plan.FREE) == 0

    def test_score_is_monotone_in_rate_usage(self):
        scores = [
            composite_risk_score(ValidationChecks(rate_limit=_rate(r)), Plan.FREE)
            for r in range(10, -1, -1)
        ]
        assert scores == sorted(scores)

    def test_score_is_monotone_in_keyword_quality(self):
        scores = [
            composite_risk_score(
                ValidationChecks(rate_limit=_rate(10), keyword_quality=_keywords(q / 10)),
                Plan.FREE,
            )
            for q in range(10, -1, -1)
        ]
        assert scores == sorted(scores)

    def test_score_is_bounded(self):
        checks = ValidationChecks(
            rate_limit=_rate(0, allowed=False),
            keyword_quality=_keywords(0.0, allowed=False),
            scan_patterns=_scans(500, 500, ["excessive_scanning"]),
        )
        assert composite_risk_score(checks, Plan.FREE) == 100

    def test_heaviest_allowed_request_stays_below_critical(self):
        # One unit of quota left, keywords at the quality floor, the whole hourly ceiling used.
        checks = ValidationChecks(
            rate_limit=_rate(1, limit=100),
            keyword_quality=_keywords(0.3),
            scan_patterns=_scans(100, 100),
        )
        assert composite_risk_score(checks, Plan.PREMIUM) == MAX_ALLOWED_RISK


class TestValidateRequest:
    @pytest.mark.anyio
    async def test_runs_only_rate_limit_for_plain_actions(self):
        validator, rate_limiter, keyword_assessor, scan_analyzer = _validator(_rate(9))

        result = await validator.validate_request(
            ValidationRequest(user_id="user-1", action="takedown_request", plan=Plan.FREE)
        )

        assert result.allowed is True
        assert result.checks.keyword_quality is None
        assert result.checks.scan_patterns is None
        rate_limiter.check_rate_limit.assert_awaited_once_with(
            "user-1", "takedown_request", Plan.FREE, state=AbuseState.CLEAN
        )
        keyword_assessor.check_keyword_quality.assert_not_awaited()
        scan_analyzer.check_scan_patterns.assert_not_awaited()

    @pytest.mark.anyio
    async def test_abuse_state_reaches_rate_limiter(self):
        validator, rate_limiter, *_ = _validator(_rate(2, limit=3))

        await validator.validate_request(
            ValidationRequest(
                user_id="user-1",
                action="keyword_search",
                abuse_state=AbuseState.HIGH_RISK,
            )
        )

        assert rate_limiter.check_rate_limit.await_args.kwargs["state"] is AbuseState.HIGH_RISK

    @pytest.mark.anyio
    async def test_scan_action_with_keywords_runs_all_checks(self):
        validator, _, keyword_assessor, scan_analyzer = _validator(
            _rate(9), _keywords(0.9), _scans(2, 10)
        )

        result = await validator.validate_request(
            ValidationRequest(user_id="user-1", action="start_scan", plan=Plan.FREE,
                              keywords=["acme shoes"])
        )

        assert result.allowed is True
        assert result.risk_score < 30
        keyword_assessor.check_keyword_quality.assert_awaited_once_with("user-1", ["acme shoes"])
        scan_analyzer.check_scan_patterns.assert_awaited_once_with("user-1", Plan.FREE)

    @pytest.mark.anyio
    async def test_spam_keywords_block_the_request(self):
        validator, *_ = _validator(_rate(9), _keywords(0.05, allowed=False))

        result = await validator.validate_request(
            ValidationRequest(user_id="user-1", action="keyword_search", plan=Plan.FREE,
                              keywords=["free download", "watch online free"])
        )

        assert result.allowed is False
        assert result.risk_score > 70

    @pytest.mark.anyio
    async def test_rate_limit_block_alone_rejects(self):
        validator, *_ = _validator(_rate(0, allowed=False))

        result = await validator.validate_request(
            ValidationRequest(user_id="user-1", action="keyword_search")
        )

        assert result.allowed is False
        assert result.risk_score >= CRITICAL_RISK_FLOOR


class TestViolationsFor:
    @pytest.mark.anyio
    async def test_allowed_result_records_nothing(self):
        validator, *_ = _validator(_rate(9), _keywords(0.9))
        result = await validator.validate_request(
            ValidationRequest(user_id="u", action="keyword_search", keywords=["acme"])
        )
        assert violations_for(result) == []

    @pytest.mark.anyio
    async def test_each_hard_block_maps_to_a_violation(self):
        keywords = KeywordQualityResult(
            allowed=False,
            quality_score=0.1,
            flagged_keywords=[FlaggedKeyword(keyword="free download", spam_score=0.9)],
        )
        validator, *_ = _validator(
            _rate(0, allowed=False), keywords, _scans(50, 60, ["excessive_scanning"])
        )
        result = await validator.validate_request(
            ValidationRequest(user_id="u", action="start_scan", keywords=["free download"])
        )

        violations = violations_for(result)

        assert [v.type for v in violations] == [
            ViolationType.EXCESSIVE_REQUESTS,
            ViolationType.SPAM_KEYWORDS,
            ViolationType.SUSPICIOUS_PATTERNS,
        ]
        assert violations[1].severity == pytest.approx(0.9)
        assert violations[1].metadata["flagged"] == ["free download"]
        assert violations[2].metadata["risk_factors"] == ["excessive_scanning"]

    def test_duplicated_batch_is_recorded_even_when_allowed(self):
        keywords = KeywordQualityResult(
            allowed=True,
            quality_score=0.9,
            submitted=10,
            unique_keywords=["acme shoes", "acme boots"],
            unique_share=0.2,
        )
        result = CompositeValidationResult(
            allowed=True,
            risk_score=5,
            checks=ValidationChecks(rate_limit=_rate(9), keyword_quality=keywords),
        )

        [violation] = violations_for(result)

        assert violation.type is ViolationType.SPAM_KEYWORDS
        assert violation.severity == pytest.approx(0.2)
        assert violation.metadata == {"submitted": 10, "unique": 2}

    def test_mostly_unique_batch_records_nothing(self):
        keywords = KeywordQualityResult(
            allowed=True,
            quality_score=0.9,
            submitted=4,
            unique_keywords=["acme shoes", "acme boots", "acme laces"],
            unique_share=0.75,
        )
        result = CompositeValidationResult(
            allowed=True,
            risk_score=5,
            checks=ValidationChecks(rate_limit=_rate(9), keyword_quality=keywords),
        )

        assert violations_for(result) == []
