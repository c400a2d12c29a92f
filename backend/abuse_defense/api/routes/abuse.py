"""abuse.py — User-facing admission checks.

Endpoints:
    POST /api/v1/abuse/validate          → composite check for a proposed action
    GET  /api/v1/abuse/rate-limit/usage  → per-action quota usage this window
    GET  /api/v1/abuse/me                → caller's own abuse state

BLOCKED users are refused before any check runs. Hard blocks found by the
validator are recorded on the caller's abuse score.

Called by: The web app before keyword searches, scans, and takedowns
Depends on: deps.py (CurrentUser, ValidatorDep, LedgerDep, RateLimiterDep)
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from abuse_defense.api.deps import CurrentUser, LedgerDep, RateLimiterDep, ValidatorDep
from abuse_defense.core.abuse_ledger import UserNotFoundError
from abuse_defense.core.request_validator import violations_for
from abuse_defense.models.schemas import (
    AbuseCheck,
    CompositeValidationResult,
    RateLimitUsage,
    ValidateRequestBody,
    ValidationRequest,
)

router = APIRouter(prefix="/api/v1/abuse", tags=["abuse"])
logger = structlog.get_logger()


@router.post("/validate", response_model=CompositeValidationResult)
async def validate_action(
    body: ValidateRequestBody,
    user: CurrentUser,
    validator: ValidatorDep,
    ledger: LedgerDep,
) -> CompositeValidationResult:
    """Run rate-limit, keyword-quality, and scan-pattern checks for an action.

    Auth: JWT required.

    Returns:
        CompositeValidationResult. ``allowed=False`` is a normal 200 response;
        the caller decides how to surface it.

    Raises:
        HTTPException: 403 if the caller's account is BLOCKED.
    """
    standing = await ledger.check_user_abuse(user["id"])
    if not standing.can_proceed:
        logger.info("validate_refused_blocked_user", user_id=user["id"], action=body.action)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "ACCOUNT_BLOCKED", "message": standing.message},
        )

    result = await validator.validate_request(
        ValidationRequest(
            user_id=user["id"],
            action=body.action,
            plan=user["plan"],
            abuse_state=standing.state,
            keywords=body.keywords,
        )
    )

    for violation in violations_for(result):
        try:
            await ledger.record_violation(user["id"], violation)
        except (SQLAlchemyError, UserNotFoundError) as exc:
            logger.error(
                "violation_record_failed",
                user_id=user["id"],
                type=violation.type.value,
                error=str(exc),
            )

    return result


@router.get("/rate-limit/usage", response_model=RateLimitUsage)
async def rate_limit_usage(
    user: CurrentUser,
    limiter: RateLimiterDep,
    ledger: LedgerDep,
) -> RateLimitUsage:
    """Read-only quota usage for the caller's plan and abuse state. Auth: JWT required."""
    standing = await ledger.check_user_abuse(user["id"])
    return await limiter.get_usage(user["id"], user["plan"], state=standing.state)


@router.get("/me", response_model=AbuseCheck)
async def my_abuse_state(user: CurrentUser, ledger: LedgerDep) -> AbuseCheck:
    """The caller's current abuse state and score. Auth: JWT required."""
    return await ledger.check_user_abuse(user["id"])
