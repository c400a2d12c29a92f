"""security.py — Admin review of abuse scores.

Endpoints (admin only):
    GET  /api/v1/security/abuse-scores                       → highest scores first
    GET  /api/v1/security/abuse-scores/{user_id}             → report with history
    POST /api/v1/security/abuse-scores/{user_id}/violations  → record a violation
    POST /api/v1/security/abuse-scores/{user_id}/reset       → back to CLEAN
    POST /api/v1/security/abuse-scores/{user_id}/block       → BLOCKED + suspend
    GET  /api/v1/security/abuse-stats                        → platform counts

Called by: Admin tooling
Depends on: deps.py (AdminUser, LedgerDep), core/abuse_ledger.py
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, HTTPException, Query, status

from abuse_defense.api.deps import AdminUser, LedgerDep
from abuse_defense.core.abuse_ledger import ScoreRowMissingError, UserNotFoundError
from abuse_defense.models.schemas import (
    AbuseReport,
    AbuseScoreSummary,
    AbuseStats,
    BlockUserBody,
    ScoreChange,
    ViolationCreate,
)

router = APIRouter(prefix="/api/v1/security", tags=["security"])
logger = structlog.get_logger()


@router.get("/abuse-scores", response_model=list[AbuseScoreSummary])
async def list_abuse_scores(
    admin: AdminUser,
    ledger: LedgerDep,
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[AbuseScoreSummary]:
    return await ledger.list_abuse_scores(limit=limit)


@router.get("/abuse-scores/{user_id}", response_model=AbuseReport)
async def get_abuse_report(
    user_id: str,
    admin: AdminUser,
    ledger: LedgerDep,
    since: datetime | None = None,
    until: datetime | None = None,
) -> AbuseReport:
    """Score, state, and violation history for one user, optionally time-bounded."""
    if since and until and since > until:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "INVALID_RANGE", "message": "'since' must not be after 'until'"},
        )
    return await ledger.get_abuse_report(user_id, since=since, until=until)


@router.post("/abuse-scores/{user_id}/violations", response_model=ScoreChange)
async def record_violation(
    user_id: str,
    body: ViolationCreate,
    admin: AdminUser,
    ledger: LedgerDep,
) -> ScoreChange:
    """Record a violation against a user; 404 if the user does not exist."""
    try:
        change = await ledger.record_violation(user_id, body)
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": str(exc)},
        ) from exc
    logger.info(
        "admin_violation_recorded",
        actor_id=admin["id"],
        user_id=user_id,
        type=body.type.value,
        state=change.state.value,
    )
    return change


@router.post("/abuse-scores/{user_id}/reset", response_model=ScoreChange)
async def reset_abuse_score(user_id: str, admin: AdminUser, ledger: LedgerDep) -> ScoreChange:
    """Reset a user to score 0 / CLEAN after manual review."""
    try:
        return await ledger.reset_score(user_id, actor_id=admin["id"])
    except ScoreRowMissingError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": str(exc)},
        ) from exc


@router.post("/abuse-scores/{user_id}/block", response_model=ScoreChange)
async def block_user(
    user_id: str,
    admin: AdminUser,
    ledger: LedgerDep,
    body: BlockUserBody | None = None,
) -> ScoreChange:
    """Force a user into BLOCKED and suspend the account."""
    reason = body.reason if body else BlockUserBody().reason
    try:
        return await ledger.block_user(user_id, actor_id=admin["id"], reason=reason)
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": str(exc)},
        ) from exc


@router.get("/abuse-stats", response_model=AbuseStats)
async def abuse_stats(admin: AdminUser, ledger: LedgerDep) -> AbuseStats:
    return await ledger.get_abuse_stats()
