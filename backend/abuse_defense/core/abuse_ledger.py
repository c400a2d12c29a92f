"""abuse_ledger.py — Persistent per-user abuse score, violations, and decay.

Score lifecycle:
    violation  → score += round(severity * 100), state re-derived from score
    decay      → after DECAY_GRACE_DAYS without activity the score halves and
                 the state drops at least one tier (BLOCKED never decays);
                 a state change is audited as ABUSE_STATE_CHANGE
    patterns   → the sweep turns bursts, repetition, and escalation in the
                 violation history into SUSPICIOUS_PATTERNS violations
    BLOCKED    → the account is suspended and its monitoring paused through
                 AccountStore (idempotent)
    admin      → reset to CLEAN / manual block

Every score mutation locks its row (SELECT ... FOR UPDATE) and commits the
score change and its violation row in one transaction, so concurrent
violations for the same user never lose an increment.

Called by: api/routes/abuse.py, api/routes/security.py, workers/tasks.py
Depends on: models/tables.py, policy.py, protocols.py (AccountStore, AuditSink)
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import UTC, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from abuse_defense.config import Settings
from abuse_defense.core.policy import (
    MANUAL_BLOCK_SCORE,
    PATTERN_BURST_COUNT,
    PATTERN_BURST_SEVERITY,
    PATTERN_BURST_WINDOW_SECONDS,
    PATTERN_HISTORY_LIMIT,
    PATTERN_MIN_HISTORY,
    PATTERN_REPEAT_COUNT,
    PATTERN_REPEAT_SEVERITY,
    PATTERN_TREND_SAMPLE,
    PATTERN_TREND_SEVERITY,
    PATTERN_TREND_THRESHOLD,
    AbuseState,
    ViolationType,
    decayed_state,
    score_delta,
    state_for_score,
)
from abuse_defense.core.protocols import AccountStore, AuditSink
from abuse_defense.core.stores import SqlAccountStore, SqlAuditSink
from abuse_defense.models.schemas import (
    AbuseCheck,
    AbuseReport,
    AbuseScoreSummary,
    AbuseStats,
    FlaggedUser,
    MonitorSummary,
    ScoreChange,
    ViolationCreate,
    ViolationRead,
)
from abuse_defense.models.tables import AbuseScore, AbuseViolation, User

logger = logging.getLogger(__name__)

DEFAULT_DECAY_GRACE = timedelta(days=7)
DEFAULT_BATCH_SIZE = 500

BLOCKED_MESSAGE = (
    "Your account has been blocked due to repeated abuse violations. "
    "Contact support to request a review."
)
HIGH_RISK_MESSAGE = "Your account has been flagged for unusual activity and is under review."


# ─── Errors ───────────────────────────────────────────────────────────────────


class AbuseDefenseError(Exception):
    """Base class for ledger errors surfaced to callers."""


class ScoreRowMissingError(AbuseDefenseError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"No abuse score recorded for user {user_id}")
        self.user_id = user_id


class UserNotFoundError(AbuseDefenseError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


def _aware(value: datetime | None) -> datetime | None:
    """Treat naive timestamps from the database as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


# ─── Violation History Patterns ──────────────────────────────────────────────

PATTERN_SOURCE = "violation_history"


def _severity_trend(chronological: list[AbuseViolation]) -> float:
    """Share of consecutive pairs where severity rose; 0 for fewer than two."""
    if len(chronological) < 2:
        return 0.0
    increases = sum(
        1
        for earlier, later in zip(chronological, chronological[1:])
        if later.severity > earlier.severity
    )
    return increases / (len(chronological) - 1)


def find_violation_patterns(
    history: list[AbuseViolation],
    now: datetime,
) -> list[ViolationCreate]:
    """Escalation patterns in a user's violation history.

    ``history`` is newest first. Only violations newer than the last
    pattern recorded from history are considered, so the same evidence is
    never counted twice.

        burst       ≥ 5 violations in the last hour          → 0.3
        repetition  ≥ 10 violations of one type              → 0.25
        escalation  severity rose in > half of the last 10   → 0.35
    """
    fresh: list[AbuseViolation] = []
    for violation in history:
        if (violation.details or {}).get("source") == PATTERN_SOURCE:
            break
        fresh.append(violation)

    if len(fresh) < PATTERN_MIN_HISTORY:
        return []

    found: list[ViolationCreate] = []

    window_start = now - timedelta(seconds=PATTERN_BURST_WINDOW_SECONDS)
    recent = [v for v in fresh if _aware(v.occurred_at) >= window_start]
    if len(recent) >= PATTERN_BURST_COUNT:
        found.append(
            ViolationCreate(
                type=ViolationType.SUSPICIOUS_PATTERNS,
                severity=PATTERN_BURST_SEVERITY,
                description="Multiple violations within one hour",
                metadata={"source": PATTERN_SOURCE, "pattern": "burst", "count": len(recent)},
            )
        )

    for violation_type, count in sorted(Counter(v.type for v in fresh).items()):
        if count >= PATTERN_REPEAT_COUNT:
            found.append(
                ViolationCreate(
                    type=ViolationType.SUSPICIOUS_PATTERNS,
                    severity=PATTERN_REPEAT_SEVERITY,
                    description=f"Repeated {violation_type} violations",
                    metadata={
                        "source": PATTERN_SOURCE,
                        "pattern": "repetition",
                        "violation_type": violation_type,
                        "count": count,
                    },
                )
            )

    trend = _severity_trend(list(reversed(fresh[:PATTERN_TREND_SAMPLE])))
    if trend > PATTERN_TREND_THRESHOLD:
        found.append(
            ViolationCreate(
                type=ViolationType.SUSPICIOUS_PATTERNS,
                severity=PATTERN_TREND_SEVERITY,
                description="Escalating violation severity",
                metadata={"source": PATTERN_SOURCE, "pattern": "escalation", "trend": round(trend, 3)},
            )
        )

    return found


class AbuseScoreLedger:
    """Owns the ``abuse_scores`` / ``abuse_violations`` tables.

    Args:
        session_factory: Async session factory; each operation opens its own session.
        accounts: Enforcement target for BLOCKED users.
        audit: Audit log for enforcement and admin actions.
        decay_grace: Quiet period before a score becomes eligible to decay.
        enforcement_attempts: Suspension retries before giving up until the next sweep.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        accounts: AccountStore,
        audit: AuditSink,
        *,
        decay_grace: timedelta = DEFAULT_DECAY_GRACE,
        enforcement_attempts: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._accounts = accounts
        self._audit = audit
        self._decay_grace = decay_grace
        self._enforcement_attempts = max(1, enforcement_attempts)

    # ─── Row Access ───────────────────────────────────────────────────────────

    @staticmethod
    async def _lock_score_row(session: AsyncSession, user_id: str) -> AbuseScore | None:
        result = await session.execute(
            select(AbuseScore).where(AbuseScore.user_id == user_id).with_for_update()
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _read_score_row(session: AsyncSession, user_id: str) -> AbuseScore | None:
        result = await session.execute(select(AbuseScore).where(AbuseScore.user_id == user_id))
        return result.scalar_one_or_none()

    async def _lock_or_create(
        self,
        session: AsyncSession,
        user_id: str,
        now: datetime,
        *,
        verify_user: bool = True,
    ) -> AbuseScore:
        """Lock the user's score row, creating it on first use.

        Raises:
            UserNotFoundError: If the row is missing and so is the user.
        """
        row = await self._lock_score_row(session, user_id)
        if row is None:
            if verify_user:
                known = await session.execute(select(User.id).where(User.id == user_id))
                if known.scalar_one_or_none() is None:
                    raise UserNotFoundError(user_id)
            row = AbuseScore(
                id=uuid.uuid4(),
                user_id=user_id,
                current_score=0,
                state=AbuseState.CLEAN.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # Raises IntegrityError when another writer created the row first.
            await session.flush()
        return row

    # ─── Violations ───────────────────────────────────────────────────────────

    async def record_violation(
        self,
        user_id: str,
        violation: ViolationCreate,
        *,
        now: datetime | None = None,
    ) -> ScoreChange:
        """Add a violation to the user's score.

        Args:
            user_id: The offending user.
            violation: Type plus optional severity, description, and metadata.
            now: Clock override for tests.

        Returns:
            ScoreChange describing the transition. ``suspended`` is true when
            the new state is BLOCKED and the account suspension went through.

        Raises:
            UserNotFoundError: If the user has no score row and does not exist.
        """
        now = _aware(now) or datetime.now(UTC)
        severity = violation.resolved_severity
        delta = score_delta(severity)

        for attempt in range(2):
            try:
                change = await self._apply_violation(user_id, violation, severity, delta, now)
                break
            except IntegrityError:
                if attempt:
                    raise
                logger.info("abuse_score_create_race; retrying", extra={"user_id": user_id})

        logger.info(
            "abuse_violation_recorded",
            extra={
                "user_id": user_id,
                "type": violation.type.value,
                "severity": severity,
                "score": change.score,
                "state": change.state.value,
            },
        )

        if change.state is AbuseState.BLOCKED:
            change.suspended = await self._enforce(
                user_id, reason=f"abuse_score_blocked:{violation.type.value}"
            )
        return change

    async def _apply_violation(
        self,
        user_id: str,
        violation: ViolationCreate,
        severity: float,
        delta: int,
        now: datetime,
    ) -> ScoreChange:
        async with self._session_factory() as session:
            row = await self._lock_or_create(session, user_id, now)
            previous_score = row.current_score or 0
            previous_state = AbuseState(row.state or AbuseState.CLEAN)

            row.current_score = previous_score + delta
            row.state = state_for_score(row.current_score).value
            row.last_violation = now
            row.updated_at = now

            session.add(
                AbuseViolation(
                    id=uuid.uuid4(),
                    user_id=user_id,
                    score_id=row.id,
                    type=violation.type.value,
                    severity=severity,
                    description=violation.resolved_description,
                    details=violation.metadata,
                    occurred_at=now,
                )
            )
            await session.commit()

        return ScoreChange(
            user_id=user_id,
            previous_score=previous_score,
            score=row.current_score,
            previous_state=previous_state,
            state=AbuseState(row.state),
        )

    # ─── Enforcement ──────────────────────────────────────────────────────────

    async def _enforce(self, user_id: str, *, reason: str) -> bool:
        """Suspend the account, retrying before deferring to the next sweep."""
        for attempt in range(1, self._enforcement_attempts + 1):
            try:
                changed = await self._accounts.suspend(user_id)
            except Exception as exc:
                logger.warning(
                    "account_suspend_attempt_failed",
                    extra={"user_id": user_id, "attempt": attempt, "error": str(exc)},
                )
                continue
            if changed:
                await self._audit.record(user_id, "account_suspended", {"reason": reason})
            return True

        logger.error(
            "enforcement_failed",
            extra={
                "user_id": user_id,
                "reason": reason,
                "attempts": self._enforcement_attempts,
            },
        )
        await self._audit.record(
            user_id,
            "enforcement_failed",
            {"reason": reason, "attempts": self._enforcement_attempts},
        )
        return False

    # ─── Queries ──────────────────────────────────────────────────────────────

    async def check_user_abuse(self, user_id: str) -> AbuseCheck:
        """Current state and whether the user may proceed. Read-only."""
        async with self._session_factory() as session:
            row = await self._read_score_row(session, user_id)

        if row is None:
            return AbuseCheck(state=AbuseState.CLEAN, score=0, can_proceed=True)

        state = AbuseState(row.state)
        message = None
        if state is AbuseState.BLOCKED:
            message = BLOCKED_MESSAGE
        elif state is AbuseState.HIGH_RISK:
            message = HIGH_RISK_MESSAGE

        return AbuseCheck(
            state=state,
            score=row.current_score,
            can_proceed=state is not AbuseState.BLOCKED,
            message=message,
        )

    async def get_abuse_report(
        self,
        user_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> AbuseReport:
        """Score, state, and violation history (newest first) for one user."""
        async with self._session_factory() as session:
            row = await self._read_score_row(session, user_id)

            stmt = (
                select(AbuseViolation)
                .where(AbuseViolation.user_id == user_id)
                .order_by(AbuseViolation.occurred_at.desc())
            )
            if since is not None:
                stmt = stmt.where(AbuseViolation.occurred_at >= since)
            if until is not None:
                stmt = stmt.where(AbuseViolation.occurred_at <= until)
            violations = list((await session.execute(stmt)).scalars().all())

        by_type = Counter(v.type for v in violations)
        return AbuseReport(
            user_id=user_id,
            current_score=row.current_score if row else 0,
            state=AbuseState(row.state) if row else AbuseState.CLEAN,
            last_violation=_aware(row.last_violation) if row else None,
            violation_history=[ViolationRead.model_validate(v) for v in violations],
            total_violations=len(violations),
            violations_by_type=dict(by_type),
        )

    async def list_abuse_scores(self, limit: int = 100) -> list[AbuseScoreSummary]:
        """Scored users, highest score first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(AbuseScore)
                .order_by(AbuseScore.current_score.desc(), AbuseScore.user_id)
                .limit(limit)
            )
            rows = list(result.scalars().all())
        return [AbuseScoreSummary.model_validate(row) for row in rows]

    # ─── Decay ────────────────────────────────────────────────────────────────

    def _decay_eligible(self, row: AbuseScore, now: datetime) -> bool:
        if AbuseState(row.state) is AbuseState.BLOCKED or (row.current_score or 0) <= 0:
            return False
        anchors = [
            ts
            for ts in (
                _aware(row.last_violation),
                _aware(row.last_decayed_at),
                _aware(row.created_at),
            )
            if ts is not None
        ]
        if not anchors:
            return False
        return now - max(anchors) >= self._decay_grace

    async def apply_temporal_decay(
        self,
        user_id: str,
        *,
        now: datetime | None = None,
    ) -> ScoreChange | None:
        """Halve an idle user's score and drop their state one tier or more.

        Returns:
            The applied ScoreChange, or None when the user has no score row,
            is still inside the grace period, has nothing to decay, or is
            BLOCKED.
        """
        now = _aware(now) or datetime.now(UTC)

        async with self._session_factory() as session:
            row = await self._lock_score_row(session, user_id)
            if row is None or not self._decay_eligible(row, now):
                return None

            previous_score = row.current_score
            previous_state = AbuseState(row.state)
            halved = previous_score // 2
            new_state = decayed_state(previous_state, halved)

            row.current_score = halved
            row.state = new_state.value
            row.last_decayed_at = now
            row.updated_at = now
            await session.commit()

        logger.info(
            "abuse_score_decayed",
            extra={
                "user_id": user_id,
                "previous_score": previous_score,
                "score": halved,
                "state": new_state.value,
            },
        )
        if new_state is not previous_state:
            await self._audit.record(
                user_id,
                "ABUSE_STATE_CHANGE",
                {
                    "previous_state": previous_state.value,
                    "new_state": new_state.value,
                    "score": halved,
                    "reason": "temporal_decay",
                },
            )
        return ScoreChange(
            user_id=user_id,
            previous_score=previous_score,
            score=halved,
            previous_state=previous_state,
            state=new_state,
        )

    # ─── History Analysis ─────────────────────────────────────────────────────

    async def detect_violation_patterns(
        self,
        user_id: str,
        *,
        now: datetime | None = None,
    ) -> list[ScoreChange]:
        """Record a SUSPICIOUS_PATTERNS violation for each pattern in recent history.

        See ``find_violation_patterns`` for the patterns and their severities.
        """
        now = _aware(now) or datetime.now(UTC)

        async with self._session_factory() as session:
            result = await session.execute(
                select(AbuseViolation)
                .where(AbuseViolation.user_id == user_id)
                .order_by(AbuseViolation.occurred_at.desc())
                .limit(PATTERN_HISTORY_LIMIT)
            )
            history = list(result.scalars().all())

        changes = []
        for pattern in find_violation_patterns(history, now):
            logger.info(
                "abuse_pattern_detected",
                extra={"user_id": user_id, "pattern": pattern.metadata["pattern"]},
            )
            changes.append(await self.record_violation(user_id, pattern, now=now))
        return changes

    # ─── Periodic Sweep ───────────────────────────────────────────────────────

    async def monitor_all_users(
        self,
        batch_size: int | None = None,
        *,
        now: datetime | None = None,
    ) -> MonitorSummary:
        """Decay, analyze history, re-check, and re-enforce every scored user.

        Pages through ``abuse_scores`` by user id. A failure for one user is
        logged and counted; the sweep continues with the next user.
        """
        batch_size = batch_size or DEFAULT_BATCH_SIZE
        now = _aware(now) or datetime.now(UTC)
        summary = MonitorSummary(started_at=now)
        last_user_id: str | None = None

        while True:
            async with self._session_factory() as session:
                stmt = select(AbuseScore.user_id).order_by(AbuseScore.user_id).limit(batch_size)
                if last_user_id is not None:
                    stmt = stmt.where(AbuseScore.user_id > last_user_id)
                user_ids = list((await session.execute(stmt)).scalars().all())

            for user_id in user_ids:
                summary.processed += 1
                try:
                    if await self.apply_temporal_decay(user_id, now=now) is not None:
                        summary.decayed += 1
                    patterns = await self.detect_violation_patterns(user_id, now=now)
                    summary.patterns_recorded += len(patterns)
                    check = await self.check_user_abuse(user_id)
                    if check.state in (AbuseState.HIGH_RISK, AbuseState.BLOCKED):
                        summary.flagged.append(
                            FlaggedUser(user_id=user_id, state=check.state, score=check.score)
                        )
                    if check.state is AbuseState.BLOCKED:
                        await self._enforce(user_id, reason="abuse_monitor_sweep")
                except Exception:
                    summary.failed += 1
                    logger.exception("abuse_monitor_user_failed", extra={"user_id": user_id})

            if len(user_ids) < batch_size:
                break
            last_user_id = user_ids[-1]

        summary.completed_at = datetime.now(UTC)
        logger.info(
            "abuse_monitor_complete",
            extra={
                "processed": summary.processed,
                "decayed": summary.decayed,
                "patterns_recorded": summary.patterns_recorded,
                "failed": summary.failed,
                "flagged": len(summary.flagged),
            },
        )
        return summary

    # ─── Admin Actions ────────────────────────────────────────────────────────

    async def reset_score(
        self,
        user_id: str,
        actor_id: str,
        *,
        now: datetime | None = None,
    ) -> ScoreChange:
        """Clear a user's score back to CLEAN after manual review.

        Raises:
            ScoreRowMissingError: If the user has never been scored.
        """
        now = _aware(now) or datetime.now(UTC)

        async with self._session_factory() as session:
            row = await self._lock_score_row(session, user_id)
            if row is None:
                raise ScoreRowMissingError(user_id)

            previous_score = row.current_score
            previous_state = AbuseState(row.state)
            row.current_score = 0
            row.state = AbuseState.CLEAN.value
            row.last_violation = None
            row.updated_at = now
            await session.commit()

        await self._audit.record(
            actor_id,
            "RESET_ABUSE_SCORE",
            {
                "target_user_id": user_id,
                "previous_score": previous_score,
                "previous_state": previous_state.value,
            },
        )
        logger.info(
            "abuse_score_reset",
            extra={"user_id": user_id, "actor_id": actor_id, "previous_score": previous_score},
        )
        return ScoreChange(
            user_id=user_id,
            previous_score=previous_score,
            score=0,
            previous_state=previous_state,
            state=AbuseState.CLEAN,
        )

    async def block_user(
        self,
        user_id: str,
        actor_id: str,
        reason: str = "Manual block by admin",
        *,
        now: datetime | None = None,
    ) -> ScoreChange:
        """Force a user into BLOCKED and suspend the account immediately.

        Raises:
            UserNotFoundError: If no such user exists.
        """
        now = _aware(now) or datetime.now(UTC)

        async with self._session_factory() as session:
            user = (
                await session.execute(select(User).where(User.id == user_id))
            ).scalar_one_or_none()
            if user is None:
                raise UserNotFoundError(user_id)
            previous_status = user.status

            row = await self._lock_or_create(session, user_id, now, verify_user=False)
            previous_score = row.current_score or 0
            previous_state = AbuseState(row.state or AbuseState.CLEAN)
            row.current_score = MANUAL_BLOCK_SCORE
            row.state = AbuseState.BLOCKED.value
            row.updated_at = now
            await session.commit()

        suspended = await self._enforce(user_id, reason=reason)
        await self._audit.record(
            actor_id,
            "BLOCK_USER",
            {
                "target_user_id": user_id,
                "reason": reason,
                "previous_status": previous_status,
            },
        )
        logger.warning(
            "abuse_user_blocked",
            extra={"user_id": user_id, "actor_id": actor_id, "reason": reason},
        )
        return ScoreChange(
            user_id=user_id,
            previous_score=previous_score,
            score=MANUAL_BLOCK_SCORE,
            previous_state=previous_state,
            state=AbuseState.BLOCKED,
            suspended=suspended,
        )

    async def get_abuse_stats(self, *, now: datetime | None = None) -> AbuseStats:
        """Platform-wide counts by state, last-24h violations, and mean score."""
        now = _aware(now) or datetime.now(UTC)

        async with self._session_factory() as session:
            total_users = (
                await session.execute(
                    select(func.count(User.id)).where(User.status != "DELETED")
                )
            ).scalar_one()
            state_rows = (
                await session.execute(
                    select(AbuseScore.state, func.count(AbuseScore.id)).group_by(AbuseScore.state)
                )
            ).all()
            recent_violations = (
                await session.execute(
                    select(func.count(AbuseViolation.id)).where(
                        AbuseViolation.occurred_at >= now - timedelta(hours=24)
                    )
                )
            ).scalar_one()
            average_score = (
                await session.execute(select(func.avg(AbuseScore.current_score)))
            ).scalar_one()

        counts = {AbuseState(state): int(count) for state, count in state_rows}
        total_users = int(total_users or 0)
        scored = sum(counts.values())

        return AbuseStats(
            total_users=total_users,
            clean_users=counts.get(AbuseState.CLEAN, 0) + max(0, total_users - scored),
            warning_users=counts.get(AbuseState.WARNING, 0),
            high_risk_users=counts.get(AbuseState.HIGH_RISK, 0),
            blocked_users=counts.get(AbuseState.BLOCKED, 0),
            recent_violations=int(recent_violations or 0),
            average_score=float(average_score or 0.0),
        )


def build_ledger(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> AbuseScoreLedger:
    """Ledger wired to the SQL account store and audit sink."""
    return AbuseScoreLedger(
        session_factory,
        SqlAccountStore(session_factory),
        SqlAuditSink(session_factory),
        decay_grace=timedelta(days=settings.decay_grace_days),
        enforcement_attempts=settings.enforcement_attempts,
    )
