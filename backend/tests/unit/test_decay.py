"""Unit tests for temporal decay of abuse scores."""

from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from conftest import NOW, result_of

from abuse_defense.core.abuse_ledger import AbuseScoreLedger
from abuse_defense.core.policy import AbuseState, decayed_state
from abuse_defense.models.tables import AbuseScore

GRACE = timedelta(days=7)


def _row(score: int, state: AbuseState, *, idle: timedelta, **kw) -> AbuseScore:
    return AbuseScore(
        user_id="user-1",
        current_score=score,
        state=state.value,
        last_violation=NOW - idle,
        created_at=NOW - timedelta(days=90),
        **kw,
    )


@pytest.fixture
def ledger(session_factory) -> AbuseScoreLedger:
    return AbuseScoreLedger(session_factory, AsyncMock(), AsyncMock(), decay_grace=GRACE)


class TestDecayedState:
    @pytest.mark.parametrize(
        ("previous", "halved", "expected"),
        [
            (AbuseState.WARNING, 50, AbuseState.CLEAN),
            (AbuseState.WARNING, 30, AbuseState.CLEAN),
            (AbuseState.HIGH_RISK, 90, AbuseState.WARNING),
            (AbuseState.HIGH_RISK, 60, AbuseState.WARNING),
            (AbuseState.HIGH_RISK, 20, AbuseState.CLEAN),
            (AbuseState.CLEAN, 10, AbuseState.CLEAN),
        ],
    )
    def test_drops_at_least_one_tier(self, previous, halved, expected):
        assert decayed_state(previous, halved) is expected


class TestApplyTemporalDecay:
    @pytest.mark.anyio
    async def test_idle_warning_user_halves_to_clean(self, ledger, db_session):
        row = _row(100, AbuseState.WARNING, idle=timedelta(days=8))
        db_session.execute.return_value = result_of(scalar=row)

        change = await ledger.apply_temporal_decay("user-1", now=NOW)

        assert change.previous_score == 100
        assert change.score == 50
        assert change.state is AbuseState.CLEAN
        assert row.current_score == 50
        assert row.state == "CLEAN"
        assert row.last_decayed_at == NOW
        # Decay is not a violation.
        assert row.last_violation == NOW - timedelta(days=8)
        db_session.commit.assert_awaited_once()

    @pytest.mark.anyio
    async def test_high_risk_drops_to_warning(self, ledger, db_session):
        db_session.execute.return_value = result_of(
            scalar=_row(180, AbuseState.HIGH_RISK, idle=timedelta(days=10))
        )

        change = await ledger.apply_temporal_decay("user-1", now=NOW)

        assert change.score == 90
        assert change.state is AbuseState.WARNING

    @pytest.mark.anyio
    async def test_odd_scores_round_down(self, ledger, db_session):
        db_session.execute.return_value = result_of(
            scalar=_row(35, AbuseState.CLEAN, idle=timedelta(days=30))
        )
        change = await ledger.apply_temporal_decay("user-1", now=NOW)
        assert change.score == 17

    @pytest.mark.anyio
    async def test_grace_boundary_is_inclusive(self, ledger, db_session):
        db_session.execute.return_value = result_of(
            scalar=_row(60, AbuseState.WARNING, idle=GRACE)
        )
        assert await ledger.apply_temporal_decay("user-1", now=NOW) is not None

    @pytest.mark.anyio
    async def test_inside_grace_period_is_untouched(self, ledger, db_session):
        row = _row(60, AbuseState.WARNING, idle=GRACE - timedelta(seconds=1))
        db_session.execute.return_value = result_of(scalar=row)

        assert await ledger.apply_temporal_decay("user-1", now=NOW) is None
        assert row.current_score == 60
        db_session.commit.assert_not_awaited()

    @pytest.mark.anyio
    async def test_blocked_never_decays(self, ledger, db_session):
        row = _row(250, AbuseState.BLOCKED, idle=timedelta(days=365))
        db_session.execute.return_value = result_of(scalar=row)

        assert await ledger.apply_temporal_decay("user-1", now=NOW) is None
        assert row.current_score == 250

    @pytest.mark.anyio
    async def test_zero_score_is_skipped(self, ledger, db_session):
        db_session.execute.return_value = result_of(
            scalar=_row(0, AbuseState.CLEAN, idle=timedelta(days=30))
        )
        assert await ledger.apply_temporal_decay("user-1", now=NOW) is None

    @pytest.mark.anyio
    async def test_unknown_user_is_skipped(self, ledger, db_session):
        db_session.execute.return_value = result_of(scalar=None)
        assert await ledger.apply_temporal_decay("nobody", now=NOW) is None

    @pytest.mark.anyio
    async def test_repeat_within_grace_is_a_no_op(self, ledger, db_session):
        row = _row(120, AbuseState.HIGH_RISK, idle=timedelta(days=8))
        db_session.execute.return_value = result_of(scalar=row)

        first = await ledger.apply_temporal_decay("user-1", now=NOW)
        second = await ledger.apply_temporal_decay("user-1", now=NOW + timedelta(hours=1))

        assert first is not None
        assert second is None
        assert row.current_score == 60

    @pytest.mark.anyio
    async def test_decays_again_after_another_grace_period(self, ledger, db_session):
        row = _row(120, AbuseState.HIGH_RISK, idle=timedelta(days=8))
        db_session.execute.return_value = result_of(scalar=row)

        await ledger.apply_temporal_decay("user-1", now=NOW)
        change = await ledger.apply_temporal_decay("user-1", now=NOW + GRACE)

        assert change.previous_score == 60
        assert change.score == 30
        assert change.state is AbuseState.CLEAN

    @pytest.mark.anyio
    async def test_new_row_without_violation_uses_creation_time(self, ledger, db_session):
        row = AbuseScore(
            user_id="user-1",
            current_score=40,
            state="CLEAN",
            last_violation=None,
            created_at=NOW - timedelta(days=2),
        )
        db_session.execute.return_value = result_of(scalar=row)

        assert await ledger.apply_temporal_decay("user-1", now=NOW) is None

    @pytest.mark.anyio
    async def test_naive_database_timestamps_are_utc(self, ledger, db_session):
        naive = (NOW - timedelta(days=8)).replace(tzinfo=None)
        row = AbuseScore(
            user_id="user-1",
            current_score=80,
            state="WARNING",
            last_violation=naive,
            created_at=datetime(2024, 1, 1),
        )
        db_session.execute.return_value = result_of(scalar=row)

        change = await ledger.apply_temporal_decay("user-1", now=NOW)

        assert change.score == 40
