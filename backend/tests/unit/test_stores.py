"""Unit tests for the SQL account store, audit sink, and scan-activity source."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest
from conftest import NOW, result_of
from sqlalchemy.exc import OperationalError

from abuse_defense.core.protocols import AccountStore, AuditSink, ScanActivitySource
from abuse_defense.core.stores import SqlAccountStore, SqlAuditSink, SqlScanActivitySource
from abuse_defense.models.tables import UserActivity


def _update_result(rowcount: int) -> MagicMock:
    result = MagicMock()
    result.rowcount = rowcount
    return result


def test_stores_satisfy_protocols(session_factory):
    assert isinstance(SqlAccountStore(session_factory), AccountStore)
    assert isinstance(SqlAuditSink(session_factory), AuditSink)
    assert isinstance(SqlScanActivitySource(session_factory), ScanActivitySource)


class TestSqlAccountStore:
    @pytest.mark.anyio
    async def test_suspend_active_account(self, session_factory, db_session):
        db_session.execute.return_value = _update_result(1)

        assert await SqlAccountStore(session_factory).suspend("user-1") is True
        db_session.commit.assert_awaited_once()

    @pytest.mark.anyio
    async def test_suspend_is_idempotent(self, session_factory, db_session):
        db_session.execute.return_value = _update_result(0)
        assert await SqlAccountStore(session_factory).suspend("user-1") is False

    @pytest.mark.anyio
    async def test_suspend_pauses_running_monitoring_sessions(self, session_factory, db_session):
        db_session.execute.side_effect = [_update_result(1), _update_result(2)]

        assert await SqlAccountStore(session_factory).suspend("user-1") is True

        user_update, session_update = [c.args[0] for c in db_session.execute.await_args_list]
        assert user_update.table.name == "users"
        assert session_update.table.name == "monitoring_sessions"
        params = session_update.compile().params
        assert params["status"] == "PAUSED"
        assert set(params.values()) >= {"user-1", "RUNNING", "PAUSED"}
        # One transaction for both updates.
        db_session.commit.assert_awaited_once()

    @pytest.mark.anyio
    async def test_already_suspended_account_still_pauses_sessions(
        self, session_factory, db_session
    ):
        db_session.execute.side_effect = [_update_result(0), _update_result(1)]

        assert await SqlAccountStore(session_factory).suspend("user-1") is False
        assert db_session.execute.await_count == 2

    @pytest.mark.anyio
    async def test_database_errors_propagate(self, session_factory, db_session):
        db_session.execute.side_effect = OperationalError("UPDATE", {}, Exception("down"))
        with pytest.raises(OperationalError):
            await SqlAccountStore(session_factory).suspend("user-1")


class TestSqlAuditSink:
    @pytest.mark.anyio
    async def test_record_writes_activity_row(self, session_factory, db_session):
        await SqlAuditSink(session_factory).record("user-1", "keyword_search", {"count": 1})

        [activity] = [c.args[0] for c in db_session.add.call_args_list]
        assert isinstance(activity, UserActivity)
        assert activity.user_id == "user-1"
        assert activity.action == "keyword_search"
        assert activity.details == {"count": 1}
        db_session.commit.assert_awaited_once()

    @pytest.mark.anyio
    async def test_record_never_raises(self, session_factory, db_session, caplog):
        db_session.commit.side_effect = OperationalError("INSERT", {}, Exception("down"))

        with caplog.at_level(logging.WARNING, logger="abuse_defense.core.stores"):
            await SqlAuditSink(session_factory).record("user-1", "keyword_search")

        assert any(r.getMessage() == "audit_write_failed" for r in caplog.records)


class TestSqlScanActivitySource:
    @pytest.mark.anyio
    async def test_sample_counts(self, session_factory, db_session):
        db_session.execute.side_effect = [
            result_of(scalar=4),
            result_of(scalar=11),
            result_of(scalar=1),
        ]

        sample = await SqlScanActivitySource(session_factory).sample("user-1", NOW)

        assert (sample.last_hour, sample.last_day, sample.active_sessions) == (4, 11, 1)

    @pytest.mark.anyio
    async def test_null_counts_are_zero(self, session_factory, db_session):
        db_session.execute.return_value = result_of(scalar=None)

        sample = await SqlScanActivitySource(session_factory).sample("user-1", NOW)

        assert sample.last_hour == 0
        assert sample.active_sessions == 0
