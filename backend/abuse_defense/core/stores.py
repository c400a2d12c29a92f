"""stores.py — SQL implementations of the collaborator protocols.

    SqlAccountStore       → flips users.status to SUSPENDED and pauses the
                            user's RUNNING monitoring_sessions (idempotent)
    SqlAuditSink          → appends user_activities rows, never raises
    SqlScanActivitySource → counts scan_sessions / running monitoring_sessions

Each call opens its own short-lived session from the factory so it never
shares a transaction with the caller.

Called by: api/deps.py, workers/tasks.py
Depends on: models/tables.py, protocols.py
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from abuse_defense.core.protocols import ScanActivitySample
from abuse_defense.models.tables import MonitoringSession, ScanSession, User, UserActivity

logger = logging.getLogger(__name__)

SUSPENDED = "SUSPENDED"
RUNNING = "RUNNING"
PAUSED = "PAUSED"


class SqlAccountStore:
    """User-account status updates against the shared ``users`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def suspend(self, user_id: str) -> bool:
        # Pausing runs even for an account that was already suspended.
        async with self._session_factory() as session:
            result = await session.execute(
                update(User)
                .where(User.id == user_id, User.status != SUSPENDED)
                .values(status=SUSPENDED)
            )
            paused = await session.execute(
                update(MonitoringSession)
                .where(MonitoringSession.user_id == user_id, MonitoringSession.status == RUNNING)
                .values(status=PAUSED)
            )
            await session.commit()
        changed = (result.rowcount or 0) > 0
        paused_count = paused.rowcount or 0
        if changed or paused_count:
            logger.warning(
                "account_suspended",
                extra={"user_id": user_id, "status_changed": changed, "sessions_paused": paused_count},
            )
        return changed


class SqlAuditSink:
    """Fire-and-forget audit log backed by ``user_activities``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        user_id: str,
        action: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(UserActivity(user_id=user_id, action=action, details=metadata or {}))
                await session.commit()
        except Exception as exc:
            # Audit writes must never fail the request they describe.
            logger.warning(
                "audit_write_failed",
                extra={"user_id": user_id, "action": action, "error": str(exc)},
            )


class SqlScanActivitySource:
    """Computes ScanActivitySample from the scanning subsystem's tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def sample(self, user_id: str, now: datetime) -> ScanActivitySample:
        async with self._session_factory() as session:
            last_hour = (
                await session.execute(
                    select(func.count(ScanSession.id)).where(
                        ScanSession.user_id == user_id,
                        ScanSession.started_at >= now - timedelta(hours=1),
                    )
                )
            ).scalar_one()
            last_day = (
                await session.execute(
                    select(func.count(ScanSession.id)).where(
                        ScanSession.user_id == user_id,
                        ScanSession.started_at >= now - timedelta(hours=24),
                    )
                )
            ).scalar_one()
            active_sessions = (
                await session.execute(
                    select(func.count(MonitoringSession.id)).where(
                        MonitoringSession.user_id == user_id,
                        MonitoringSession.status == RUNNING,
                    )
                )
            ).scalar_one()

        return ScanActivitySample(
            last_hour=int(last_hour or 0),
            last_day=int(last_day or 0),
            active_sessions=int(active_sessions or 0),
        )
