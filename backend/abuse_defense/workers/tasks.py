"""Celery tasks for background abuse monitoring."""

from __future__ import annotations

import asyncio
import logging

from celery import shared_task

from abuse_defense.config import get_settings
from abuse_defense.core.abuse_ledger import build_ledger
from abuse_defense.models.database import async_session_factory, engine

logger = logging.getLogger(__name__)


async def _run_monitor() -> dict:
    """Async helper: one full decay/check/enforce sweep.

    Celery tasks are synchronous wrappers around async code here.
    """
    settings = get_settings()
    ledger = build_ledger(settings, async_session_factory)
    try:
        summary = await ledger.monitor_all_users(batch_size=settings.abuse_monitor_batch_size)
    finally:
        # Pooled connections belong to this event loop; the next run gets a new one.
        await engine.dispose()
    logger.info(
        "MonitorTask done processed=%s decayed=%s patterns=%s failed=%s flagged=%s",
        summary.processed,
        summary.decayed,
        summary.patterns_recorded,
        summary.failed,
        len(summary.flagged),
    )
    return summary.model_dump(mode="json")


@shared_task(name="abuse_defense.workers.tasks.monitor_abuse_scores")
def monitor_abuse_scores() -> dict:
    """Decay stale scores and re-enforce BLOCKED users.

    Safe to re-run: every per-user step is idempotent.
    """
    return asyncio.run(_run_monitor())
