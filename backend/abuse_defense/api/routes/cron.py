"""cron.py — HTTP trigger for the abuse monitor sweep.

For schedulers that call URLs instead of running Celery beat. Guarded by
``Authorization: Bearer <CRON_SECRET>``.

Called by: External cron service (hourly)
Depends on: deps.py (CronAuth, LedgerDep)
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter

from abuse_defense.api.deps import ConfigDep, CronAuth, LedgerDep
from abuse_defense.models.schemas import MonitorSummary

router = APIRouter(prefix="/api/v1/cron", tags=["cron"])
logger = structlog.get_logger()


@router.api_route(
    "/abuse-monitoring",
    methods=["GET", "POST"],
    response_model=MonitorSummary,
    dependencies=[CronAuth],
)
async def run_abuse_monitoring(config: ConfigDep, ledger: LedgerDep) -> MonitorSummary:
    logger.info("cron_abuse_monitoring_started")
    summary = await ledger.monitor_all_users(batch_size=config.abuse_monitor_batch_size)
    logger.info(
        "cron_abuse_monitoring_completed",
        processed=summary.processed,
        decayed=summary.decayed,
        patterns_recorded=summary.patterns_recorded,
        failed=summary.failed,
        flagged=len(summary.flagged),
    )
    return summary
