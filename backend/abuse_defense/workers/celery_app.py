"""Celery application factory."""

from __future__ import annotations

import logging

from celery import Celery
from celery.schedules import crontab

from abuse_defense.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_MONITOR_CRON = "0 * * * *"


def _parse_cron(expr: str) -> crontab:
    """Parse a 5-field cron expression into Celery crontab."""
    parts = expr.split()
    if len(parts) != 5:
        logger.warning(
            "Invalid cron expression '%s'. Falling back to '%s'.", expr, DEFAULT_MONITOR_CRON
        )
        parts = DEFAULT_MONITOR_CRON.split()
    return crontab(
        minute=parts[0],
        hour=parts[1],
        day_of_month=parts[2],
        month_of_year=parts[3],
        day_of_week=parts[4],
    )


def create_celery_app() -> Celery:
    """Create and configure Celery application."""
    settings = get_settings()

    app = Celery(
        "abuse_defense",
        broker=settings.redis_url,
        backend=settings.redis_url,
        include=["abuse_defense.workers.tasks"],
    )

    beat_schedule: dict[str, dict] = {}
    if settings.abuse_monitor_enabled:
        beat_schedule["abuse-score-monitor"] = {
            "task": "abuse_defense.workers.tasks.monitor_abuse_scores",
            "schedule": _parse_cron(settings.abuse_monitor_cron),
        }

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        task_track_started=True,
        broker_connection_retry_on_startup=True,
        beat_schedule=beat_schedule,
    )

    return app


celery_app = create_celery_app()
