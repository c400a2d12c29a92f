"""FastAPI application factory.

Builds the FastAPI app with middleware, routes, and lifespan events.
APP_MODE only changes the keyword classifier (mock → canned verdicts);
every mode mounts the same routes.

Called by: Uvicorn (``uvicorn abuse_defense.main:app``)
Depends on: config.py, environment.py, routes/*, middleware.py
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from abuse_defense.api.middleware import register_middleware
from abuse_defense.config import get_settings
from abuse_defense.core.environment import validate_environment

_settings = get_settings()
_log_level = getattr(logging, _settings.log_level.upper(), logging.INFO)

logging.basicConfig(level=_log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer() if not _settings.is_production
        else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(_log_level),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Validate the environment on startup and log the active mode."""
    validate_environment()
    settings = get_settings()
    logger.info(
        "app_startup",
        env=settings.app_env,
        mode=settings.app_mode,
        classifier_provider=settings.effective_classifier_provider,
        abuse_monitor_enabled=settings.abuse_monitor_enabled,
    )
    yield
    logger.info("app_shutdown")


def _register_routes(app: FastAPI) -> None:
    from abuse_defense.api.routes import abuse, cron, health, security

    app.include_router(health.router)
    app.include_router(abuse.router)
    app.include_router(security.router)
    app.include_router(cron.router)


def create_app() -> FastAPI:
    """Build and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Abuse Defense",
        description="Rate limiting, keyword quality, scan-pattern and abuse-score service",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )

    register_middleware(app)
    _register_routes(app)

    return app


app = create_app()
