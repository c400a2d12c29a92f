"""environment.py — Startup validation for the APP_MODE runtime tier.

Mode overview:
    mock       → Canned keyword classifier; DB + Redis still required.
    sandbox    → Real DB + Redis, missing secrets only warn.
    production → AUTH_SECRET and CRON_SECRET required; the openai
                 classifier also needs OPENAI_API_KEY.

Called by: main.py (startup)
Depends on: config.py (Settings)
"""

from __future__ import annotations

import logging

from abuse_defense.config import Settings, get_settings

logger = logging.getLogger(__name__)

# ─── Valid Modes ──────────────────────────────────────────────────────────────

VALID_MODES = frozenset({"mock", "sandbox", "production"})

MODE_MOCK = "mock"
MODE_SANDBOX = "sandbox"
MODE_PRODUCTION = "production"


def missing_required_keys(settings: Settings) -> list[str]:
    """Env vars the active configuration needs but does not have."""
    missing: list[str] = []
    if not settings.auth_secret:
        missing.append("AUTH_SECRET")
    if not settings.cron_secret:
        missing.append("CRON_SECRET")
    if settings.effective_classifier_provider == "openai" and not settings.openai_api_key:
        missing.append("OPENAI_API_KEY")
    return missing


def validate_environment() -> None:
    """Validate environment configuration on startup.

    Raises:
        ValueError: If APP_MODE is not a recognized mode.
        RuntimeError: If production mode is missing required env vars.
    """
    settings = get_settings()

    if settings.app_mode not in VALID_MODES:
        raise ValueError(
            f"Invalid APP_MODE='{settings.app_mode}'. "
            f"Must be one of: {sorted(VALID_MODES)}"
        )

    logger.info(
        "Environment initialized: mode=%s, env=%s, classifier=%s",
        settings.app_mode,
        settings.app_env,
        settings.effective_classifier_provider,
    )

    missing = missing_required_keys(settings)

    if settings.app_mode == MODE_MOCK:
        logger.info("🎭 MOCK MODE — keyword classifier returns canned verdicts.")
        return

    if settings.app_mode == MODE_SANDBOX:
        logger.info("🧪 SANDBOX MODE — real DB and Redis.")
        for key in missing:
            logger.warning("%s not set — dependent routes will reject requests.", key)
        return

    logger.info("🚀 PRODUCTION MODE — all services must be configured.")
    if missing:
        logger.error("Production mode requires these env vars: %s", ", ".join(missing))
        raise RuntimeError("Production mode requires these env vars: " + ", ".join(missing))
