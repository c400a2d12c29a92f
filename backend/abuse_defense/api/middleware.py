"""Middleware: request correlation, access logging, mode tagging, error shaping.

Registration order in ``register_middleware`` (Starlette runs them inside-out):

    ErrorHandlerMiddleware     outermost; unhandled exceptions → 500 {code, message}
    SecurityHeadersMiddleware  nosniff / frame / referrer headers
    EnvironmentMiddleware      X-Abuse-Defense-Env: mock|sandbox|production
    LoggingMiddleware          one ``request_completed`` line per request
    RequestIDMiddleware        registered last, runs first; binds request_id

The request ID is bound into structlog's contextvars, so every structlog
line emitted while handling the request (route logs included) carries it.

Called by: main.py (``register_middleware()``)
Depends on: config.py (Settings)
"""

from __future__ import annotations

import time
import uuid

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from abuse_defense.config import get_settings

logger = structlog.get_logger()

ENV_HEADER = "X-Abuse-Defense-Env"
REQUEST_ID_HEADER = "X-Request-ID"

# Refusals worth seeing at WARNING: bad credentials, blocked accounts and denied admin calls.
_WARN_STATUSES = frozenset({401, 403})


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's request ID (the web app forwards its own) or mint one."""

    async def dispatch(self, request: Request, call_next):  # noqa: ANN001
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Access log with latency; 401/403 refusals are logged at WARNING."""

    async def dispatch(self, request: Request, call_next):  # noqa: ANN001
        start = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000, 2)

        log = logger.warning if response.status_code in _WARN_STATUSES else logger.info
        log(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=duration_ms,
        )
        return response


class EnvironmentMiddleware(BaseHTTPMiddleware):
    """Tag every response with the active APP_MODE."""

    async def dispatch(self, request: Request, call_next):  # noqa: ANN001
        response = await call_next(request)
        response.headers[ENV_HEADER] = get_settings().app_mode
        return response


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turn unhandled exceptions into the same ``detail`` shape routes use."""

    async def dispatch(self, request: Request, call_next):  # noqa: ANN001
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", None)
            logger.exception(
                "unhandled_error",
                error=str(exc),
                path=request.url.path,
                request_id=request_id,
            )
            headers = {REQUEST_ID_HEADER: request_id} if request_id else None
            return JSONResponse(
                status_code=500,
                content={
                    "detail": {
                        "code": "INTERNAL_ERROR",
                        "message": "The abuse check could not be completed. Please retry shortly.",
                    }
                },
                headers=headers,
            )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # noqa: ANN001
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        return response


def register_middleware(app: FastAPI) -> None:
    """Attach the middleware stack to ``app``; see the module docstring for order."""
    for middleware in (
        ErrorHandlerMiddleware,
        SecurityHeadersMiddleware,
        EnvironmentMiddleware,
        LoggingMiddleware,
        RequestIDMiddleware,
    ):
        app.add_middleware(middleware)
