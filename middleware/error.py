"""
certproxy.middleware.error
~~~~~~~~~~~~~~~~~~~~~~~~~~
Error plumbing for the FastAPI app:

• ErrorMiddleware catches all uncaught exceptions, logs the stack trace via
  loguru, sends the event to Sentry (if SENTRY_DSN is present) and returns a
  uniform JSON error with an error-id
• register_exception_handlers() maps the service's own errors onto status
  codes (validation → 400, upstream auth → 500, generic message only)

Add to FastAPI before any routes:

    from middleware.error import ErrorMiddleware, register_exception_handlers
    app.add_middleware(ErrorMiddleware)
    register_exception_handlers(app)
"""

from __future__ import annotations

import secrets
import traceback
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from certproxy_log import logger
from errors import AuthenticationError, CertificateValidationError
from settings import settings

try:
    import sentry_sdk  # lazy import
except ImportError:  # Sentry optional
    sentry_sdk = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def error_body(message: str, exc: BaseException | None = None, **extra: Any) -> dict:
    """Uniform error payload; stack traces only when DEBUG is on."""
    body: dict[str, Any] = {"error": message, **extra}
    if exc is not None and settings.debug:
        body["trace"] = "".join(traceback.format_exception(exc))
    return body


class ErrorMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp):
        super().__init__(app)
        if sentry_sdk and settings.sentry_dsn:
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.0,
                environment=settings.env,
            )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except Exception as exc:  # pylint: disable=broad-except
            error_id = secrets.token_hex(8)
            logger.exception(f"Unhandled exception [{error_id}] on {request.url.path}")

            if sentry_sdk and settings.sentry_dsn:
                with sentry_sdk.new_scope() as scope:
                    scope.set_tag("error_id", error_id)
                    scope.set_tag("path", request.url.path)
                    sentry_sdk.capture_exception(exc)

            payload = error_body("Internal Server Error", exc, error_id=error_id, timestamp=_now())
            return JSONResponse(payload, status_code=500)


async def _validation_handler(request: Request, exc: CertificateValidationError) -> JSONResponse:
    logger.info(f"Rejected request on {request.url.path}: {exc}")
    return JSONResponse(error_body(str(exc)), status_code=400)


async def _auth_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    # full reason stays in the log; callers get a generic message
    error_id = secrets.token_hex(8)
    logger.error(f"Upstream authentication failed [{error_id}]: {exc}")
    return JSONResponse(
        error_body("upstream authentication failed", exc, error_id=error_id, timestamp=_now()),
        status_code=500,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CertificateValidationError, _validation_handler)
    app.add_exception_handler(AuthenticationError, _auth_handler)
