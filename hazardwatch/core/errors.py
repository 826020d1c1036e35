"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Error kinds and where they end up:

    Kind                    Raised by                 Handled by
    ─────────────────────   ───────────────────────   ──────────────────────────
    ConfigurationError      LiveMatcher.start         caller (never retried)
    TransientFeedError      feed subscriptions        LiveMatcher / FanoutWorker
                                                      (resubscribe with backoff)
    FeedConnectivityError   LiveMatcher / worker      UI layer / operator log
    BatchTransportFailure   NotificationSender.send   FanoutDispatcher (retry,
                                                      then drop-and-report)

Per-address delivery failures are plain records (alerts.models.DeliveryFailure),
never exceptions, so one rejected token cannot abort its batch.

Usage:
    from hazardwatch.core.errors import ConfigurationError, register_error_handlers

    raise ConfigurationError("Watcher location is unknown", field="location")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hazardwatch.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class HazardWatchError(Exception):
    """Root of every error this service raises on purpose."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str = "Unexpected hazard service error",
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Envelope body; also sent verbatim over WebSocket sessions."""
        body: Dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
            "status": self.status_code,
        }
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(HazardWatchError):
    """Unknown hazard, report or subscriber (404)."""

    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(
            f"{resource} not found",
            details={"resource": resource, **identifiers},
        )


class _FieldError(HazardWatchError):
    status_code = 422

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class ValidationError(_FieldError):
    """A report or request is missing something it needs (422)."""

    error_code = "VALIDATION_ERROR"


class ConfigurationError(_FieldError):
    """Missing/invalid watcher id, location or radius at subscribe time (422)."""

    error_code = "CONFIGURATION_ERROR"


class TransientFeedError(HazardWatchError):
    """A feed change subscription dropped; recoverable by resubscribing."""

    status_code = 503
    error_code = "FEED_UNAVAILABLE"

    def __init__(self, message: str = "Feed subscription dropped", **details: Any):
        super().__init__(message, details=details)


class FeedConnectivityError(HazardWatchError):
    """Resubscription retries exhausted (503)."""

    status_code = 503
    error_code = "FEED_CONNECTIVITY_LOST"

    def __init__(self, consumer: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(
            f"Feed connectivity lost for '{consumer}' "
            f"after {attempts} resubscription attempt(s)",
            details={
                "consumer": consumer,
                "attempts": attempts,
                "cause": str(cause) if cause else None,
            },
        )
        self.consumer = consumer
        self.attempts = attempts


class BatchTransportFailure(HazardWatchError):
    """Push transport rejected or failed a whole batch (502)."""

    status_code = 502
    error_code = "BATCH_TRANSPORT_FAILURE"

    def __init__(self, message: str = "", *, provider: str = "push", **details: Any):
        super().__init__(
            f"Push transport '{provider}' failed: {message}",
            details={"provider": provider, **details},
        )


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def _error_response(error: Dict[str, Any], request: Request) -> JSONResponse:
    if not settings.is_production:
        error = {**error, "path": request.url.path, "method": request.method}
    return JSONResponse(status_code=error["status"], content={"error": error})


def register_error_handlers(app: FastAPI) -> None:
    """Map HazardWatchError, ValueError and anything unexpected to the envelope."""

    @app.exception_handler(HazardWatchError)
    async def on_hazardwatch_error(request: Request, exc: HazardWatchError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "%s on %s: %s", exc.error_code, request.url.path, exc.message,
            extra={"status_code": exc.status_code, "endpoint": request.url.path},
        )
        return _error_response(exc.to_dict(), request)

    @app.exception_handler(ValueError)
    async def on_value_error(request: Request, exc: ValueError):
        # Coordinate(...) and friends reject bad input with plain ValueError
        logger.warning("Rejected input on %s: %s", request.url.path, exc)
        return _error_response(
            {"code": "VALIDATION_ERROR", "message": str(exc), "status": 422},
            request,
        )

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled %s on %s\n%s",
            type(exc).__name__, request.url.path, traceback.format_exc(),
            extra={"status_code": 500, "endpoint": request.url.path},
        )
        return _error_response(
            {
                "code": "INTERNAL_ERROR",
                "message": str(exc) if settings.DEBUG else "Internal server error",
                "status": 500,
            },
            request,
        )
