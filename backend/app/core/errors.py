"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Delivery failure taxonomy:
    ChannelNotFoundError      (a) no registered implementation for the type
    RecipientUnresolvedError  (b) no usable address could be derived
    ChannelSendError          (c) the channel itself rejected / failed
    StoreUnavailableError     (d) persistence layer is down

(a)–(c) are consumed by the delivery worker and routed through the retry
policy; (d) propagates to the caller and the next scheduled tick retries.

Usage:
    from backend.app.core.errors import ChannelNotFoundError

    raise ChannelNotFoundError("slack")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class NotificationServiceError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(NotificationServiceError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(NotificationServiceError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class ConfigValidationError(ValidationError):
    """Channel configuration does not match its definition."""

    def __init__(self, channel_type: str, message: str, *, field: Optional[str] = None):
        super().__init__(
            f"Invalid configuration for '{channel_type}': {message}",
            field=field,
            channel=channel_type,
        )
        self.error_code = "CHANNEL_CONFIG_INVALID"


class DeliveryError(NotificationServiceError):
    """A single delivery attempt failed; consumes one retry."""


class ChannelNotFoundError(DeliveryError):
    """No channel implementation registered for the type (404)."""

    def __init__(self, channel_type: str):
        super().__init__(
            message=f"channel not found: {channel_type}",
            status_code=404,
            error_code="CHANNEL_NOT_FOUND",
            details={"channel": channel_type},
        )
        self.channel_type = channel_type


class RecipientUnresolvedError(DeliveryError):
    """No address / identifier could be derived for the entry."""

    def __init__(self, channel_type: str, user_id: Optional[int] = None):
        super().__init__(
            message=f"recipient not found for channel {channel_type}",
            status_code=422,
            error_code="RECIPIENT_UNRESOLVED",
            details={"channel": channel_type, "user_id": user_id},
        )


class ChannelSendError(DeliveryError):
    """The channel implementation failed to deliver (502)."""

    def __init__(self, channel_type: str, message: str = "", **details: Any):
        super().__init__(
            message=message or f"{channel_type} delivery failed",
            status_code=502,
            error_code="CHANNEL_SEND_FAILED",
            details={"channel": channel_type, **details},
        )
        self.channel_type = channel_type


class StoreUnavailableError(NotificationServiceError):
    """Persistence layer unavailable (503). Never retried by the queue itself."""

    def __init__(self, operation: str, message: str = ""):
        super().__init__(
            message=f"Store unavailable during {operation}: {message}",
            status_code=503,
            error_code="STORE_UNAVAILABLE",
            details={"operation": operation},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(NotificationServiceError)
    async def handle_service_error(request: Request, exc: NotificationServiceError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
