"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the escalation engine
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Every error here is terminal for the call that raised it. The core never
retries; retrying a whole operation is the caller's decision.

Usage:
    from backend.app.core.errors import AlertClosedError, NotFoundError

    raise NotFoundError("Alert", alert_id="ALR-3F9A0C1D2E4B")
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

class AlertRunError(Exception):
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


class UnauthenticatedError(AlertRunError):
    """No resolvable calling identity (401)."""

    def __init__(self, operation: str = ""):
        super().__init__(
            message="Authentication required",
            status_code=401,
            error_code="UNAUTHENTICATED",
            details={"operation": operation} if operation else None,
        )


class NotFoundError(AlertRunError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class UnauthorizedError(AlertRunError):
    """Caller is not the alert's original reporter (403)."""

    def __init__(self, action: str, **details: Any):
        super().__init__(
            message=f"Only the original reporter may {action}",
            status_code=403,
            error_code="UNAUTHORIZED",
            details={"action": action, **details},
        )


class AlertClosedError(AlertRunError):
    """Tap recorded against a resolved / false-alarm alert (409)."""

    def __init__(self, alert_id: str, status: str):
        super().__init__(
            message=f"Alert {alert_id} is closed ({status})",
            status_code=409,
            error_code="ALERT_CLOSED",
            details={"alert_id": alert_id, "status": status},
        )


class InvalidLocationError(AlertRunError):
    """Missing or unusable coordinate (422)."""

    def __init__(self, message: str = "A valid location is required", **details: Any):
        super().__init__(
            message=message,
            status_code=422,
            error_code="INVALID_LOCATION",
            details=details,
        )


class ValidationError(AlertRunError):
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

    @app.exception_handler(AlertRunError)
    async def handle_alertrun_error(request: Request, exc: AlertRunError):
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
