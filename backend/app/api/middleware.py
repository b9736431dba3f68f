"""
Request middleware — one access-log line per request, tagged with the caller.

The caller is resolved with the same ``HeaderIdentityProvider`` the routes
use, so log lines and authorisation never disagree about who called. Alert
routes also tag the line with the ``alert_id`` they were routed with.

Responses carry ``X-Request-ID`` (echoed when the client sent one) so a
client report can be matched to its log entries.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.api.deps import HeaderIdentityProvider
from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")


def _routed_alert_id(request: Request) -> Optional[str]:
    # Filled in by the router once call_next has matched a route
    return request.scope.get("path_params", {}).get("alert_id")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Set the request log context and write the access-log line."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        header = request.app.state.settings.IDENTITY_HEADER
        caller_id = HeaderIdentityProvider(request, header).current_identity()
        path = request.url.path

        set_request_context(
            request_id=request_id,
            endpoint=path,
            method=request.method,
            caller_id=caller_id,
        )
        start = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            if not path.startswith(QUIET_PREFIXES):
                duration_ms = (time.perf_counter() - start) * 1000
                logger.log(
                    logging.WARNING if response.status_code >= 400 else logging.INFO,
                    "%s %s by %s → %d (%.1fms)",
                    request.method, path, caller_id or "anonymous",
                    response.status_code, duration_ms,
                    extra={
                        "alert_id": _routed_alert_id(request),
                        "status_code": response.status_code,
                        "duration_ms": round(duration_ms, 1),
                    },
                )
            return response
        except Exception:
            logger.exception(
                "%s %s by %s failed",
                request.method, path, caller_id or "anonymous",
                extra={"alert_id": _routed_alert_id(request), "status_code": 500},
            )
            raise
        finally:
            set_request_context()
