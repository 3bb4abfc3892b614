"""
HTTP request logging middleware.

Binds a request id for the lifetime of each request, echoes it back in
``x-request-id`` and writes one ``http_request`` event per request. Relay
routes that start a submission also get the ``tx_id`` from the pipeline's
own bound context, so the two can be joined on ``request_id``.
"""

import time
import uuid
from typing import Iterable, Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

logger = structlog.stdlib.get_logger("relayer.http")

REQUEST_ID_HEADER = "x-request-id"

# Polled by load balancers; logged at debug only
DEFAULT_QUIET_PATHS = ("/health",)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log relay API requests with timing, status and rejection reason."""

    def __init__(self, app: ASGIApp, quiet_paths: Optional[Iterable[str]] = None):
        super().__init__(app)
        self.quiet_paths = frozenset(DEFAULT_QUIET_PATHS if quiet_paths is None else quiet_paths)

    def _level(self, path: str, status_code: int):
        if status_code >= 500:
            return logger.error
        if status_code >= 400:
            return logger.warning
        if path in self.quiet_paths:
            return logger.debug
        return logger.info

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        start = time.perf_counter()
        status_code = 500
        rate_limit_remaining = None

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            try:
                response = await call_next(request)
                status_code = response.status_code
                rate_limit_remaining = response.headers.get("X-RateLimit-Remaining")
                response.headers[REQUEST_ID_HEADER] = request_id
                return response
            finally:
                path = request.url.path
                self._level(path, status_code)(
                    "http_request",
                    method=request.method,
                    path=path,
                    status=status_code,
                    duration_ms=round((time.perf_counter() - start) * 1000, 1),
                    client=request.client.host if request.client else None,
                    rate_limit_remaining=rate_limit_remaining,
                )
