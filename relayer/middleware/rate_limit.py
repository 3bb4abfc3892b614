"""
Rate limiting middleware.

Fixed-window limiter keyed by client address, kept in process memory. Each
client gets ``limit`` requests per window; the window starts at the client's
first request.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from relayer.config import settings


class RateLimitExceeded(Exception):
    """Rate limit has been exceeded."""
    def __init__(self, limit: int, window_seconds: int, retry_after: int):
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded: {limit} requests per {window_seconds}s")


@dataclass
class WindowState:
    started_at: float
    count: int = 0


class RateLimiter:
    """In-memory fixed-window rate limiter."""

    def __init__(
        self,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit or settings.rate_limit_requests
        self.window_seconds = window_seconds or settings.rate_limit_window_seconds
        self._clock = clock
        self._windows: Dict[str, WindowState] = {}
        self._lock = asyncio.Lock()

    async def check_limit(self, key: str) -> int:
        """
        Count a request against ``key``.

        Returns:
            Requests left in the current window

        Raises:
            RateLimitExceeded: When the window is used up
        """
        async with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now - window.started_at >= self.window_seconds:
                window = WindowState(started_at=now)
                self._windows[key] = window
                self._evict_expired(now)

            if window.count >= self.limit:
                retry_after = max(1, math.ceil(window.started_at + self.window_seconds - now))
                raise RateLimitExceeded(self.limit, self.window_seconds, retry_after)

            window.count += 1
            return self.limit - window.count

    def _evict_expired(self, now: float) -> None:
        expired = [
            key for key, window in self._windows.items()
            if now - window.started_at >= self.window_seconds
        ]
        for key in expired:
            del self._windows[key]

    async def check_request(self, request: Request) -> int:
        identifier = request.client.host if request.client else "unknown"
        return await self.check_limit(identifier)

    async def reset(self) -> None:
        async with self._lock:
            self._windows.clear()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware for rate limiting.
    """

    def __init__(
        self,
        app,
        rate_limiter: Optional[RateLimiter] = None,
        exclude_paths: Optional[List[str]] = None,
    ):
        super().__init__(app)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.exclude_paths = exclude_paths or [
            "/docs",
            "/redoc",
            "/openapi.json",
            "/health",
        ]

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        path = request.url.path
        if request.method == "OPTIONS" or any(path.startswith(p) for p in self.exclude_paths):
            return await call_next(request)

        try:
            remaining = await self.rate_limiter.check_request(request)
        except RateLimitExceeded as e:
            return JSONResponse(
                content={"error": "Too many requests, please try again later", "retryAfter": e.retry_after},
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                headers={
                    "Retry-After": str(e.retry_after),
                    "X-RateLimit-Limit": str(e.limit),
                    "X-RateLimit-Window": str(e.window_seconds),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.rate_limiter.limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response
