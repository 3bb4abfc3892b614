from .logging_middleware import RequestLoggingMiddleware
from .rate_limit import (
    RateLimiter,
    RateLimitExceeded,
    RateLimitMiddleware,
)

__all__ = [
    "RequestLoggingMiddleware",
    "RateLimiter",
    "RateLimitExceeded",
    "RateLimitMiddleware",
]
