"""Infrastructure components for caching, rate limiting, persistence and error handling."""

from .cache import TTLCache, CacheKeys
from .database import ExecutionJournal
from .error_handling import (
    CircuitBreaker,
    async_retry_with_backoff,
    ErrorHandler,
)
from .rate_limiter import RateLimiter

__all__ = [
    "TTLCache",
    "CacheKeys",
    "ExecutionJournal",
    "CircuitBreaker",
    "async_retry_with_backoff",
    "ErrorHandler",
    "RateLimiter",
]
