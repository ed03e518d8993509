"""
Polling system for the HTTP poller.

This package contains the polling pipeline: caching, rate limiting,
circuit breaking, pagination, offset tracking and scheduling.
"""

from .cache import CacheNamespace, CacheStore
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from .offset_tracker import OffsetTracker
from .orchestrator import PollingOrchestrator
from .pagination import PageRequest, PageState, PaginationEngine
from .rate_limiter import RateLimiter, RateLimitManager
from .scheduler import PollScheduler

__all__ = [
    "CacheNamespace",
    "CacheStore",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "OffsetTracker",
    "PageRequest",
    "PageState",
    "PaginationEngine",
    "PollScheduler",
    "PollingOrchestrator",
    "RateLimitManager",
    "RateLimiter",
]
