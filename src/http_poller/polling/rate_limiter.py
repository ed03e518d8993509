"""
Rate limiting for the polling system.

This module provides client-side admission control so polling stays under
upstream quotas. Four algorithms are available; every limiter exposes the
same ``admit`` call, which answers yes or no and never raises.
"""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from typing import Any, Protocol

import structlog

from ..config import RateLimitAlgorithm, SourceConfig

logger = structlog.get_logger(__name__)


class SleepFunc(Protocol):
    """Protocol for injectable sleep function."""

    async def __call__(self, seconds: float) -> None: ...


class AdmissionAlgorithm(ABC):
    """Algorithm-specific admission state."""

    @abstractmethod
    def reserve(self, now: float, max_wait: float) -> tuple[bool, float]:
        """
        Try to reserve capacity for one request.

        Args:
            now: Current clock reading in seconds
            max_wait: Longest the caller is willing to wait

        Returns:
            ``(True, delay)`` when the request is admitted and must proceed
            after ``delay`` seconds, or ``(False, retry_after)`` when capacity
            may free up after ``retry_after`` seconds (``inf`` for never).
        """

    @abstractmethod
    def available(self, now: float) -> float:
        """Approximate capacity available right now."""


class TokenBucket(AdmissionAlgorithm):
    """Bucket of ``capacity`` tokens refilled continuously at ``rate``."""

    def __init__(self, rate: float, capacity: int, now: float) -> None:
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity)
        self.updated_at = now

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.updated_at)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.updated_at = now

    def reserve(self, now: float, max_wait: float) -> tuple[bool, float]:
        self._refill(now)
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True, 0.0
        return False, (1.0 - self.tokens) / self.rate

    def available(self, now: float) -> float:
        self._refill(now)
        return self.tokens


class SlidingWindow(AdmissionAlgorithm):
    """Admits while fewer than ``limit`` requests fall in the trailing window."""

    def __init__(self, limit: int, window_seconds: float) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self.admitted: deque[float] = deque()

    def _purge(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self.admitted and self.admitted[0] <= horizon:
            self.admitted.popleft()

    def reserve(self, now: float, max_wait: float) -> tuple[bool, float]:
        self._purge(now)
        if len(self.admitted) < self.limit:
            self.admitted.append(now)
            return True, 0.0
        return False, self.admitted[0] + self.window_seconds - now

    def available(self, now: float) -> float:
        self._purge(now)
        return float(self.limit - len(self.admitted))


class FixedWindow(AdmissionAlgorithm):
    """
    Counter reset at each window boundary.

    Bursts straddling a boundary can admit up to twice the limit in one
    window length.
    """

    def __init__(self, limit: int, window_seconds: float) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self.window_start = -math.inf
        self.count = 0

    def _roll(self, now: float) -> None:
        start = math.floor(now / self.window_seconds) * self.window_seconds
        if start != self.window_start:
            self.window_start = start
            self.count = 0

    def reserve(self, now: float, max_wait: float) -> tuple[bool, float]:
        self._roll(now)
        if self.count < self.limit:
            self.count += 1
            return True, 0.0
        return False, self.window_start + self.window_seconds - now

    def available(self, now: float) -> float:
        self._roll(now)
        return float(self.limit - self.count)


class LeakyBucket(AdmissionAlgorithm):
    """
    Queue drained at a fixed ``rate``.

    Each admission reserves the next drain slot, so callers leave the queue
    evenly spaced. When ``capacity`` slots are already reserved the queue is
    full and the request is refused outright.
    """

    def __init__(self, rate: float, capacity: int) -> None:
        self.interval = 1.0 / rate
        self.capacity = capacity
        self.next_free = -math.inf

    def reserve(self, now: float, max_wait: float) -> tuple[bool, float]:
        slot = max(now, self.next_free)
        delay = slot - now
        if delay >= self.capacity * self.interval:
            return False, math.inf
        if delay > max_wait:
            return False, delay
        self.next_free = slot + self.interval
        return True, delay

    def available(self, now: float) -> float:
        queued = max(0.0, self.next_free - now) / self.interval
        return max(0.0, self.capacity - queued)


class RateLimiter:
    """
    Admission gate for one target.

    ``admit`` returns True when the caller may issue a request and False
    when it should skip this cycle. The internal lock is never held while
    sleeping.
    """

    def __init__(
        self,
        name: str,
        algorithm: AdmissionAlgorithm,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.name = name
        self.algorithm = algorithm
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._stats = {"total": 0, "allowed": 0, "denied": 0}

    async def admit(self, timeout: float | None = None) -> bool:
        """
        Ask for permission to issue one request.

        Args:
            timeout: Seconds the caller will wait for capacity; None or 0
                means answer immediately

        Returns:
            True if admitted, False if denied
        """
        deadline = self._clock() + (timeout or 0.0)

        while True:
            async with self._lock:
                now = self._clock()
                remaining = max(0.0, deadline - now)
                admitted, wait = self.algorithm.reserve(now, remaining)

                if admitted:
                    self._stats["total"] += 1
                    self._stats["allowed"] += 1
                elif wait > remaining or remaining <= 0:
                    self._stats["total"] += 1
                    self._stats["denied"] += 1
                    logger.debug(
                        "Rate limit denied request",
                        limiter=self.name,
                        retry_after_seconds=wait,
                    )
                    return False

            if admitted:
                if wait > 0:
                    await self._sleep(wait)
                return True

            await self._sleep(wait)

    def statistics(self) -> dict[str, Any]:
        """Get admission statistics."""
        total = self._stats["total"]
        return {
            "name": self.name,
            "algorithm": type(self.algorithm).__name__,
            **self._stats,
            "available": round(self.algorithm.available(self._clock()), 3),
            "denial_rate_percent": (
                round(self._stats["denied"] / total * 100, 2) if total else 0.0
            ),
        }


def create_rate_limiter(
    source: SourceConfig,
    clock: Callable[[], float] = time.monotonic,
    sleep: SleepFunc = asyncio.sleep,
) -> RateLimiter:
    """
    Build a rate limiter from a source's options.

    Args:
        source: Source configuration
        clock: Monotonic clock in seconds
        sleep: Async sleep used while waiting for capacity

    Returns:
        Configured rate limiter
    """
    rate = source.rate_limit_requests_per_second
    window_seconds = source.rate_limit_window_ms / 1000.0
    window_limit = max(1, int(rate * window_seconds))
    algorithm_name = source.rate_limit_algorithm

    algorithm: AdmissionAlgorithm
    if algorithm_name == RateLimitAlgorithm.TOKEN_BUCKET:
        algorithm = TokenBucket(rate, source.burst_size, clock())
    elif algorithm_name == RateLimitAlgorithm.SLIDING_WINDOW:
        algorithm = SlidingWindow(window_limit, window_seconds)
    elif algorithm_name == RateLimitAlgorithm.FIXED_WINDOW:
        algorithm = FixedWindow(window_limit, window_seconds)
    else:
        algorithm = LeakyBucket(rate, source.burst_size)

    logger.info(
        "Rate limiter created",
        target=source.target_key,
        algorithm=algorithm_name.value,
        requests_per_second=rate,
    )
    return RateLimiter(source.target_key, algorithm, clock=clock, sleep=sleep)


class RateLimitManager:
    """
    Hands out one rate limiter per target.

    Sources that hit the same upstream share a limiter; the first source
    registered for a target decides its tuning.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._limiters: dict[str, RateLimiter] = {}

    def get_limiter(self, source: SourceConfig) -> RateLimiter:
        """Get or create the limiter for a source's target."""
        limiter = self._limiters.get(source.target_key)
        if limiter is None:
            limiter = create_rate_limiter(source, self._clock, self._sleep)
            self._limiters[source.target_key] = limiter
        return limiter

    def statistics(self) -> dict[str, dict[str, Any]]:
        """Get statistics for every limiter."""
        return {
            target: limiter.statistics() for target, limiter in self._limiters.items()
        }
