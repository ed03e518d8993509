"""
Circuit breaker for the polling system.

This module stops polls from hammering an upstream that keeps failing.
After enough consecutive failures the breaker opens; once the open timeout
elapses a single trial request is let through to probe recovery.
"""

import asyncio
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

import structlog

from ..config import SourceConfig

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    """Breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class BreakerDecision(str, Enum):
    """Answer to ``CircuitBreaker.allow``."""

    ALLOWED = "ALLOWED"
    REJECTED = "REJECTED"
    WAIT = "WAIT"


class CircuitBreaker:
    """
    Three-state circuit breaker for one target.

    Only one trial is in flight while HALF_OPEN; other callers get WAIT.
    A trial whose outcome is never recorded expires after
    ``recovery_seconds`` so a lost worker cannot wedge the breaker.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout_seconds: float = 60.0,
        recovery_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at: float | None = None
        self._trial_started_at: float | None = None
        self._stats = {"successes": 0, "failures": 0, "rejections": 0, "opens": 0}

    async def allow(self) -> BreakerDecision:
        """
        Decide whether a request may be issued now.

        Returns:
            ALLOWED, REJECTED while open, or WAIT while another caller holds
            the half-open trial
        """
        async with self._lock:
            now = self._clock()

            if self.state == CircuitState.CLOSED:
                return BreakerDecision.ALLOWED

            if self.state == CircuitState.OPEN:
                if self.opened_at is not None and (
                    now - self.opened_at < self.timeout_seconds
                ):
                    self._stats["rejections"] += 1
                    return BreakerDecision.REJECTED
                self._transition(CircuitState.HALF_OPEN)
                self._trial_started_at = now
                return BreakerDecision.ALLOWED

            if self._trial_started_at is not None and (
                now - self._trial_started_at < self.recovery_seconds
            ):
                return BreakerDecision.WAIT

            self._trial_started_at = now
            return BreakerDecision.ALLOWED

    async def record_success(self) -> None:
        """Record a successful request."""
        async with self._lock:
            self._stats["successes"] += 1
            self.consecutive_failures = 0
            self._trial_started_at = None
            if self.state != CircuitState.CLOSED:
                self.opened_at = None
                self._transition(CircuitState.CLOSED)

    async def record_failure(self) -> None:
        """Record a failed request."""
        async with self._lock:
            self._stats["failures"] += 1
            self.consecutive_failures += 1
            self._trial_started_at = None

            if self.state == CircuitState.HALF_OPEN or (
                self.state == CircuitState.CLOSED
                and self.consecutive_failures >= self.failure_threshold
            ):
                self.opened_at = self._clock()
                self._stats["opens"] += 1
                self._transition(CircuitState.OPEN)

    async def release(self) -> None:
        """Hand back a half-open trial that was never used (e.g. cache hit)."""
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self._trial_started_at = None

    async def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        async with self._lock:
            self.consecutive_failures = 0
            self.opened_at = None
            self._trial_started_at = None
            if self.state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    def remaining_open_seconds(self) -> float:
        """Seconds until an open breaker admits a trial; 0 unless OPEN."""
        if self.state != CircuitState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.opened_at + self.timeout_seconds - self._clock())

    def status(self) -> dict[str, Any]:
        """Get breaker status for monitoring."""
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "remaining_open_seconds": round(self.remaining_open_seconds(), 3),
            **self._stats,
        }

    def _transition(self, new_state: CircuitState) -> None:
        logger.info(
            "Circuit breaker state changed",
            breaker=self.name,
            from_state=self.state.value,
            to_state=new_state.value,
            consecutive_failures=self.consecutive_failures,
        )
        self.state = new_state


class CircuitBreakerRegistry:
    """Shares one circuit breaker per target."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_breaker(self, source: SourceConfig) -> CircuitBreaker:
        """Get or create the breaker for a source's target."""
        breaker = self._breakers.get(source.target_key)
        if breaker is None:
            breaker = CircuitBreaker(
                source.target_key,
                failure_threshold=source.circuit_breaker_failure_threshold,
                timeout_seconds=source.circuit_breaker_timeout_ms / 1000.0,
                recovery_seconds=source.circuit_breaker_recovery_time_ms / 1000.0,
                clock=self._clock,
            )
            self._breakers[source.target_key] = breaker
        return breaker

    def status(self) -> dict[str, dict[str, Any]]:
        """Get status of every breaker."""
        return {name: breaker.status() for name, breaker in self._breakers.items()}
