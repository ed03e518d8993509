"""
Metrics collection and monitoring for the polling system.

This module tracks the outcome of every poll cycle per source and exposes
aggregates for the status API and the adaptive interval policy.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class CycleOutcome(str, Enum):
    """How a poll cycle ended."""

    RECORDS = "records"
    EMPTY = "empty"
    TERMINAL = "terminal"
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    CIRCUIT_WAIT = "circuit_wait"
    TRANSIENT_ERROR = "transient_error"
    UPSTREAM_ERROR = "upstream_error"
    DECODE_ERROR = "decode_error"


ERROR_OUTCOMES = frozenset(
    {
        CycleOutcome.TRANSIENT_ERROR,
        CycleOutcome.UPSTREAM_ERROR,
        CycleOutcome.DECODE_ERROR,
    }
)


@dataclass
class CycleMetrics:
    """Metrics for a single poll cycle."""

    source_key: str
    cycle_id: int
    start_time: datetime
    end_time: datetime | None = None
    outcome: CycleOutcome | None = None
    records: int = 0
    cache_hit: bool | None = None
    error: str | None = None

    @property
    def duration_seconds(self) -> float:
        """Get cycle duration in seconds."""
        if self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0


@dataclass
class SourceMetrics:
    """Running totals for one source."""

    source_key: str
    total_cycles: int = 0
    total_records: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    consecutive_empty_cycles: int = 0
    average_cycle_duration: float = 0.0
    last_cycle_time: datetime | None = None
    last_error: str | None = None
    outcomes: dict[str, int] = field(
        default_factory=lambda: {outcome.value: 0 for outcome in CycleOutcome}
    )

    @property
    def cache_hit_ratio(self) -> float:
        """Share of cache lookups that hit, between 0 and 1."""
        total = self.cache_hits + self.cache_misses
        return self.cache_hits / total if total > 0 else 0.0

    @property
    def error_count(self) -> int:
        return sum(self.outcomes[outcome.value] for outcome in ERROR_OUTCOMES)

    def update(self, cycle: CycleMetrics) -> None:
        """Fold a completed cycle into the totals."""
        self.total_cycles += 1
        self.total_records += cycle.records
        self.last_cycle_time = cycle.end_time

        self.average_cycle_duration = (
            self.average_cycle_duration * (self.total_cycles - 1)
            + cycle.duration_seconds
        ) / self.total_cycles

        if cycle.cache_hit is True:
            self.cache_hits += 1
        elif cycle.cache_hit is False:
            self.cache_misses += 1

        if cycle.outcome is not None:
            self.outcomes[cycle.outcome.value] += 1

        if cycle.records > 0:
            self.consecutive_empty_cycles = 0
        elif cycle.outcome in {CycleOutcome.EMPTY, CycleOutcome.TERMINAL}:
            self.consecutive_empty_cycles += 1

        if cycle.error:
            self.last_error = cycle.error


class MetricsCollector:
    """
    Central metrics collector for the polling system.

    Shared by every worker; cycles are recorded once they finish.
    """

    def __init__(self, max_history: int = 100) -> None:
        self.start_time = datetime.now()
        self.source_metrics: dict[str, SourceMetrics] = {}
        self.cycle_history: deque[CycleMetrics] = deque(maxlen=max_history)
        self._cycle_counter = 0

    def start_cycle(self, source_key: str) -> CycleMetrics:
        """Start metrics for a new cycle."""
        self._cycle_counter += 1
        return CycleMetrics(
            source_key=source_key,
            cycle_id=self._cycle_counter,
            start_time=datetime.now(),
        )

    def end_cycle(
        self,
        cycle: CycleMetrics,
        outcome: CycleOutcome,
        records: int = 0,
        error: str | None = None,
    ) -> CycleMetrics:
        """Finish a cycle and fold it into the source totals."""
        cycle.end_time = datetime.now()
        cycle.outcome = outcome
        cycle.records = records
        cycle.error = error

        self.get_source_metrics(cycle.source_key).update(cycle)
        self.cycle_history.append(cycle)

        logger.debug(
            "Poll cycle recorded",
            source=cycle.source_key,
            cycle_id=cycle.cycle_id,
            outcome=outcome.value,
            records=records,
            duration=cycle.duration_seconds,
        )
        return cycle

    def get_source_metrics(self, source_key: str) -> SourceMetrics:
        """Get or create the totals for a source."""
        if source_key not in self.source_metrics:
            self.source_metrics[source_key] = SourceMetrics(source_key=source_key)
        return self.source_metrics[source_key]

    def get_source_summary(self, source_key: str) -> dict[str, Any]:
        """Get summary metrics for one source."""
        metrics = self.get_source_metrics(source_key)
        return {
            "total_cycles": metrics.total_cycles,
            "total_records": metrics.total_records,
            "cache_hit_ratio": round(metrics.cache_hit_ratio, 3),
            "consecutive_empty_cycles": metrics.consecutive_empty_cycles,
            "average_cycle_duration": metrics.average_cycle_duration,
            "last_cycle": (
                metrics.last_cycle_time.isoformat()
                if metrics.last_cycle_time
                else None
            ),
            "last_error": metrics.last_error,
            "error_count": metrics.error_count,
            "outcomes": dict(metrics.outcomes),
        }

    def get_global_summary(self) -> dict[str, Any]:
        """Get global polling metrics summary."""
        uptime_seconds = (datetime.now() - self.start_time).total_seconds()
        total_cycles = sum(m.total_cycles for m in self.source_metrics.values())
        total_errors = sum(m.error_count for m in self.source_metrics.values())

        return {
            "uptime_seconds": uptime_seconds,
            "total_cycles": total_cycles,
            "total_records": sum(
                m.total_records for m in self.source_metrics.values()
            ),
            "total_errors": total_errors,
            "error_rate": (
                (total_errors / total_cycles * 100) if total_cycles > 0 else 0
            ),
            "sources": len(self.source_metrics),
        }

    def get_health_indicators(self) -> dict[str, Any]:
        """Get health indicators for monitoring."""
        recent = list(self.cycle_history)[-20:]
        recent_errors = sum(1 for cycle in recent if cycle.outcome in ERROR_OUTCOMES)

        # Health scoring (0-100)
        health_score = 100.0
        if recent:
            health_score -= min(recent_errors / len(recent) * 100, 100)

        if health_score >= 90:
            status = "excellent"
        elif health_score >= 75:
            status = "good"
        elif health_score >= 50:
            status = "fair"
        elif health_score >= 25:
            status = "poor"
        else:
            status = "critical"

        return {
            "status": status,
            "health_score": max(0.0, health_score),
            "recent_error_count": recent_errors,
            "last_cycle_time": (
                recent[-1].end_time.isoformat()
                if recent and recent[-1].end_time
                else None
            ),
        }
