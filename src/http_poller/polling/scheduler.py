"""
Poll scheduler for the polling system.

This module runs one poll cycle of a source: admission, circuit check,
cache lookup, fetch, pagination advance and offset commit, in that order.
It also decides how long to wait before the next cycle.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from ..config import ErrorBehavior, PaginationStrategy, SourceConfig
from ..exceptions import (
    CacheCorruptionError,
    ResponseDecodeError,
    TransientNetworkError,
    UpstreamRejection,
)
from ..records import SourceRecord, decode, parse_document
from .cache import MISS, CacheNamespace, CacheStore
from .circuit_breaker import BreakerDecision, CircuitBreaker
from .metrics import CycleMetrics, CycleOutcome, MetricsCollector
from .offset_tracker import OffsetTracker
from .pagination import LinkKind, Page, PageRequest, PaginationEngine, advance
from .rate_limiter import RateLimiter

if TYPE_CHECKING:
    from ..client import Fetcher

logger = structlog.get_logger(__name__)

POLLED_OUTCOMES = frozenset(
    {CycleOutcome.RECORDS, CycleOutcome.EMPTY, CycleOutcome.TERMINAL}
)


class SourceActivity:
    """Tracks activity of a source to adapt its poll cadence."""

    def __init__(self, source_key: str):
        self.source_key = source_key
        self.last_poll_time: datetime | None = None
        self.consecutive_empty_polls = 0
        self.total_polls = 0
        self.total_records = 0
        self.last_activity_detected: datetime | None = None
        self.activity_score = 0.5  # 0.0 = inactive, 1.0 = highly active
        self.cache_hits = 0
        self.cache_lookups = 0

    def update_after_poll(
        self, record_count: int, poll_time: datetime, cache_hit: bool | None = None
    ) -> None:
        """Update activity metrics after a completed poll."""
        self.last_poll_time = poll_time
        self.total_polls += 1

        if cache_hit is not None:
            self.cache_lookups += 1
            self.cache_hits += int(cache_hit)

        if record_count > 0:
            self.total_records += record_count
            self.consecutive_empty_polls = 0
            self.last_activity_detected = poll_time
            self.activity_score = min(1.0, self.activity_score + 0.3)
        else:
            self.consecutive_empty_polls += 1
            self.activity_score = max(0.0, self.activity_score - 0.1)

    @property
    def cache_hit_ratio(self) -> float:
        return self.cache_hits / self.cache_lookups if self.cache_lookups else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "activity_score": round(self.activity_score, 2),
            "consecutive_empty_polls": self.consecutive_empty_polls,
            "total_polls": self.total_polls,
            "total_records": self.total_records,
            "cache_hit_ratio": round(self.cache_hit_ratio, 3),
            "last_poll": (
                self.last_poll_time.isoformat() if self.last_poll_time else None
            ),
            "last_activity": (
                self.last_activity_detected.isoformat()
                if self.last_activity_detected
                else None
            ),
        }


class IntervalPolicy(Protocol):
    """Computes the delay before the next cycle from observed activity."""

    def next_interval(
        self, base_seconds: float, max_seconds: float, activity: SourceActivity
    ) -> float: ...


class FixedIntervalPolicy:
    """Always polls at the base interval."""

    def next_interval(
        self, base_seconds: float, max_seconds: float, activity: SourceActivity
    ) -> float:
        return min(base_seconds, max_seconds)


class ActivityIntervalPolicy:
    """
    Slows polling down for quiet sources.

    The base interval is never shortened. Quiet sources are polled at two to
    four times the base interval, and a high cache hit ratio stretches the
    interval by up to another factor of two.
    """

    def next_interval(
        self, base_seconds: float, max_seconds: float, activity: SourceActivity
    ) -> float:
        if activity.activity_score >= 0.5:
            multiplier = 1.0
        elif activity.activity_score >= 0.2:
            multiplier = 2.0
        elif activity.consecutive_empty_polls >= 5:
            multiplier = 4.0
        else:
            multiplier = 3.0

        multiplier *= 1.0 + activity.cache_hit_ratio
        return min(max_seconds, base_seconds * multiplier)


class PollScheduler:
    """
    Drives the polling pipeline of one source.

    One ``cycle`` is in flight at a time per scheduler; the rate limiter,
    circuit breaker and cache may be shared with other sources.
    """

    def __init__(
        self,
        config: SourceConfig,
        fetcher: "Fetcher",
        cache: CacheStore,
        rate_limiter: RateLimiter,
        breaker: CircuitBreaker,
        offset_tracker: OffsetTracker,
        metrics: MetricsCollector | None = None,
        interval_policy: IntervalPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the poll scheduler.

        Args:
            config: Source configuration
            fetcher: Page fetch capability
            cache: Shared cache store
            rate_limiter: Limiter of the source's target
            breaker: Circuit breaker of the source's target
            offset_tracker: Offset tracker of the source
            metrics: Metrics collector, shared across sources
            interval_policy: Cadence policy; defaults to activity based
            clock: Monotonic clock in seconds
        """
        self.config = config
        self.fetcher = fetcher
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.breaker = breaker
        self.offset_tracker = offset_tracker
        self.metrics = metrics or MetricsCollector()
        self.interval_policy = interval_policy or ActivityIntervalPolicy()
        self._clock = clock

        self.engine = PaginationEngine(config)
        self.activity = SourceActivity(config.source_key)
        self.last_outcome: CycleOutcome | None = None
        self._initialized = False
        self._terminal_since: float | None = None
        self._lock = asyncio.Lock()

    @property
    def source_key(self) -> str:
        return self.config.source_key

    async def initialize(self) -> None:
        """Restore pagination from the committed offset."""
        record = await self.offset_tracker.read()
        if record is not None:
            self.engine.restore(record.offset_value, record.continuation_kind)
        self._initialized = True
        logger.info(
            "Poll scheduler initialized",
            source=self.source_key,
            strategy=self.config.pagination_strategy.value,
            continuation=self.engine.state.continuation_value,
        )

    async def cycle(self) -> list[SourceRecord]:
        """
        Run one poll cycle.

        Returns:
            Records of the page polled, possibly empty

        Raises:
            UpstreamRejection: On a 4xx/5xx when the source fails on errors
            ResponseDecodeError: On an unparseable body when the source
                fails on errors
        """
        async with self._lock:
            return await self._cycle()

    async def _cycle(self) -> list[SourceRecord]:
        if not self._initialized:
            await self.initialize()

        cycle = self.metrics.start_cycle(self.source_key)

        if self.engine.state.terminal:
            if not self._reopen_due():
                return self._finish(cycle, CycleOutcome.TERMINAL)
            self.engine.reopen()
            self._terminal_since = None

        if self.config.rate_limit_enabled:
            admitted = await self.rate_limiter.admit(
                self.config.rate_limit_admit_timeout_ms / 1000.0
            )
            if not admitted:
                return self._finish(cycle, CycleOutcome.RATE_LIMITED)

        decision = await self.breaker.allow()
        if decision == BreakerDecision.REJECTED:
            return self._finish(cycle, CycleOutcome.CIRCUIT_OPEN)
        if decision == BreakerDecision.WAIT:
            return self._finish(cycle, CycleOutcome.CIRCUIT_WAIT)

        request = self.engine.build_request()
        cache_key = f"{self.source_key}:{request.signature()}"

        page = None
        if self.config.cache_enabled:
            page = await self._cached_page(cache_key)
            cycle.cache_hit = page is not None
            if page is not None:
                await self.breaker.release()

        if page is None:
            try:
                page = await self._fetch_page(request)
            except (TransientNetworkError, TimeoutError) as e:
                await self.breaker.record_failure()
                logger.warning(
                    "Transient failure, will retry next cycle",
                    source=self.source_key,
                    url=request.url,
                    error=str(e) or type(e).__name__,
                )
                return self._finish(cycle, CycleOutcome.TRANSIENT_ERROR, error=str(e))
            except (UpstreamRejection, ResponseDecodeError) as e:
                await self.breaker.record_failure()
                outcome = (
                    CycleOutcome.UPSTREAM_ERROR
                    if isinstance(e, UpstreamRejection)
                    else CycleOutcome.DECODE_ERROR
                )
                self._finish(cycle, outcome, error=str(e))
                if self.config.on_error == ErrorBehavior.FAIL:
                    logger.error(
                        "Poll failed",
                        source=self.source_key,
                        url=request.url,
                        code=e.code,
                        error=str(e),
                    )
                    raise
                logger.warning(
                    "Ignoring failed poll",
                    source=self.source_key,
                    url=request.url,
                    code=e.code,
                    error=str(e),
                )
                return []

            await self.breaker.record_success()
            if self.config.cache_enabled:
                await self.cache.put(
                    CacheNamespace.RESPONSE,
                    cache_key,
                    {"document": page.document, "headers": dict(page.headers)},
                    self.config.cache_ttl_ms / 1000.0,
                )

        # The engine only moves once the offset is durable
        result = advance(self.engine.state, page, self.config)
        await self.offset_tracker.commit_state(result.next_state)
        self.engine.adopt(result)
        if result.is_terminal:
            self._terminal_since = self._clock()

        offset = result.next_state.continuation_value
        records = [
            SourceRecord(source_key=self.source_key, value=value, offset=offset)
            for value in page.records
        ]

        if records:
            outcome = CycleOutcome.RECORDS
        elif result.is_terminal:
            outcome = CycleOutcome.TERMINAL
        else:
            outcome = CycleOutcome.EMPTY
        self._finish(cycle, outcome, records=len(records))

        logger.info(
            "Poll cycle completed",
            source=self.source_key,
            records=len(records),
            cache_hit=cycle.cache_hit,
            terminal=result.is_terminal,
            continuation=offset,
        )
        return records

    async def _fetch_page(self, request: PageRequest) -> Page:
        response = await asyncio.wait_for(
            self.fetcher.fetch(request), self.config.request_timeout_ms / 1000.0
        )
        response.raise_for_status(request.url)
        document = parse_document(response.body)
        records = decode(document, self.config.data_pointer)
        return Page(document=document, records=records, headers=response.headers)

    async def _cached_page(self, cache_key: str) -> Page | None:
        cached = await self.cache.get(CacheNamespace.RESPONSE, cache_key)
        if cached is MISS:
            return None
        try:
            return self._page_from_cache(cached)
        except CacheCorruptionError as e:
            logger.warning(
                "Discarding corrupt cache entry",
                source=self.source_key,
                key=cache_key,
                error=str(e),
            )
            await self.cache.delete(CacheNamespace.RESPONSE, cache_key)
            return None

    def _page_from_cache(self, cached: Any) -> Page:
        if (
            not isinstance(cached, dict)
            or "document" not in cached
            or not isinstance(cached.get("headers"), dict)
        ):
            raise CacheCorruptionError(
                "Cached response has an unexpected shape",
                namespace=CacheNamespace.RESPONSE.value,
            )
        try:
            records = decode(cached["document"], self.config.data_pointer)
        except ResponseDecodeError as e:
            raise CacheCorruptionError(
                f"Cached response cannot be decoded: {e}",
                namespace=CacheNamespace.RESPONSE.value,
            ) from e
        return Page(
            document=cached["document"], records=records, headers=cached["headers"]
        )

    def _finish(
        self,
        cycle: CycleMetrics,
        outcome: CycleOutcome,
        records: int = 0,
        error: str | None = None,
    ) -> list[SourceRecord]:
        self.metrics.end_cycle(cycle, outcome, records=records, error=error)
        self.last_outcome = outcome
        if outcome in POLLED_OUTCOMES:
            self.activity.update_after_poll(records, datetime.now(), cycle.cache_hit)
        return []

    def _reopen_due(self) -> bool:
        if self.config.terminal_reset_ms is None:
            return False
        return self._reopen_remaining() <= 0.0

    def _reopen_remaining(self) -> float:
        if self.config.terminal_reset_ms is None or self._terminal_since is None:
            return 0.0
        elapsed = self._clock() - self._terminal_since
        return max(0.0, self.config.terminal_reset_ms / 1000.0 - elapsed)

    def next_delay(self) -> float:
        """
        Seconds to wait before the next cycle.

        Never shorter than the time the circuit breaker stays open.
        """
        base = self.config.poll_interval_ms / 1000.0
        maximum = max(base, self.config.poll_max_interval_ms / 1000.0)
        state = self.engine.state

        odata_interval_ms = None
        if (
            self.config.pagination_strategy == PaginationStrategy.ODATA
            and not state.terminal
        ):
            if state.link_kind == LinkKind.NEXT:
                odata_interval_ms = self.config.odata_nextlink_poll_interval_ms
            elif state.link_kind == LinkKind.DELTA:
                odata_interval_ms = self.config.odata_deltalink_poll_interval_ms

        if odata_interval_ms is not None:
            delay = odata_interval_ms / 1000.0
        else:
            delay = self.interval_policy.next_interval(base, maximum, self.activity)

        if state.terminal:
            delay = max(delay, self._reopen_remaining())

        return max(delay, self.breaker.remaining_open_seconds())

    async def reset(self) -> None:
        """
        Drop the committed offset and start again from the configured request.

        Waits for an in-flight cycle so its page is committed before the reset.
        """
        async with self._lock:
            await self.offset_tracker.reset()
            self.engine.reset()
            self._terminal_since = None
        logger.info("Source reset", source=self.source_key)

    def status(self) -> dict[str, Any]:
        """Get scheduler status for monitoring."""
        return {
            "source": self.source_key,
            "target": self.config.target_key,
            "pagination": self.engine.state.to_dict(),
            "circuit_breaker": self.breaker.status(),
            "rate_limiter": self.rate_limiter.statistics(),
            "activity": self.activity.to_dict(),
            "metrics": self.metrics.get_source_summary(self.source_key),
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "next_delay_seconds": round(self.next_delay(), 3),
        }
