"""
Pytest configuration and fixtures for HTTP poller tests.
"""

import json
from collections.abc import Callable
from typing import Any

import pytest

from http_poller.client import FetchResponse
from http_poller.config import Settings, SourceConfig
from http_poller.polling.cache import CacheStore
from http_poller.polling.circuit_breaker import CircuitBreaker
from http_poller.polling.metrics import MetricsCollector
from http_poller.polling.offset_tracker import OffsetTracker
from http_poller.polling.pagination import PageRequest
from http_poller.polling.rate_limiter import RateLimiter, TokenBucket
from http_poller.polling.scheduler import PollScheduler
from http_poller.state.manager import InMemoryOffsetStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeFetcher:
    """Fetcher returning scripted responses and recording requests."""

    def __init__(self, responses: list[Any] | None = None) -> None:
        self.responses = list(responses or [])
        self.requests: list[PageRequest] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def fetch(self, request: PageRequest) -> FetchResponse:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {request.url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def json_response(
    document: Any, status_code: int = 200, headers: dict[str, str] | None = None
) -> FetchResponse:
    """Build a JSON fetch response."""
    return FetchResponse(
        status_code=status_code,
        body=json.dumps(document).encode("utf-8"),
        headers=headers or {"content-type": "application/json"},
    )


def make_source(**options: Any) -> SourceConfig:
    """Build a source config; keyword names use ``__`` in place of ``.``."""
    raw: dict[str, Any] = {
        "source.key": "customers",
        "http.api.base.url": "https://api.example.com",
        "http.api.path": "/v1/customers",
        "rate.limit.enabled": False,
    }
    for key, value in options.items():
        raw[key.replace("__", ".")] = value
    return SourceConfig.model_validate(raw)


@pytest.fixture
def clock() -> FakeClock:
    """Manually advanced clock."""
    return FakeClock()


@pytest.fixture
def source_factory() -> Callable[..., SourceConfig]:
    """Factory for source configs using ``__`` in place of dots."""
    return make_source


@pytest.fixture
def offset_store() -> InMemoryOffsetStore:
    """Fresh in-memory offset store."""
    return InMemoryOffsetStore()


@pytest.fixture
def scheduler_factory(
    clock: FakeClock, offset_store: InMemoryOffsetStore
) -> Callable[..., PollScheduler]:
    """Build a scheduler around a fake fetcher with fake-clock components."""

    def _build(
        source: SourceConfig,
        fetcher: FakeFetcher,
        cache: CacheStore | None = None,
        breaker: CircuitBreaker | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> PollScheduler:
        return PollScheduler(
            config=source,
            fetcher=fetcher,
            cache=cache or CacheStore(clock=clock),
            rate_limiter=rate_limiter
            or RateLimiter(
                source.target_key, TokenBucket(10.0, 10, clock()), clock, clock.sleep
            ),
            breaker=breaker
            or CircuitBreaker(
                source.target_key,
                failure_threshold=source.circuit_breaker_failure_threshold,
                timeout_seconds=source.circuit_breaker_timeout_ms / 1000.0,
                recovery_seconds=source.circuit_breaker_recovery_time_ms / 1000.0,
                clock=clock,
            ),
            offset_tracker=OffsetTracker(source, offset_store),
            metrics=MetricsCollector(),
            clock=clock,
        )

    return _build


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at a temporary sources file."""
    sources_file = tmp_path / "sources.json"
    sources_file.write_text(
        json.dumps(
            [
                {
                    "source.key": "customers",
                    "http.api.base.url": "https://api.example.com",
                    "http.api.path": "/v1/customers",
                    "pagination.strategy": "ODATA",
                    "response.data.json.pointer": "/value",
                    "poll.interval.ms": 3600000,
                }
            ]
        )
    )
    return Settings(
        sources_file=str(sources_file),
        offset_store_mode="memory",
        log_level="DEBUG",
        shutdown_grace_seconds=1.0,
    )
