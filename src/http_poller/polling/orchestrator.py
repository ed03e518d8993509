"""
Polling orchestrator for the HTTP poller.

This module runs one worker per source. Each worker calls its scheduler's
``cycle``, hands the records to a sink and sleeps for the scheduler's next
delay, until it is stopped.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import structlog

from ..exceptions import PollerError
from ..records import SourceRecord
from .cache import CacheStore
from .scheduler import PollScheduler

logger = structlog.get_logger(__name__)

RecordSink = Callable[[list[SourceRecord]], Awaitable[None]]


async def log_sink(records: list[SourceRecord]) -> None:
    """Default sink: log each record."""
    for record in records:
        logger.info(
            "Record received",
            source=record.source_key,
            offset=record.offset,
            value=record.value,
        )


class PollingWorker:
    """
    Runs the poll loop of a single source.

    Only one cycle is in flight at a time. A source configured to fail on
    errors stops its worker when a cycle raises.
    """

    def __init__(
        self,
        scheduler: PollScheduler,
        sink: RecordSink = log_sink,
        error_backoff_seconds: float = 60.0,
    ):
        self.scheduler = scheduler
        self.sink = sink
        self.error_backoff_seconds = error_backoff_seconds
        self.task: asyncio.Task[None] | None = None
        self.failed = False
        self.last_error: str | None = None
        self.last_cycle_at: datetime | None = None
        self._stop_event = asyncio.Event()

    @property
    def source_key(self) -> str:
        return self.scheduler.source_key

    def is_running(self) -> bool:
        """Check if the worker task is active."""
        return self.task is not None and not self.task.done()

    def start(self) -> None:
        """Start the worker task."""
        if self.is_running():
            logger.warning("Worker already running", source=self.source_key)
            return
        self._stop_event.clear()
        self.failed = False
        self.task = asyncio.create_task(
            self._run(), name=f"poll-worker-{self.source_key}"
        )

    async def stop(self, grace_seconds: float = 10.0) -> None:
        """
        Stop the worker.

        An in-flight cycle gets ``grace_seconds`` to finish before it is
        cancelled.
        """
        self._stop_event.set()
        if not self.task or self.task.done():
            return

        try:
            await asyncio.wait_for(asyncio.shield(self.task), grace_seconds)
        except TimeoutError:
            logger.warning(
                "Worker did not stop within grace period, cancelling",
                source=self.source_key,
                grace_seconds=grace_seconds,
            )
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        logger.info("Polling worker started", source=self.source_key)
        while not self._stop_event.is_set():
            delay = await self._run_cycle()
            if self.failed:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except TimeoutError:
                pass
        logger.info("Polling worker stopped", source=self.source_key)

    async def _run_cycle(self) -> float:
        """Run one cycle and return the delay before the next."""
        try:
            records = await self.scheduler.cycle()
            self.last_cycle_at = datetime.now()
            if records:
                await self.sink(records)
            return self.scheduler.next_delay()
        except asyncio.CancelledError:
            raise
        except PollerError as e:
            self.failed = True
            self.last_error = str(e)
            logger.error(
                "Source failed, stopping worker",
                source=self.source_key,
                code=e.code,
                error=str(e),
            )
            return 0.0
        except Exception as e:
            self.last_error = str(e)
            logger.error(
                "Error in polling cycle", source=self.source_key, error=str(e)
            )
            return max(self.error_backoff_seconds, self.scheduler.next_delay())

    def status(self) -> dict[str, Any]:
        """Get worker status, including its scheduler's."""
        return {
            "running": self.is_running(),
            "failed": self.failed,
            "last_error": self.last_error,
            "last_cycle": (
                self.last_cycle_at.isoformat() if self.last_cycle_at else None
            ),
            **self.scheduler.status(),
        }


class PollingOrchestrator:
    """
    Orchestrates polling across every configured source.

    Owns the worker tasks and the cache maintenance task; stopping the
    orchestrator stops both within a bounded grace period.
    """

    def __init__(
        self,
        schedulers: list[PollScheduler],
        cache: CacheStore,
        sink: RecordSink = log_sink,
        shutdown_grace_seconds: float = 10.0,
    ):
        """
        Initialize the polling orchestrator.

        Args:
            schedulers: One scheduler per source
            cache: Shared cache store
            sink: Receiver of emitted records
            shutdown_grace_seconds: Grace period for in-flight cycles
        """
        self.cache = cache
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.workers: dict[str, PollingWorker] = {
            scheduler.source_key: PollingWorker(scheduler, sink)
            for scheduler in schedulers
        }
        self.is_running_flag = False

    def is_running(self) -> bool:
        """Check if polling is currently active."""
        return self.is_running_flag

    async def start_polling(self) -> None:
        """Start cache maintenance and every worker."""
        if self.is_running_flag:
            logger.warning("Polling already running")
            return

        self.is_running_flag = True
        logger.info("Starting polling orchestrator", sources=list(self.workers))

        await self.cache.start()
        for worker in self.workers.values():
            worker.start()

    async def stop_polling(self) -> None:
        """Stop every worker and cache maintenance."""
        if not self.is_running_flag:
            return

        logger.info("Stopping polling orchestrator")
        self.is_running_flag = False

        await asyncio.gather(
            *(
                worker.stop(self.shutdown_grace_seconds)
                for worker in self.workers.values()
            )
        )
        await self.cache.stop()

    async def wait(self) -> None:
        """Wait until every worker has exited."""
        tasks = [worker.task for worker in self.workers.values() if worker.task]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_worker(self, source_key: str) -> PollingWorker | None:
        """Get the worker of a source."""
        return self.workers.get(source_key)

    async def reset_source(self, source_key: str) -> bool:
        """
        Reset a source's offset and restart its worker if it had failed.

        Returns:
            False if the source is unknown
        """
        worker = self.workers.get(source_key)
        if worker is None:
            return False

        await worker.scheduler.reset()
        if self.is_running_flag and not worker.is_running():
            worker.start()
        return True

    def get_activity_summary(self) -> dict[str, Any]:
        """Get status of every source for monitoring."""
        return {key: worker.status() for key, worker in self.workers.items()}
