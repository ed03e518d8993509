#!/usr/bin/env python3
"""
Standalone application entry point for the HTTP poller.

This module wires the polling pipeline together from settings and runs it
headless, with a small aiohttp server exposing health checks. The FastAPI
service in ``main`` reuses the same application object.
"""

import asyncio
import logging
import signal
import sys
from typing import Any

import httpx
from aiohttp import web

from .client import HttpFetcher
from .config import Settings, SourceConfig
from .polling.cache import CacheNamespace, CacheStore, NamespacePolicy
from .polling.circuit_breaker import CircuitBreakerRegistry
from .polling.metrics import MetricsCollector
from .polling.offset_tracker import OffsetTracker
from .polling.orchestrator import PollingOrchestrator, RecordSink, log_sink
from .polling.rate_limiter import RateLimitManager
from .polling.scheduler import PollScheduler
from .state.manager import OffsetStore, OffsetStoreFactory

logger = logging.getLogger(__name__)


def build_cache(settings: Settings, sources: list[SourceConfig]) -> CacheStore:
    """Create the shared cache with one policy per namespace."""
    response_capacity = settings.cache_response_capacity or max(
        (source.max_cache_size for source in sources), default=1000
    )
    response_ttl_ms = max((source.cache_ttl_ms for source in sources), default=60000)

    policies = {
        CacheNamespace.RESPONSE: NamespacePolicy(
            response_capacity, response_ttl_ms / 1000.0
        ),
        CacheNamespace.SCHEMA: NamespacePolicy(
            settings.cache_schema_capacity, settings.cache_schema_ttl_ms / 1000.0
        ),
        CacheNamespace.AUTH: NamespacePolicy(
            settings.cache_auth_capacity, settings.cache_auth_ttl_ms / 1000.0
        ),
        CacheNamespace.METADATA: NamespacePolicy(
            settings.cache_metadata_capacity, settings.cache_metadata_ttl_ms / 1000.0
        ),
    }
    return CacheStore(
        policies,
        maintenance_interval_seconds=settings.cache_maintenance_interval_ms / 1000.0,
    )


class StandaloneApp:
    """Main application class for standalone mode."""

    def __init__(
        self,
        settings: Settings | None = None,
        sink: RecordSink = log_sink,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the standalone application.

        Args:
            settings: Application settings; loaded from the environment if None
            sink: Receiver of emitted records
            transport: Optional httpx transport shared by every fetcher
        """
        self.settings = settings
        self.sink = sink
        self.transport = transport
        self.sources: list[SourceConfig] = []
        self.cache: CacheStore | None = None
        self.offset_store: OffsetStore | None = None
        self.rate_limit_manager = RateLimitManager()
        self.breaker_registry = CircuitBreakerRegistry()
        self.metrics = MetricsCollector()
        self.fetchers: list[HttpFetcher] = []
        self.polling_orchestrator: PollingOrchestrator | None = None
        self._shutdown_event = asyncio.Event()
        self._web_runner: web.AppRunner | None = None

    async def initialize(self) -> None:
        """Initialize all application components."""
        logger.info("Initializing HTTP poller in standalone mode...")

        # Load configuration
        try:
            if self.settings is None:
                self.settings = Settings()
            self.sources = self.settings.load_sources()
            logger.info(f"Loaded {len(self.sources)} sources")
        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise

        self.cache = build_cache(self.settings, self.sources)

        # Initialize offset store using factory
        try:
            self.offset_store = OffsetStoreFactory.create_offset_store(
                mode=self.settings.offset_store_mode,
                path=self.settings.offset_store_path,
            )
            logger.info(
                f"Offset store initialized: {type(self.offset_store).__name__}"
            )
        except Exception as e:
            logger.error(f"Failed to initialize offset store: {e}")
            raise

        schedulers = [self._create_scheduler(source) for source in self.sources]

        self.polling_orchestrator = PollingOrchestrator(
            schedulers,
            self.cache,
            sink=self.sink,
            shutdown_grace_seconds=self.settings.shutdown_grace_seconds,
        )
        logger.info("HTTP poller initialization complete")

    def _create_scheduler(self, source: SourceConfig) -> PollScheduler:
        if self.cache is None or self.offset_store is None:
            raise RuntimeError("Application not initialized")

        fetcher = HttpFetcher(
            headers=source.headers,
            timeout_seconds=source.request_timeout_ms / 1000.0,
            transport=self.transport,
        )
        self.fetchers.append(fetcher)

        return PollScheduler(
            config=source,
            fetcher=fetcher,
            cache=self.cache,
            rate_limiter=self.rate_limit_manager.get_limiter(source),
            breaker=self.breaker_registry.get_breaker(source),
            offset_tracker=OffsetTracker(source, self.offset_store),
            metrics=self.metrics,
        )

    async def start(self, serve_health: bool = True) -> None:
        """Start polling, and the health server unless disabled."""
        if not self.settings or not self.polling_orchestrator:
            raise RuntimeError("Application not initialized")

        logger.info("Starting HTTP poller")
        if serve_health:
            await self._start_web_server()

        await self.polling_orchestrator.start_polling()

    async def stop(self) -> None:
        """Stop the standalone application."""
        logger.info("Stopping HTTP poller...")

        if self.polling_orchestrator:
            try:
                await self.polling_orchestrator.stop_polling()
                logger.info("Polling orchestrator stopped")
            except Exception as e:
                logger.error(f"Error stopping polling orchestrator: {e}")

        for fetcher in self.fetchers:
            await fetcher.close()

        await self._stop_web_server()

        self._shutdown_event.set()
        logger.info("HTTP poller stopped")

    async def wait_for_shutdown(self) -> None:
        """Block until ``stop`` has completed."""
        await self._shutdown_event.wait()

    def setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""

        def signal_handler(signum: int, frame) -> None:  # type: ignore
            logger.info(f"Received signal {signum}, initiating shutdown...")
            asyncio.create_task(self.stop())

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def health_check(self) -> dict[str, Any]:
        """
        Perform health check of all components.

        Returns:
            Health check results
        """
        health_data: dict[str, Any] = {
            "status": "healthy",
            "mode": "standalone",
            "components": {},
        }

        try:
            if self.offset_store:
                healthy = await self.offset_store.health_check()
                health_data["components"]["offset_store"] = {
                    "status": "healthy" if healthy else "unhealthy",
                    "stats": self.offset_store.get_stats(),
                }
                if not healthy:
                    health_data["status"] = "unhealthy"
            else:
                health_data["components"]["offset_store"] = "not_initialized"

            if self.polling_orchestrator:
                failed = [
                    key
                    for key, worker in self.polling_orchestrator.workers.items()
                    if worker.failed
                ]
                health_data["components"]["polling_orchestrator"] = {
                    "status": "degraded" if failed else "healthy",
                    "running": self.polling_orchestrator.is_running(),
                    "failed_sources": failed,
                }
                if failed:
                    health_data["status"] = "degraded"
            else:
                health_data["components"]["polling_orchestrator"] = "not_initialized"

            health_data["metrics"] = self.metrics.get_health_indicators()

        except Exception as e:
            health_data["status"] = "unhealthy"
            health_data["error"] = str(e)

        return health_data

    def status(self) -> dict[str, Any]:
        """Get detailed status of every source and shared component."""
        return {
            "sources": (
                self.polling_orchestrator.get_activity_summary()
                if self.polling_orchestrator
                else {}
            ),
            "cache": self.cache.statistics() if self.cache else None,
            "rate_limiters": self.rate_limit_manager.statistics(),
            "circuit_breakers": self.breaker_registry.status(),
            "metrics": self.metrics.get_global_summary(),
        }

    async def _create_web_app(self) -> web.Application:
        """Create the web application for health checks."""
        app = web.Application()

        async def health_handler(request: web.Request) -> web.Response:
            """Health check endpoint."""
            try:
                health_data = await self.health_check()
                status_code = 200 if health_data["status"] != "unhealthy" else 503
                return web.json_response(health_data, status=status_code)
            except Exception as e:
                logger.error(f"Health check failed: {e}")
                return web.json_response(
                    {"status": "unhealthy", "error": str(e)}, status=503
                )

        async def status_handler(request: web.Request) -> web.Response:
            """Detailed status endpoint."""
            return web.json_response(self.status())

        app.router.add_get("/health", health_handler)
        app.router.add_get("/status", status_handler)
        return app

    async def _start_web_server(self) -> None:
        """Start the web server for health checks."""
        if not self.settings:
            raise RuntimeError("Settings not initialized")

        web_app = await self._create_web_app()
        self._web_runner = web.AppRunner(web_app)
        await self._web_runner.setup()

        host, port = self.settings.host, self.settings.health_port
        site = web.TCPSite(self._web_runner, host, port)
        await site.start()
        logger.info(f"Health check server started on http://{host}:{port}")

    async def _stop_web_server(self) -> None:
        """Stop the web server."""
        if self._web_runner:
            await self._web_runner.cleanup()
            self._web_runner = None
            logger.info("Health check server stopped")


async def main() -> None:
    """Main entry point for standalone mode."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = StandaloneApp()

    try:
        app.setup_signal_handlers()
        await app.initialize()
        await app.start()
        await app.wait_for_shutdown()

    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
    except Exception as e:
        logger.error(f"Application failed: {e}")
        sys.exit(1)
    finally:
        await app.stop()
        logger.info("Application shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
