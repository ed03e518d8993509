"""
Main application entry point for the HTTP poller.

This module sets up the FastAPI application, configures logging, and runs
the polling pipeline for the lifetime of the service.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request

from .config import get_settings
from .standalone import StandaloneApp


def setup_logging() -> None:
    """Configure structured logging."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level), format="%(message)s"
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            (
                structlog.processors.JSONRenderer()
                if settings.log_format == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    logger = structlog.get_logger()
    settings = get_settings()

    logger.info("Starting HTTP poller service")

    poller = StandaloneApp(settings)
    await poller.initialize()
    logger.info(
        "Configuration loaded",
        sources=[source.source_key for source in poller.sources],
        offset_store=settings.offset_store_mode,
    )

    app.state.poller = poller
    await poller.start(serve_health=False)

    yield

    logger.info("Shutting down HTTP poller service")
    await poller.stop()


# Create FastAPI application
app = FastAPI(
    title="HTTP Poller",
    description="Resilient polling of paginated HTTP APIs",
    version="0.1.0",
    lifespan=lifespan,
)


def _poller(request: Request) -> StandaloneApp:
    poller = getattr(request.app.state, "poller", None)
    if poller is None:
        raise HTTPException(status_code=503, detail="Poller not initialized")
    return poller


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "HTTP Poller", "version": "0.1.0", "status": "active"}


@app.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """Health check endpoint."""
    health = await _poller(request).health_check()
    if health["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health)
    return health


@app.get("/status")
async def status(request: Request) -> dict[str, Any]:
    """Detailed status of every source."""
    return _poller(request).status()


@app.get("/sources/{source_key}")
async def source_status(source_key: str, request: Request) -> dict[str, Any]:
    """Status of a single source."""
    orchestrator = _poller(request).polling_orchestrator
    worker = orchestrator.get_worker(source_key) if orchestrator else None
    if worker is None:
        raise HTTPException(status_code=404, detail=f"Unknown source: {source_key}")
    return worker.status()


@app.post("/sources/{source_key}/reset")
async def reset_source(source_key: str, request: Request) -> dict[str, str]:
    """Drop a source's committed offset and restart it from the beginning."""
    orchestrator = _poller(request).polling_orchestrator
    if orchestrator is None or not await orchestrator.reset_source(source_key):
        raise HTTPException(status_code=404, detail=f"Unknown source: {source_key}")
    return {"source": source_key, "status": "reset"}


def main() -> None:
    """Main entry point."""
    import uvicorn

    setup_logging()
    logger = structlog.get_logger()
    settings = get_settings()

    logger.info(
        "Starting server", host=settings.host, port=settings.port, debug=settings.debug
    )

    uvicorn.run(
        "http_poller.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=None,  # We handle logging ourselves
    )


if __name__ == "__main__":
    main()
