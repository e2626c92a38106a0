"""FastAPI application for calbridge.

This module provides the main FastAPI application with:
- Request logging
- Exception handlers
- Calendar sync, conflict and schedule routes
- Background scheduler for periodic syncs
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request

from calbridge import __version__
from calbridge.api.exceptions import calbridge_exception_handler, unhandled_exception_handler
from calbridge.api.scheduler import SyncScheduler
from calbridge.core.config import AppConfig, load_config
from calbridge.core.errors import CalBridgeError
from calbridge.core.sync import SyncCoordinator
from calbridge.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def build_services(config: AppConfig) -> tuple[SyncCoordinator, SyncScheduler]:
    """Create the coordinator and scheduler shared by all requests."""
    coordinator = SyncCoordinator.from_config(config)
    scheduler = SyncScheduler(
        coordinator,
        default_interval_minutes=config.sync.interval_minutes,
        max_backoff_minutes=config.sync.max_backoff_minutes,
    )
    return coordinator, scheduler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: Load config, initialize databases, start the scheduler
    - Shutdown: Stop the scheduler
    """
    logger.info("calbridge API starting up...")

    if getattr(app.state, "coordinator", None) is None:
        config = load_config()
        setup_logging(config)
        config.ensure_data_dir()
        logger.info(f"Configuration loaded from {config.general.config_file or 'defaults'}")
        app.state.coordinator, app.state.scheduler = build_services(config)
        await app.state.coordinator.initialize()
        await app.state.coordinator.register_configured_calendars(config)
    else:
        await app.state.coordinator.initialize()

    await app.state.scheduler.start()
    logger.info("Scheduler initialized and started")

    yield

    logger.info("calbridge API shutting down...")
    await app.state.scheduler.stop()


def create_app(
    coordinator: SyncCoordinator | None = None,
    scheduler: SyncScheduler | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        coordinator: Pre-built coordinator (built from config at startup if omitted)
        scheduler: Pre-built scheduler to go with ``coordinator``

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="calbridge API",
        description="REST API for calbridge - two-way CalDAV calendar sync",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator
    app.state.scheduler = scheduler

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming requests."""
        logger.debug(f"{request.method} {request.url.path}")
        response = await call_next(request)
        logger.debug(f"{request.method} {request.url.path} - {response.status_code}")
        return response

    app.add_exception_handler(CalBridgeError, calbridge_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    from calbridge.api.routes import calendars, health, schedules

    app.include_router(health.router, prefix="/api", tags=["Health"])
    app.include_router(calendars.router, prefix="/api/calendars", tags=["Calendars"])
    app.include_router(schedules.router, prefix="/api/schedules", tags=["Schedules"])

    @app.get("/")
    async def root():
        """Root endpoint - returns API information."""
        return {
            "name": "calbridge API",
            "version": __version__,
            "docs": "/api/docs",
            "health": "/api/health",
        }

    return app


# Create the application instance
app = create_app()
