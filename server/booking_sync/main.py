"""FastAPI application for the booking synchronization engine."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, status

from .core.config import settings
from .core.database import close_db, init_db
from .core.errors import SyncEngineError
from .core.exceptions import (
    ProblemDetailsException,
    engine_error_handler,
    generic_exception_handler,
    problem_details_handler,
)
from .core.observability import (
    SERVICE_NAME,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_metrics,
    setup_structured_logging,
    setup_tracing,
)
from .routers import groups, health, metrics, sync, webhook

VERSION = "1.0.0"

setup_structured_logging()

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Set up telemetry and the store on startup, release connections on shutdown."""
    logger.info(
        "Starting booking sync service",
        extra={"environment": settings.environment, "upstream": settings.upstream_base_url}
    )
    if not settings.upstream_configured:
        logger.warning("Upstream credentials missing; sync runs will fail until they are set")

    try:
        setup_tracing(SERVICE_NAME)
        setup_metrics(SERVICE_NAME)
        instrument_sqlalchemy()

        # Production schemas are managed by alembic
        if not settings.is_production:
            await init_db()
    except Exception as e:
        logger.error(f"Failed to initialize application: {e}")
        raise

    logger.info("Application startup complete")

    yield

    try:
        await close_db()
    except Exception as e:
        logger.error(f"Error during application cleanup: {e}")

    logger.info("Application shutdown complete")


def service_info() -> Dict[str, Any]:
    """Describe the running configuration without exposing secrets."""
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "environment": settings.environment,
        "timezone": settings.local_timezone,
        "upstream_configured": settings.upstream_configured,
        "sync": {
            "past_days": settings.sync_past_days,
            "default_days": settings.sync_default_days,
            "full_days": settings.sync_full_days,
            "timeout_seconds": settings.sync_timeout_seconds,
        },
        "grouping": {
            "capacity": settings.group_capacity,
            "lock": settings.grouping_lock_name,
        },
        "endpoints": {
            "health": "/health",
            "info": "/info",
            "metrics": "/metrics",
            "ready": "/v1/health/ready",
            "sync": "/v1/sync",
            "groups": "/v1/groups",
            "webhook": "/v1/webhook/provider",
            "docs": "/docs" if settings.debug else None,
        },
    }


def register_exception_handlers(app: FastAPI) -> None:
    """Render problems, escaped engine errors and crashes as problem details."""
    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(SyncEngineError, engine_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="Booking Sync API",
        description="Synchronizes upstream tour bookings into the local store, groups co-departing tours and ingests provider webhooks",
        version=VERSION,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    instrument_fastapi(app)
    register_exception_handlers(app)

    @app.get("/health", status_code=status.HTTP_200_OK, tags=["Health"], summary="Health Check")
    async def health_check():
        """Return service status."""
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": VERSION,
            "environment": settings.environment,
        }

    @app.get("/info", status_code=status.HTTP_200_OK, tags=["Info"], summary="Service Information")
    async def info():
        """Sync windows, grouping capacity and the exposed endpoints."""
        return service_info()

    app.include_router(health.router)
    app.include_router(sync.router)
    app.include_router(groups.router)
    app.include_router(webhook.router)
    app.include_router(metrics.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "booking_sync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
