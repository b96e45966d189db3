"""Health, readiness and upstream connectivity checks."""

import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..clients.upstream import UpstreamClient
from ..core.config import settings
from ..core.dependencies import get_current_user, get_db, get_upstream_client
from ..schemas.health import HealthResponse, HealthStatus, ReadinessResponse, UpstreamCheck
from ..services.sync_service import SyncService, local_today

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/health", tags=["health"])


@router.post("/ping", response_model=HealthResponse)
async def health_ping() -> JSONResponse:
    """
    Liveness check.

    Reports the business date the engine uses for default windows and
    whether upstream credentials are configured.
    """
    response_data = HealthResponse(
        status=HealthStatus.HEALTHY,
        timestamp=datetime.utcnow(),
        local_date=local_today(),
        timezone=settings.local_timezone,
        upstream_configured=settings.upstream_configured,
    )
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/ready", response_model=ReadinessResponse)
async def health_ready(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    """
    Readiness check.

    Unhealthy (503) when the store does not answer; degraded when no sync
    has completed within ``SYNC_STALE_AFTER_HOURS``.
    """
    try:
        backlog = await SyncService(db).backlog()
    except SQLAlchemyError as e:
        logger.error("Readiness check could not reach the database", extra={"error": str(e)})
        response_data = ReadinessResponse(status=HealthStatus.UNHEALTHY, database=False)
        return JSONResponse(status_code=503, content=response_data.model_dump(mode="json"))

    stale_before = datetime.utcnow() - timedelta(hours=settings.sync_stale_after_hours)
    last = backlog.last_completed_at
    fresh = last is not None and last >= stale_before

    response_data = ReadinessResponse(
        status=HealthStatus.HEALTHY if fresh else HealthStatus.DEGRADED,
        database=True,
        last_sync_completed_at=last,
        tours_awaiting_guide=backlog.awaiting_guide,
        tours_needing_resync=backlog.needing_resync,
    )
    if not fresh:
        logger.warning("No recent completed sync", extra={"last_sync_completed_at": str(last)})
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/upstream", response_model=UpstreamCheck)
async def upstream_check(
    current_user: dict = Depends(get_current_user),
    client: UpstreamClient = Depends(get_upstream_client),
) -> JSONResponse:
    """Check upstream credentials with a one-day booking search."""
    outcome = await client.test_connection()
    response_data = UpstreamCheck(
        success=outcome["success"],
        bookings=outcome.get("bookings"),
        code=outcome.get("code"),
        message=outcome.get("message"),
    )

    log = logger.info if response_data.success else logger.warning
    log("Upstream connection checked", extra={"success": response_data.success, "error_code": response_data.code})

    return JSONResponse(status_code=200, content=response_data.model_dump())
