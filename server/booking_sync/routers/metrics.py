"""Prometheus scrape endpoint."""

import calendar

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_db
from ..core.observability import get_prometheus_metrics, metrics_collector
from ..services.sync_service import SyncService

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus Metrics",
    description="Sync, upstream, rate limiting, webhook and backlog metrics in Prometheus text format",
    response_class=Response,
    tags=["Observability"]
)
async def metrics(db: AsyncSession = Depends(get_db)):
    """Refresh the backlog gauges, then expose the registry."""
    backlog = await SyncService(db).backlog()
    last_completed = backlog.last_completed_at
    metrics_collector.record_backlog(
        backlog.awaiting_guide,
        backlog.needing_resync,
        calendar.timegm(last_completed.utctimetuple()) if last_completed else None,
    )
    return Response(
        content=get_prometheus_metrics(),
        media_type="text/plain; version=0.0.4; charset=utf-8"
    )
