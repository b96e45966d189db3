"""Sync router exposing the trigger surface of the engine."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..clients.upstream import UpstreamClient
from ..core.dependencies import (
    get_current_user,
    get_db,
    get_lock_session_factory,
    get_upstream_client,
    rate_limit,
)
from ..schemas.sync import (
    BackfillResult,
    FullSyncRequest,
    SyncHistoryRequest,
    SyncHistoryResponse,
    SyncInfo,
    SyncRequest,
    SyncResult,
    UnassignedBookingsResponse,
)
from ..services.sync_service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/sync", tags=["sync"])


@router.post("/run", response_model=SyncResult, dependencies=[Depends(rate_limit("sync"))])
async def run_sync(
    request: Optional[SyncRequest] = None,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: UpstreamClient = Depends(get_upstream_client),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_lock_session_factory),
) -> JSONResponse:
    """
    Run a routine sync.

    The window defaults to a week back through the routine horizon. The
    response is always a structured result; a failed run carries an
    ``error_code`` instead of an HTTP error.
    """
    request = request or SyncRequest()
    triggered_by = request.triggered_by or current_user.get("username") or current_user.get("user_id")

    result = await SyncService(db, client, session_factory).sync(
        start_date=request.start_date,
        end_date=request.end_date,
        sync_type=request.sync_type,
        triggered_by=triggered_by,
    )

    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))


@router.post("/full", response_model=SyncResult, dependencies=[Depends(rate_limit("sync"))])
async def run_full_sync(
    request: Optional[FullSyncRequest] = None,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: UpstreamClient = Depends(get_upstream_client),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_lock_session_factory),
) -> JSONResponse:
    """Run a full sync over the long horizon."""
    request = request or FullSyncRequest()
    triggered_by = request.triggered_by or current_user.get("username") or current_user.get("user_id")
    result = await SyncService(db, client, session_factory).full_sync(triggered_by=triggered_by)
    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))


@router.post("/history", response_model=SyncHistoryResponse, dependencies=[Depends(rate_limit("read"))])
async def get_sync_history(
    request: Optional[SyncHistoryRequest] = None,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Latest sync runs, newest first."""
    request = request or SyncHistoryRequest()
    items = await SyncService(db).get_sync_history(request.limit)
    response_data = SyncHistoryResponse(items=items)
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/info", response_model=SyncInfo, dependencies=[Depends(rate_limit("read"))])
async def get_sync_info(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Configured sync windows and the dates they currently cover."""
    info = SyncService(db).get_sync_info()
    return JSONResponse(status_code=200, content=info.model_dump(mode="json"))


@router.post("/unassigned", response_model=UnassignedBookingsResponse, dependencies=[Depends(rate_limit("read"))])
async def get_unassigned_bookings(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Upcoming bookings still waiting for a guide."""
    items = await SyncService(db).get_unassigned_bookings()
    response_data = UnassignedBookingsResponse(items=items, count=len(items))
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/backfill-participants", response_model=BackfillResult, dependencies=[Depends(rate_limit("write"))])
async def backfill_participants(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Recover traveller names from stored payloads."""
    result = await SyncService(db).backfill_participant_names()

    logger.info(
        "Participant backfill requested",
        extra={
            "user_id": current_user.get("user_id"),
            "scanned": result.scanned,
            "updated": result.updated
        }
    )

    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))
