"""Groups router exposing operator-side grouping changes."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import settings
from ..core.dependencies import get_current_user, get_db, get_lock_session_factory, rate_limit
from ..core.locks import NamedLock
from ..models.tour_group import TourGroup
from ..schemas.groups import (
    DissolveRequest,
    DissolveResult,
    GroupSummary,
    ManualMergeRequest,
    UnmergeRequest,
    UnmergeResult,
)
from ..services.grouping_service import GroupingService
from ..services.sync_service import tour_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/groups", tags=["groups"])


def grouping_service(db: AsyncSession, session_factory: async_sessionmaker[AsyncSession]) -> GroupingService:
    lock = NamedLock(session_factory, settings.grouping_lock_name, lease_seconds=settings.lock_lease_seconds)
    return GroupingService(db, lock)


async def group_summary(service: GroupingService, group: TourGroup) -> GroupSummary:
    tours = await service.tours_of(group.id)
    return GroupSummary(
        id=str(group.id),
        group_date=group.group_date,
        group_time=group.group_time.strftime("%H:%M"),
        display_name=group.display_name,
        notes=group.notes,
        guide_id=group.guide_id,
        max_pax=group.max_pax,
        total_pax=group.total_pax,
        is_manual_merge=group.is_manual_merge,
        tours=[tour_summary(tour) for tour in tours],
    )


@router.post("/merge", response_model=GroupSummary, status_code=201, dependencies=[Depends(rate_limit("write"))])
async def merge_tours(
    request: ManualMergeRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_lock_session_factory),
) -> JSONResponse:
    """
    Merge tours into an operator-built group.

    The group is exempt from automatic grouping; its members stay together
    across sync runs and reschedules until an operator changes it.
    """
    service = grouping_service(db, session_factory)
    group = await service.manual_merge(request.tour_ids, request.display_name, request.notes)

    logger.info(
        "Manual merge requested",
        extra={"user_id": current_user.get("user_id"), "group_id": str(group.id)}
    )

    response_data = await group_summary(service, group)
    return JSONResponse(status_code=201, content=response_data.model_dump(mode="json"))


@router.post("/unmerge", response_model=UnmergeResult, dependencies=[Depends(rate_limit("write"))])
async def unmerge_tour(
    request: UnmergeRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_lock_session_factory),
) -> JSONResponse:
    """Take one tour out of its group; a group left with one tour is dissolved."""
    outcome = await grouping_service(db, session_factory).unmerge(request.tour_id)
    response_data = UnmergeResult(
        tour_id=str(outcome.tour_id),
        group_id=str(outcome.group_id),
        group_dissolved=outcome.group_dissolved,
    )
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/dissolve", response_model=DissolveResult, dependencies=[Depends(rate_limit("write"))])
async def dissolve_group(
    request: DissolveRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_lock_session_factory),
) -> JSONResponse:
    """Delete a group and release its tours."""
    ungrouped = await grouping_service(db, session_factory).dissolve(request.group_id)
    response_data = DissolveResult(group_id=str(request.group_id), tours_ungrouped=ungrouped)
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
