"""Unit tests for operator-side grouping changes."""

from datetime import date, datetime, time
from uuid import uuid4

import pytest
from sqlalchemy import select

from booking_sync.core.errors import (
    GroupCapacityError,
    GroupingBusyError,
    GroupNotFoundError,
    GroupOperationError,
    TourNotFoundError,
)
from booking_sync.core.locks import NamedLock
from booking_sync.models.engine_lock import EngineLock
from booking_sync.models.tour import Tour
from booking_sync.models.tour_group import TourGroup
from booking_sync.services.grouping_service import GroupingService
from factories import make_tour

WINDOW = (date(2026, 11, 1), date(2026, 11, 30))


def grouping(session, session_factory):
    return GroupingService(session, NamedLock(session_factory, "auto_group"), capacity=9, lock_timeout=0)


async def seed(session, *tours):
    session.add_all(tours)
    await session.commit()
    return tours


async def all_groups(session):
    result = await session.execute(select(TourGroup).execution_options(populate_existing=True))
    return list(result.scalars().all())


async def group_ids(session):
    result = await session.execute(select(Tour.id, Tour.group_id))
    return dict(result.all())


@pytest.mark.asyncio
async def test_merge_builds_manual_group(test_session, test_session_factory):
    first, second = await seed(
        test_session,
        make_tour(title="Uffizi Gallery Tour", participants=3),
        make_tour(title="Vatican Museums", participants=4, start=time(10, 0), guide_id=7),
    )

    group = await grouping(test_session, test_session_factory).manual_merge(
        [first.id, second.id], notes="Same van"
    )

    assert group.is_manual_merge is True
    assert group.total_pax == 7
    assert group.max_pax == 9
    assert group.guide_id == 7
    assert group.display_name == "Uffizi Gallery Tour"
    assert group.notes == "Same van"
    assert (group.group_date, group.group_time) == (date(2026, 11, 10), time(9, 0))
    assert await group_ids(test_session) == {first.id: group.id, second.id: group.id}
    assert (await test_session.execute(select(EngineLock))).scalars().all() == []


@pytest.mark.asyncio
async def test_merge_over_capacity_changes_nothing(test_session, test_session_factory):
    first, second = await seed(test_session, make_tour(participants=5), make_tour(participants=6))

    with pytest.raises(GroupCapacityError) as excinfo:
        await grouping(test_session, test_session_factory).manual_merge([first.id, second.id])

    assert excinfo.value.details == {"total_pax": 11, "max_pax": 9}
    assert await all_groups(test_session) == []
    assert set((await group_ids(test_session)).values()) == {None}


@pytest.mark.asyncio
async def test_merge_needs_two_distinct_tours(test_session, test_session_factory):
    [tour] = await seed(test_session, make_tour())

    with pytest.raises(GroupOperationError):
        await grouping(test_session, test_session_factory).manual_merge([tour.id, tour.id])


@pytest.mark.asyncio
async def test_merge_rejects_unknown_tours(test_session, test_session_factory):
    [tour] = await seed(test_session, make_tour())
    unknown = uuid4()

    with pytest.raises(TourNotFoundError) as excinfo:
        await grouping(test_session, test_session_factory).manual_merge([tour.id, unknown])

    assert excinfo.value.details == {"tour_ids": [str(unknown)]}


@pytest.mark.asyncio
async def test_merge_takes_tours_out_of_their_groups(test_session, test_session_factory):
    tours = await seed(
        test_session,
        *[make_tour(participants=2, created_at=datetime(2026, 10, 1, 8, 0, index)) for index in range(3)],
    )
    service = grouping(test_session, test_session_factory)
    await service.regroup(*WINDOW)
    auto_group_id = tours[0].group_id
    [outsider] = await seed(test_session, make_tour(title="Vatican Museums", participants=1))

    group = await service.manual_merge([tours[0].id, tours[1].id, outsider.id])

    # The automatic group kept one booking, so it was dissolved
    assert await group_ids(test_session) == {
        tours[0].id: group.id,
        tours[1].id: group.id,
        tours[2].id: None,
        outsider.id: group.id,
    }
    assert [g.id for g in await all_groups(test_session)] == [group.id]
    assert auto_group_id != group.id


@pytest.mark.asyncio
async def test_merged_tours_survive_automatic_grouping(test_session, test_session_factory):
    first, second, third = await seed(
        test_session,
        make_tour(participants=2, created_at=datetime(2026, 10, 1, 8, 0, 0)),
        make_tour(participants=2, created_at=datetime(2026, 10, 1, 8, 0, 1)),
        make_tour(participants=2, created_at=datetime(2026, 10, 1, 8, 0, 2)),
    )
    service = grouping(test_session, test_session_factory)
    group = await service.manual_merge([first.id, second.id])

    result = await service.regroup(*WINDOW)

    assert result.groups_created == 0
    assert await group_ids(test_session) == {first.id: group.id, second.id: group.id, third.id: None}


@pytest.mark.asyncio
async def test_unmerge_keeps_group_with_enough_members(test_session, test_session_factory):
    tours = await seed(test_session, *[make_tour(participants=2) for _ in range(3)])
    service = grouping(test_session, test_session_factory)
    group = await service.manual_merge([tour.id for tour in tours])

    outcome = await service.unmerge(tours[2].id)

    assert outcome.group_id == group.id
    assert outcome.group_dissolved is False
    [remaining] = await all_groups(test_session)
    assert remaining.total_pax == 4
    assert (await group_ids(test_session))[tours[2].id] is None


@pytest.mark.asyncio
async def test_unmerge_dissolves_group_left_with_one_tour(test_session, test_session_factory):
    first, second = await seed(test_session, make_tour(), make_tour())
    service = grouping(test_session, test_session_factory)
    await service.manual_merge([first.id, second.id])

    outcome = await service.unmerge(first.id)

    assert outcome.group_dissolved is True
    assert await all_groups(test_session) == []
    assert set((await group_ids(test_session)).values()) == {None}


@pytest.mark.asyncio
async def test_unmerge_of_ungrouped_tour_is_rejected(test_session, test_session_factory):
    [tour] = await seed(test_session, make_tour())

    with pytest.raises(GroupOperationError, match="not in any group"):
        await grouping(test_session, test_session_factory).unmerge(tour.id)


@pytest.mark.asyncio
async def test_dissolve_releases_every_tour(test_session, test_session_factory):
    tours = await seed(test_session, *[make_tour(participants=1) for _ in range(3)])
    service = grouping(test_session, test_session_factory)
    group = await service.manual_merge([tour.id for tour in tours])

    ungrouped = await service.dissolve(group.id)

    assert ungrouped == 3
    assert await all_groups(test_session) == []
    assert set((await group_ids(test_session)).values()) == {None}


@pytest.mark.asyncio
async def test_dissolve_unknown_group(test_session, test_session_factory):
    with pytest.raises(GroupNotFoundError):
        await grouping(test_session, test_session_factory).dissolve(uuid4())


@pytest.mark.asyncio
async def test_operator_change_fails_fast_when_lock_is_held(test_session, test_session_factory):
    first, second = await seed(test_session, make_tour(), make_tour())
    holder = NamedLock(test_session_factory, "auto_group")
    assert await holder.acquire(timeout=0) is True

    try:
        with pytest.raises(GroupingBusyError):
            await grouping(test_session, test_session_factory).manual_merge([first.id, second.id])
    finally:
        await holder.release()

    assert await all_groups(test_session) == []
