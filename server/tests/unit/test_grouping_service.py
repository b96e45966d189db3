"""Unit tests for automatic tour grouping."""

from datetime import date, datetime, time

import pytest
from sqlalchemy import select

from booking_sync.core.locks import NamedLock
from booking_sync.models.engine_lock import EngineLock
from booking_sync.models.tour import Tour
from booking_sync.models.tour_group import TourGroup
from booking_sync.services.grouping_service import GroupingService, bucket_key, normalize_time, pack_bins
from factories import make_tour

WINDOW = (date(2026, 11, 1), date(2026, 11, 30))


def seeded(*sizes, title="Uffizi Gallery Tour", **fields):
    """Tours sharing one departure, created in the given order."""
    return [
        make_tour(title=title, participants=size, created_at=datetime(2026, 10, 1, 8, 0, index), **fields)
        for index, size in enumerate(sizes)
    ]


async def run_grouping(session, session_factory, capacity=9):
    lock = NamedLock(session_factory, "auto_group")
    service = GroupingService(session, lock, capacity=capacity, lock_timeout=0)
    return await service.regroup(*WINDOW)


async def all_groups(session):
    return list((await session.execute(select(TourGroup))).scalars().all())


def test_pack_bins_closes_bin_before_overflow():
    assert pack_bins([5, 4, 6, 3], 9, lambda size: size) == [[5, 4], [6, 3]]
    assert pack_bins([5, 6], 9, lambda size: size) == [[5], [6]]
    assert pack_bins([12, 1], 9, lambda size: size) == [[12], [1]]
    assert pack_bins([], 9, lambda size: size) == []


def test_bucket_key_normalizes_title_and_time():
    assert bucket_key("  Uffizi   GALLERY tour ", date(2026, 11, 10), "9:00:00") == (
        bucket_key("uffizi gallery tour", date(2026, 11, 10), time(9, 0))
    )
    assert normalize_time("14:5") == "14:05"


@pytest.mark.asyncio
async def test_co_departing_tours_share_one_group(test_session, test_session_factory):
    tours = seeded(3, 4, 2)
    tours[1].title = "Uffizi gallery  tour "
    tours[2].guide_id = 42
    test_session.add_all(tours)
    await test_session.commit()

    result = await run_grouping(test_session, test_session_factory)

    assert result.groups_created == 1
    assert result.tours_grouped == 3
    groups = await all_groups(test_session)
    assert len(groups) == 1
    group = groups[0]
    assert group.total_pax == 9
    assert group.max_pax == 9
    assert group.is_manual_merge is False
    assert group.guide_id == 42
    assert group.display_name == "Uffizi Gallery Tour"
    assert (group.group_date, group.group_time) == (date(2026, 11, 10), time(9, 0))
    assert {tour.group_id for tour in tours} == {group.id}


@pytest.mark.asyncio
async def test_bookings_over_capacity_are_not_forced_together(test_session, test_session_factory):
    """Five and six travellers exceed nine, so each stays alone."""
    tours = seeded(5, 6)
    test_session.add_all(tours)
    await test_session.commit()

    result = await run_grouping(test_session, test_session_factory)

    assert result.groups_created == 0
    assert result.tours_grouped == 0
    assert await all_groups(test_session) == []
    assert all(tour.group_id is None for tour in tours)


@pytest.mark.asyncio
async def test_large_bucket_splits_into_sequential_bins(test_session, test_session_factory):
    tours = seeded(5, 4, 6, 3)
    test_session.add_all(tours)
    await test_session.commit()

    result = await run_grouping(test_session, test_session_factory)

    assert result.groups_created == 2
    assert tours[0].group_id == tours[1].group_id
    assert tours[2].group_id == tours[3].group_id
    assert tours[0].group_id != tours[2].group_id
    assert sorted(group.total_pax for group in await all_groups(test_session)) == [9, 9]


@pytest.mark.asyncio
async def test_different_departures_are_not_grouped(test_session, test_session_factory):
    test_session.add_all([
        make_tour(participants=2, start=time(9, 0)),
        make_tour(participants=2, start=time(10, 0)),
        make_tour(participants=2, day=date(2026, 11, 11)),
        make_tour(title="Vatican Museums", participants=2),
    ])
    await test_session.commit()

    result = await run_grouping(test_session, test_session_factory)

    assert result.groups_created == 0
    assert await all_groups(test_session) == []


@pytest.mark.asyncio
async def test_regroup_reuses_existing_group(test_session, test_session_factory):
    tours = seeded(2, 2)
    test_session.add_all(tours)
    await test_session.commit()

    await run_grouping(test_session, test_session_factory)
    group_id = tours[0].group_id

    late = make_tour(participants=3, created_at=datetime(2026, 10, 2, 8, 0))
    test_session.add(late)
    await test_session.commit()

    result = await run_grouping(test_session, test_session_factory)

    assert result.groups_created == 0
    assert result.groups_updated == 1
    assert late.group_id == group_id
    groups = await all_groups(test_session)
    assert len(groups) == 1
    assert groups[0].total_pax == 7


@pytest.mark.asyncio
async def test_manual_groups_are_left_alone(test_session, test_session_factory):
    manual = TourGroup(
        group_date=date(2026, 11, 10),
        group_time=time(9, 0),
        display_name="Operator merge",
        max_pax=12,
        total_pax=4,
        is_manual_merge=True,
    )
    test_session.add(manual)
    await test_session.flush()
    members = seeded(2, 2, group_id=manual.id)
    loose = seeded(1, 1)
    for index, tour in enumerate(loose):
        tour.created_at = datetime(2026, 10, 3, 8, 0, index)
    test_session.add_all(members + loose)
    await test_session.commit()

    result = await run_grouping(test_session, test_session_factory)

    assert result.groups_created == 1
    assert all(tour.group_id == manual.id for tour in members)
    assert loose[0].group_id == loose[1].group_id != manual.id
    await test_session.refresh(manual)
    assert manual.total_pax == 4
    assert manual.max_pax == 12


@pytest.mark.asyncio
async def test_cancelled_booking_leaves_its_group(test_session, test_session_factory):
    tours = seeded(2, 3)
    test_session.add_all(tours)
    await test_session.commit()
    await run_grouping(test_session, test_session_factory)

    tours[1].cancelled = True
    await test_session.commit()

    result = await run_grouping(test_session, test_session_factory)

    # The remaining booking is alone, so the group disappears
    assert result.groups_deleted == 1
    assert tours[0].group_id is None
    assert await all_groups(test_session) == []


@pytest.mark.asyncio
async def test_orphan_groups_are_deleted(test_session, test_session_factory):
    test_session.add_all([
        TourGroup(
            group_date=date(2027, 3, 1),
            group_time=time(9, 0),
            display_name="Stale",
            max_pax=9,
            total_pax=0,
        ),
        TourGroup(
            group_date=date(2027, 3, 2),
            group_time=time(9, 0),
            display_name="Empty merge",
            max_pax=9,
            total_pax=0,
            is_manual_merge=True,
        ),
    ])
    await test_session.commit()

    result = await run_grouping(test_session, test_session_factory)

    assert result.groups_deleted == 2
    assert await all_groups(test_session) == []


@pytest.mark.asyncio
async def test_tours_outside_window_are_ignored(test_session, test_session_factory):
    test_session.add_all(seeded(2, 2, day=date(2026, 12, 5)))
    await test_session.commit()

    result = await run_grouping(test_session, test_session_factory)

    assert result.groups_created == 0
    assert (await test_session.execute(select(Tour.group_id))).scalars().all() == [None, None]


@pytest.mark.asyncio
async def test_reused_group_drops_members_outside_the_window(test_session, test_session_factory):
    tours = seeded(4, 4)
    test_session.add_all(tours)
    await test_session.commit()
    await run_grouping(test_session, test_session_factory)
    group_id = tours[0].group_id

    # Moved past the window without going through the reconciler
    tours[1].date = date(2026, 12, 20)
    late = make_tour(participants=5, created_at=datetime(2026, 10, 2, 8, 0))
    test_session.add(late)
    await test_session.commit()

    await run_grouping(test_session, test_session_factory)

    assert tours[0].group_id == late.group_id == group_id
    assert tours[1].group_id is None
    group = (await all_groups(test_session))[0]
    assert group.total_pax == 9


@pytest.mark.asyncio
async def test_failed_pass_rolls_back_and_releases_lock(test_session, test_session_factory, monkeypatch):
    tours = seeded(2, 2)
    test_session.add_all(tours)
    await test_session.commit()
    await run_grouping(test_session, test_session_factory)
    group_id = tours[0].group_id

    test_session.add(make_tour(participants=3, created_at=datetime(2026, 10, 2, 8, 0)))
    test_session.add_all(seeded(1, 1, title="Vatican Museums"))
    await test_session.commit()

    async def broken_cleanup(self):
        raise RuntimeError("cleanup failed")

    monkeypatch.setattr(GroupingService, "_delete_orphans", broken_cleanup)
    result = await run_grouping(test_session, test_session_factory)

    assert result.error == "cleanup failed"
    rows = (await test_session.execute(select(Tour.title, Tour.participants, Tour.group_id))).all()
    assert sorted((title, pax, gid) for title, pax, gid in rows if gid is not None) == [
        ("Uffizi Gallery Tour", 2, group_id),
        ("Uffizi Gallery Tour", 2, group_id),
    ]
    groups = await all_groups(test_session)
    assert [(group.id, group.total_pax) for group in groups] == [(group_id, 4)]
    async with test_session_factory() as session:
        assert (await session.execute(select(EngineLock))).scalars().all() == []
