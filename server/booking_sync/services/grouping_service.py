"""Automatic grouping of co-departing tours."""

import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, time
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Set, TypeVar, Union
from uuid import UUID, uuid4

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.errors import (
    GroupCapacityError,
    GroupingBusyError,
    GroupNotFoundError,
    GroupOperationError,
    StorageError,
    TourNotFoundError,
)
from ..core.locks import NamedLock
from ..core.observability import metrics_collector
from ..models.tour import Tour
from ..models.tour_group import TourGroup
from ..schemas.sync import GroupingResult

logger = logging.getLogger(__name__)
audit_log = structlog.get_logger("booking_sync.audit")

T = TypeVar("T")


def normalize_title(title: Optional[str]) -> str:
    """Trim, collapse internal whitespace and case-fold a tour title."""
    return " ".join((title or "").split()).casefold()


def normalize_time(value: Union[time, str, None]) -> str:
    """Render a departure time as ``HH:MM``."""
    if value is None:
        return ""
    if isinstance(value, time):
        return value.strftime("%H:%M")
    parts = str(value).strip().split(":")
    if len(parts) >= 2 and parts[0].isdigit() and parts[1].isdigit():
        return f"{int(parts[0]):02d}:{int(parts[1]):02d}"
    return str(value).strip()


def bucket_key(title: Optional[str], day: date, start: Union[time, str, None]) -> str:
    """Key shared by tours that depart together."""
    return f"{normalize_title(title)}|{day.isoformat()}|{normalize_time(start)}"


def pack_bins(items: Sequence[T], capacity: int, size: Callable[[T], int]) -> List[List[T]]:
    """
    Split items into consecutive bins without exceeding capacity.

    Items are taken in order. The current bin is closed when the next item
    would push it over capacity; an item larger than capacity gets a bin of
    its own.

    Args:
        items: Items in processing order
        capacity: Maximum total size of a bin
        size: Size of one item

    Returns:
        Bins in order, none of them empty
    """
    bins: List[List[T]] = []
    current: List[T] = []
    current_size = 0

    for item in items:
        weight = size(item)
        if current and current_size + weight > capacity:
            bins.append(current)
            current, current_size = [], 0
        current.append(item)
        current_size += weight

    if current:
        bins.append(current)
    return bins


@dataclass
class UnmergeOutcome:
    """Where an unmerged tour came from and whether its group survived."""

    tour_id: UUID
    group_id: UUID
    group_dissolved: bool


class GroupingService:
    """Service rebuilding automatic tour groups for a date window."""

    def __init__(
        self,
        db: AsyncSession,
        lock: NamedLock,
        capacity: Optional[int] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.db = db
        self.lock = lock
        self.capacity = capacity or settings.group_capacity
        self.lock_timeout = settings.grouping_lock_timeout_seconds if lock_timeout is None else lock_timeout

    async def _eligible_tours(self, start: date, end: date) -> List[Tour]:
        result = await self.db.execute(
            select(Tour)
            .outerjoin(TourGroup, Tour.group_id == TourGroup.id)
            .where(
                Tour.date >= start,
                Tour.date <= end,
                Tour.cancelled.is_(False),
                or_(Tour.group_id.is_(None), TourGroup.is_manual_merge.is_(False))
            )
            .order_by(Tour.title, Tour.date, Tour.time, Tour.created_at, Tour.id)
        )
        return list(result.scalars().all())

    async def _cancelled_members(self, start: date, end: date) -> List[Tour]:
        result = await self.db.execute(
            select(Tour)
            .join(TourGroup, Tour.group_id == TourGroup.id)
            .where(
                Tour.date >= start,
                Tour.date <= end,
                Tour.cancelled.is_(True),
                TourGroup.is_manual_merge.is_(False)
            )
        )
        return list(result.scalars().all())

    async def _strays(self, claimed: Set[UUID], placed: Set[UUID]) -> List[Tour]:
        if not claimed:
            return []
        query = select(Tour).where(Tour.group_id.in_(claimed))
        if placed:
            query = query.where(Tour.id.notin_(placed))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _load_groups(self, group_ids: Set[UUID]) -> Dict[UUID, TourGroup]:
        if not group_ids:
            return {}
        result = await self.db.execute(select(TourGroup).where(TourGroup.id.in_(group_ids)))
        return {group.id: group for group in result.scalars().all()}

    async def _refresh_totals(self, groups: Sequence[TourGroup]) -> None:
        if not groups:
            return
        result = await self.db.execute(
            select(Tour.group_id, func.coalesce(func.sum(Tour.participants), 0))
            .where(Tour.group_id.in_([group.id for group in groups]), Tour.cancelled.is_(False))
            .group_by(Tour.group_id)
        )
        totals = {group_id: int(total) for group_id, total in result.all()}
        for group in groups:
            group.total_pax = totals.get(group.id, 0)

    async def _delete_orphans(self) -> int:
        result = await self.db.execute(
            select(TourGroup.id).where(
                ~select(Tour.id).where(Tour.group_id == TourGroup.id).exists()
            )
        )
        orphan_ids = list(result.scalars().all())
        if orphan_ids:
            await self.db.execute(
                delete(TourGroup)
                .where(TourGroup.id.in_(orphan_ids))
                .execution_options(synchronize_session=False)
            )
        return len(orphan_ids)

    async def _regroup(self, start: date, end: date) -> GroupingResult:
        tours = await self._eligible_tours(start, end)
        groups = await self._load_groups({tour.group_id for tour in tours if tour.group_id})

        buckets: "OrderedDict[str, List[Tour]]" = OrderedDict()
        for tour in tours:
            buckets.setdefault(bucket_key(tour.title, tour.date, tour.time), []).append(tour)

        claimed: Set[UUID] = set()
        touched: Set[UUID] = set()
        placed: Set[UUID] = set()
        result = GroupingResult()

        for key, bucket in buckets.items():
            if len(bucket) < 2:
                continue

            for members in pack_bins(bucket, self.capacity, lambda tour: tour.participants):
                if len(members) < 2:
                    continue

                # Reuse an existing automatic group unless another bin already took it
                group = next(
                    (
                        groups[tour.group_id]
                        for tour in members
                        if tour.group_id in groups and tour.group_id not in claimed
                    ),
                    None
                )
                first = members[0]

                if group is None:
                    group = TourGroup(
                        id=uuid4(),
                        group_date=first.date,
                        group_time=first.time,
                        display_name=first.title,
                        guide_id=next((tour.guide_id for tour in members if tour.guide_id is not None), None),
                        max_pax=self.capacity,
                        total_pax=0,
                        is_manual_merge=False,
                    )
                    self.db.add(group)
                    groups[group.id] = group
                    result.groups_created += 1
                else:
                    group.group_date = first.date
                    group.group_time = first.time
                    result.groups_updated += 1

                claimed.add(group.id)
                group.total_pax = sum(tour.participants for tour in members)

                for tour in members:
                    if tour.group_id is not None and tour.group_id != group.id:
                        touched.add(tour.group_id)
                    tour.group_id = group.id
                    placed.add(tour.id)

                result.tours_grouped += len(members)

                logger.debug(
                    "Grouped departure",
                    extra={
                        "bucket": key,
                        "group_id": str(group.id),
                        "tours": len(members),
                        "total_pax": group.total_pax,
                    }
                )

        # Bookings left alone in their bin no longer share an automatic group
        for tour in tours:
            if tour.id not in placed and tour.group_id is not None:
                touched.add(tour.group_id)
                tour.group_id = None

        # Cancelled bookings drop out of automatic groups
        for tour in await self._cancelled_members(start, end):
            touched.add(tour.group_id)
            tour.group_id = None

        await self.db.flush()
        # A reused group holds exactly the members of its bin
        for tour in await self._strays(claimed, placed):
            tour.group_id = None

        await self.db.flush()
        groups.update(await self._load_groups(touched - set(groups)))
        await self._refresh_totals([groups[group_id] for group_id in (touched | claimed) if group_id in groups])
        await self.db.flush()
        result.groups_deleted = await self._delete_orphans()
        return result

    async def regroup(self, start: date, end: date) -> GroupingResult:
        """
        Rebuild automatic groups for tours departing within the window.

        The pass runs under the grouping lock and in a single transaction.
        If the lock is busy the pass is skipped; if anything fails, every
        change made by the pass is rolled back.

        Args:
            start: First day of the window
            end: Last day of the window

        Returns:
            Counts of created groups and grouped tours, or the skip/error reason
        """
        try:
            acquired = await self.lock.acquire(timeout=self.lock_timeout)
        except StorageError as e:
            logger.error("Grouping lock could not be requested", extra={"error": e.message})
            metrics_collector.record_grouping_skipped("error")
            return GroupingResult(error=e.message)

        if not acquired:
            logger.warning(
                "Grouping skipped, lock held elsewhere",
                extra={"lock": self.lock.name, "start": start.isoformat(), "end": end.isoformat()}
            )
            metrics_collector.record_grouping_skipped("lock_unavailable")
            return GroupingResult(skipped="lock_unavailable")

        try:
            result = await self._regroup(start, end)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "Grouping pass rolled back",
                extra={"start": start.isoformat(), "end": end.isoformat(), "error": str(e)},
                exc_info=True
            )
            metrics_collector.record_grouping_skipped("error")
            return GroupingResult(error=str(e))
        finally:
            await self.lock.release()

        metrics_collector.record_groups_created(result.groups_created)
        logger.info(
            "Grouping pass completed",
            extra={
                "start": start.isoformat(),
                "end": end.isoformat(),
                "groups_created": result.groups_created,
                "groups_updated": result.groups_updated,
                "groups_deleted": result.groups_deleted,
                "tours_grouped": result.tours_grouped,
            }
        )
        return result

    @asynccontextmanager
    async def _exclusive(self, operation: str) -> AsyncIterator[None]:
        """Hold the grouping lock and commit, or roll back, the operator change."""
        try:
            acquired = await self.lock.acquire(timeout=self.lock_timeout)
        except StorageError as e:
            raise GroupingBusyError(f"Grouping lock could not be requested: {e.message}") from e
        if not acquired:
            raise GroupingBusyError(
                f"Cannot {operation} while another grouping change is running",
                details={"lock": self.lock.name},
            )

        try:
            yield
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        finally:
            await self.lock.release()

    async def _tours_by_id(self, tour_ids: Sequence[UUID]) -> List[Tour]:
        result = await self.db.execute(
            select(Tour).where(Tour.id.in_(tour_ids)).execution_options(populate_existing=True)
        )
        found = {tour.id: tour for tour in result.scalars().all()}
        missing = [str(tour_id) for tour_id in tour_ids if tour_id not in found]
        if missing:
            raise TourNotFoundError(
                f"Tours not found: {', '.join(missing)}",
                details={"tour_ids": missing},
            )
        return [found[tour_id] for tour_id in tour_ids]

    async def _member_count(self, group_id: UUID) -> int:
        result = await self.db.execute(select(func.count()).select_from(Tour).where(Tour.group_id == group_id))
        return result.scalar_one()

    async def _detach(self, tour: Tour) -> bool:
        """
        Take a tour out of its group.

        A group left with one member or none is dissolved.

        Returns:
            Whether the group was dissolved
        """
        group_id = tour.group_id
        group = await self.db.get(TourGroup, group_id)
        tour.group_id = None
        if group is not None:
            group.total_pax = max(0, group.total_pax - tour.participants)
        await self.db.flush()

        if await self._member_count(group_id) > 1:
            return False
        await self.db.execute(
            update(Tour)
            .where(Tour.group_id == group_id)
            .values(group_id=None)
        )
        await self.db.execute(
            delete(TourGroup)
            .where(TourGroup.id == group_id)
            .execution_options(synchronize_session=False)
        )
        if group is not None:
            self.db.expunge(group)
        return True

    async def tours_of(self, group_id: UUID) -> List[Tour]:
        """Members of a group in departure order."""
        result = await self.db.execute(
            select(Tour)
            .where(Tour.group_id == group_id)
            .order_by(Tour.date, Tour.time, Tour.created_at)
        )
        return list(result.scalars().all())

    async def manual_merge(
        self,
        tour_ids: Sequence[UUID],
        display_name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> TourGroup:
        """
        Put the given tours into a new operator-built group.

        The tours leave whatever group they were in. The new group takes its
        departure from the first tour listed and is never changed by
        automatic grouping.

        Args:
            tour_ids: Tours to merge, at least two
            display_name: Group name, defaults to the first tour's title
            notes: Free-form operator notes

        Returns:
            The new group

        Raises:
            GroupOperationError: Fewer than two distinct tours were given
            TourNotFoundError: A tour id is unknown
            GroupCapacityError: The tours carry more travellers than a group takes
            GroupingBusyError: The grouping lock is held elsewhere
        """
        tour_ids = list(OrderedDict.fromkeys(tour_ids))
        if len(tour_ids) < 2:
            raise GroupOperationError("At least 2 tours are required for merging")

        async with self._exclusive("merge tours"):
            tours = await self._tours_by_id(tour_ids)
            total_pax = sum(tour.participants for tour in tours)
            if total_pax > self.capacity:
                raise GroupCapacityError(total_pax, self.capacity)

            for tour in tours:
                if tour.group_id is not None:
                    await self._detach(tour)

            first = tours[0]
            group = TourGroup(
                id=uuid4(),
                group_date=first.date,
                group_time=first.time,
                display_name=display_name or first.title,
                notes=notes,
                guide_id=next((tour.guide_id for tour in tours if tour.guide_id is not None), None),
                max_pax=self.capacity,
                total_pax=total_pax,
                is_manual_merge=True,
            )
            self.db.add(group)
            for tour in tours:
                tour.group_id = group.id

        logger.info(
            "Tours merged by operator",
            extra={"group_id": str(group.id), "tours": len(tours), "total_pax": total_pax}
        )
        audit_log.info("group_merged", group_id=str(group.id), tour_ids=[str(tour_id) for tour_id in tour_ids])
        return group

    async def unmerge(self, tour_id: UUID) -> UnmergeOutcome:
        """
        Take one tour out of its group.

        Raises:
            TourNotFoundError: The tour is unknown
            GroupOperationError: The tour is not in a group
            GroupingBusyError: The grouping lock is held elsewhere
        """
        async with self._exclusive("unmerge a tour"):
            [tour] = await self._tours_by_id([tour_id])
            if tour.group_id is None:
                raise GroupOperationError("Tour is not in any group", details={"tour_id": str(tour_id)})
            group_id = tour.group_id
            dissolved = await self._detach(tour)

        logger.info(
            "Tour removed from group",
            extra={"tour_id": str(tour_id), "group_id": str(group_id), "group_dissolved": dissolved}
        )
        audit_log.info("group_unmerged", tour_id=str(tour_id), group_id=str(group_id), group_dissolved=dissolved)
        return UnmergeOutcome(tour_id=tour_id, group_id=group_id, group_dissolved=dissolved)

    async def dissolve(self, group_id: UUID) -> int:
        """
        Delete a group and release all of its tours.

        Returns:
            Number of tours that were ungrouped

        Raises:
            GroupNotFoundError: The group does not exist
            GroupingBusyError: The grouping lock is held elsewhere
        """
        async with self._exclusive("dissolve a group"):
            group = await self.db.get(TourGroup, group_id)
            if group is None:
                raise GroupNotFoundError(f"Group {group_id} not found", details={"group_id": str(group_id)})
            result = await self.db.execute(
                update(Tour)
                .where(Tour.group_id == group_id)
                .values(group_id=None)
            )
            ungrouped = result.rowcount
            await self.db.delete(group)

        logger.info("Group dissolved", extra={"group_id": str(group_id), "tours_ungrouped": ungrouped})
        audit_log.info("group_dissolved", group_id=str(group_id), tours_ungrouped=ungrouped)
        return ungrouped
