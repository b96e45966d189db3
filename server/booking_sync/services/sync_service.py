"""Sync orchestrator pulling upstream bookings into the local store."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, List, Optional, Tuple
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..clients.upstream import UpstreamClient
from ..core.config import settings
from ..core.database import get_session_factory
from ..core.errors import BookingTransformError, StorageError, SyncEngineError
from ..core.exceptions import InvalidSyncWindowError
from ..core.locks import NamedLock
from ..core.observability import get_tracer, metrics_collector
from ..models.sync_log import SyncLog, SyncStatus, SyncType
from ..models.tour import Tour
from ..schemas.booking import TourSummary
from ..schemas.sync import (
    BackfillResult,
    DateRange,
    GroupingResult,
    SyncInfo,
    SyncLogEntry,
    SyncResult,
)
from .booking_transformer import parse_participant_names, transform_booking
from .grouping_service import GroupingService
from .reconciler import ReconcileOutcome, Reconciler

logger = logging.getLogger(__name__)
audit_log = structlog.get_logger("booking_sync.audit")

SYNC_TIMEOUT = "SYNC_TIMEOUT"
INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class SyncBacklog:
    """Snapshot of outstanding work, published as gauges."""

    awaiting_guide: int
    needing_resync: int
    last_completed_at: Optional[datetime]


@dataclass
class RunCounts:
    """Counters accumulated while a run is in progress."""

    found: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    grouping: Optional[GroupingResult] = None

    @property
    def synced(self) -> int:
        return self.created + self.updated

    def status(self) -> SyncStatus:
        if self.failed == 0:
            return SyncStatus.COMPLETED
        if self.synced > 0:
            return SyncStatus.PARTIAL
        return SyncStatus.FAILED


def _booking_ref(raw: Any) -> str:
    if isinstance(raw, dict):
        return str(raw.get("confirmationCode") or raw.get("id") or "unknown")
    return "unknown"


def _transform(raw: Any, tz: ZoneInfo):
    # Any failure on a malformed document stays a per-booking failure
    try:
        return transform_booking(raw, tz)
    except BookingTransformError:
        raise
    except Exception as e:
        raise BookingTransformError(
            f"Could not read booking {_booking_ref(raw)}: {e}",
            details={"exception": type(e).__name__},
        ) from e


def local_today() -> date:
    """Current date in the configured local timezone."""
    return datetime.now(ZoneInfo(settings.local_timezone)).date()


def default_window(full: bool = False, today: Optional[date] = None) -> Tuple[date, date]:
    """
    Compute the default sync window.

    Args:
        full: Use the full-sync horizon instead of the routine one
        today: Reference day, defaults to today in the local timezone

    Returns:
        Inclusive (start, end) dates
    """
    today = today or local_today()
    ahead = settings.sync_full_days if full else settings.sync_default_days
    return today - timedelta(days=settings.sync_past_days), today + timedelta(days=ahead)


def tour_summary(tour: Tour) -> TourSummary:
    """Render a tour for the trigger surface."""
    return TourSummary(
        id=str(tour.id),
        external_booking_id=tour.external_booking_id,
        external_confirmation_code=tour.external_confirmation_code,
        title=tour.title,
        date=tour.date,
        time=tour.time.strftime("%H:%M"),
        participants=tour.participants,
        customer_name=tour.customer_name,
        language=tour.language,
        booking_channel=tour.booking_channel,
        group_id=str(tour.group_id) if tour.group_id else None,
        rescheduled=tour.rescheduled,
    )


class SyncService:
    """Service running sync passes and answering questions about them."""

    def __init__(
        self,
        db: AsyncSession,
        client: Optional[UpstreamClient] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.db = db
        self.client = client
        self.session_factory = session_factory or get_session_factory()
        self.timeout_seconds = timeout_seconds or settings.sync_timeout_seconds

    def _grouping_service(self) -> GroupingService:
        lock = NamedLock(
            self.session_factory,
            settings.grouping_lock_name,
            lease_seconds=settings.lock_lease_seconds,
        )
        return GroupingService(self.db, lock)

    async def _open_log(self, sync_type: str, start: date, end: date, triggered_by: Optional[str]) -> UUID:
        log = SyncLog(
            sync_type=sync_type,
            start_date=start,
            end_date=end,
            triggered_by=triggered_by,
            status=SyncStatus.STARTED.value,
        )
        self.db.add(log)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Could not open sync log: {e}") from e
        return log.id

    async def _close_log(
        self,
        log_id: UUID,
        status: SyncStatus,
        counts: RunCounts,
        duration: float,
        error_message: Optional[str],
    ) -> bool:
        try:
            log = await self.db.get(SyncLog, log_id)
            if log is None:
                return False
            log.status = status.value
            log.bookings_found = counts.found
            log.bookings_synced = counts.synced
            log.bookings_created = counts.created
            log.bookings_updated = counts.updated
            log.bookings_failed = counts.failed
            if counts.grouping is not None:
                log.groups_created = counts.grouping.groups_created
                log.tours_grouped = counts.grouping.tours_grouped
            if error_message:
                log.error_message = error_message[:settings.sync_error_summary_length]
            log.duration_seconds = round(duration, 3)
            log.completed_at = datetime.utcnow()
            await self.db.commit()
            return True
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Could not close sync log",
                extra={"sync_log_id": str(log_id), "status": status.value, "error": str(e)}
            )
            return False

    async def _run(self, start: date, end: date, counts: RunCounts) -> None:
        if self.client is None:
            raise SyncEngineError("Upstream client is not configured")

        bookings = await self.client.search_bookings(start, end)
        counts.found = len(bookings)

        tz = ZoneInfo(settings.local_timezone)
        reconciler = Reconciler(self.db)
        now = datetime.utcnow()

        for raw in bookings:
            try:
                booking = _transform(raw, tz)
                outcome = await reconciler.reconcile(booking, now=now)
            except SyncEngineError as e:
                counts.failed += 1
                metrics_collector.record_booking_failed(e.code)
                if len(counts.errors) < settings.sync_max_error_messages:
                    counts.errors.append(f"Booking {_booking_ref(raw)}: {e.message}")
                logger.warning(
                    "Booking could not be synced",
                    extra={"booking": _booking_ref(raw), "error_code": e.code, "error": e.message}
                )
                continue

            if outcome is ReconcileOutcome.CREATED:
                counts.created += 1
            else:
                counts.updated += 1
            metrics_collector.record_booking_reconciled(outcome.value)

        if counts.synced > 0:
            counts.grouping = await self._grouping_service().regroup(start, end)

    async def sync(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        sync_type: str = SyncType.MANUAL.value,
        triggered_by: Optional[str] = None,
        today: Optional[date] = None,
    ) -> SyncResult:
        """
        Pull bookings for a window from the upstream and reconcile them.

        Per-booking failures are counted and do not stop the run. Failures
        of the run itself (credentials, upstream outage, storage, timeout)
        are returned as a failed result with an error code; the run log is
        closed either way.

        Args:
            start_date: First day, defaults to today minus the past buffer
            end_date: Last day, defaults to today plus the routine horizon
            sync_type: manual, auto or full
            triggered_by: Operator or job that requested the run
            today: Reference day for the default window

        Returns:
            Structured run outcome

        Raises:
            InvalidSyncWindowError: If the window is inverted
        """
        default_start, default_end = default_window(sync_type == SyncType.FULL.value, today)
        start = start_date or default_start
        end = end_date or default_end
        if start > end:
            raise InvalidSyncWindowError(start, end)

        counts = RunCounts()
        started = time.monotonic()
        error_code: Optional[str] = None
        error_message: Optional[str] = None

        try:
            log_id = await self._open_log(sync_type, start, end, triggered_by)
        except StorageError as e:
            logger.error("Sync could not start", extra={"sync_type": sync_type, "error": e.message})
            metrics_collector.record_sync_run(sync_type, SyncStatus.FAILED.value, 0.0)
            return SyncResult(
                success=False,
                sync_type=sync_type,
                status=SyncStatus.FAILED.value,
                start_date=start,
                end_date=end,
                error_code=e.code,
                error_message=e.message,
            )

        logger.info(
            "Sync started",
            extra={
                "sync_log_id": str(log_id),
                "sync_type": sync_type,
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
                "triggered_by": triggered_by,
            }
        )

        with get_tracer().start_as_current_span("sync.run") as span:
            span.set_attribute("sync.type", sync_type)
            span.set_attribute("sync.start_date", start.isoformat())
            span.set_attribute("sync.end_date", end.isoformat())

            try:
                await asyncio.wait_for(self._run(start, end, counts), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                error_code = SYNC_TIMEOUT
                error_message = f"Sync exceeded {self.timeout_seconds:g} seconds"
            except SyncEngineError as e:
                error_code = e.code
                error_message = e.message
            except SQLAlchemyError as e:
                error_code = StorageError.code
                error_message = str(e)
            except Exception as e:
                logger.exception("Unexpected error during sync", extra={"sync_log_id": str(log_id)})
                error_code = INTERNAL_ERROR
                error_message = str(e)

            if error_code:
                await self.db.rollback()
                status = SyncStatus.FAILED
                summary = error_message
            else:
                status = counts.status()
                summary = "; ".join(counts.errors) or None

            duration = time.monotonic() - started
            if not await self._close_log(log_id, status, counts, duration, summary) and not error_code:
                status = SyncStatus.FAILED
                error_code = StorageError.code
                error_message = "Could not close sync log"

            span.set_attribute("sync.status", status.value)
            span.set_attribute("sync.bookings_found", counts.found)
            span.set_attribute("sync.bookings_failed", counts.failed)

        metrics_collector.record_sync_run(sync_type, status.value, duration)

        log_extra = {
            "sync_log_id": str(log_id),
            "sync_type": sync_type,
            "status": status.value,
            "bookings_found": counts.found,
            "bookings_created": counts.created,
            "bookings_updated": counts.updated,
            "bookings_failed": counts.failed,
            "duration_seconds": round(duration, 3),
        }
        if error_code:
            logger.error("Sync failed", extra={**log_extra, "error_code": error_code, "error": error_message})
        else:
            logger.info("Sync finished", extra=log_extra)
        audit_log.info("sync_run", triggered_by=triggered_by, error_code=error_code, **log_extra)

        return SyncResult(
            success=status is not SyncStatus.FAILED,
            sync_log_id=str(log_id),
            sync_type=sync_type,
            status=status.value,
            start_date=start,
            end_date=end,
            bookings_found=counts.found,
            bookings_synced=counts.synced,
            bookings_created=counts.created,
            bookings_updated=counts.updated,
            bookings_failed=counts.failed,
            errors=counts.errors,
            grouping=counts.grouping,
            duration_seconds=round(duration, 3),
            error_code=error_code,
            error_message=error_message,
        )

    async def full_sync(self, triggered_by: Optional[str] = None, today: Optional[date] = None) -> SyncResult:
        """Sync the full horizon (past buffer through the full-sync days)."""
        start, end = default_window(full=True, today=today)
        return await self.sync(start, end, SyncType.FULL.value, triggered_by, today)

    async def get_sync_history(self, limit: int = 20) -> List[SyncLogEntry]:
        """Latest run records, newest first."""
        limit = max(1, min(limit, 100))
        result = await self.db.execute(
            select(SyncLog).order_by(SyncLog.created_at.desc(), SyncLog.id.desc()).limit(limit)
        )
        return [SyncLogEntry.model_validate(log) for log in result.scalars().all()]

    def get_sync_info(self, today: Optional[date] = None) -> SyncInfo:
        """Configured window sizes and the ranges they currently cover."""
        default_start, default_end = default_window(False, today)
        full_start, full_end = default_window(True, today)
        return SyncInfo(
            default_sync_days=settings.sync_default_days,
            full_sync_days=settings.sync_full_days,
            past_days_buffer=settings.sync_past_days,
            default_range=DateRange(start=default_start, end=default_end),
            full_range=DateRange(start=full_start, end=full_end),
            upstream_configured=settings.upstream_configured,
        )

    async def get_unassigned_bookings(self, today: Optional[date] = None) -> List[TourSummary]:
        """Upcoming, non-cancelled tours still waiting for a guide."""
        today = today or local_today()
        result = await self.db.execute(
            select(Tour)
            .where(
                Tour.needs_guide_assignment.is_(True),
                Tour.cancelled.is_(False),
                Tour.date >= today
            )
            .order_by(Tour.date, Tour.time, Tour.created_at)
        )
        return [tour_summary(tour) for tour in result.scalars().all()]

    async def backfill_participant_names(self) -> BackfillResult:
        """
        Re-derive traveller names from stored payloads for tours lacking them.

        Raises:
            StorageError: If the updates cannot be committed
        """
        result = await self.db.execute(
            select(Tour).where(Tour.participant_names.is_(None), Tour.raw_payload.is_not(None))
        )
        tours = list(result.scalars().all())

        backfill = BackfillResult(scanned=len(tours))
        for tour in tours:
            names = parse_participant_names(tour.raw_payload or {})
            if names:
                tour.participant_names = names
                backfill.updated += 1

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Participant backfill failed: {e}") from e

        logger.info(
            "Participant names backfilled",
            extra={"scanned": backfill.scanned, "updated": backfill.updated}
        )
        return backfill

    async def backlog(self, today: Optional[date] = None) -> SyncBacklog:
        """Count the work still waiting on operators or on the next sync."""
        today = today or local_today()
        awaiting = await self.db.scalar(
            select(func.count()).select_from(Tour).where(
                Tour.needs_guide_assignment.is_(True),
                Tour.cancelled.is_(False),
                Tour.date >= today
            )
        )
        resync = await self.db.scalar(
            select(func.count()).select_from(Tour).where(Tour.needs_resync.is_(True))
        )
        last_completed = await self.db.scalar(
            select(func.max(SyncLog.completed_at)).where(SyncLog.status == SyncStatus.COMPLETED.value)
        )
        return SyncBacklog(
            awaiting_guide=awaiting or 0,
            needing_resync=resync or 0,
            last_completed_at=last_completed,
        )
