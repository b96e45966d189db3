"""Reconciler applying transformed upstream bookings to the local mirror."""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import StorageError
from ..models.tour import Tour
from ..models.tour_group import TourGroup
from ..schemas.booking import TransformedBooking

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    """What reconciling a booking did to the local store."""
    CREATED = "created"
    UPDATED = "updated"


# Fields the upstream owns and that are overwritten on every sync.
# Payment fields, guide assignment and group membership belong to other
# subsystems and are only set when a tour is first created. A reschedule
# is the exception: it takes the tour out of its automatic group.
UPSTREAM_FIELDS = (
    "title",
    "duration",
    "language",
    "participants",
    "participant_names",
    "customer_name",
    "customer_email",
    "customer_phone",
    "booking_channel",
    "cancelled",
    "raw_payload",
)


class Reconciler:
    """Idempotent create-or-update of tours from upstream bookings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_existing(self, booking: TransformedBooking) -> Optional[Tour]:
        """
        Find the local tour matching either upstream identifier.

        Args:
            booking: Transformed upstream booking

        Returns:
            The matching tour, or None
        """
        conditions = []
        if booking.external_booking_id:
            conditions.append(Tour.external_booking_id == booking.external_booking_id)
        if booking.external_confirmation_code:
            conditions.append(Tour.external_confirmation_code == booking.external_confirmation_code)
        if not conditions:
            return None

        result = await self.db.execute(
            select(Tour).where(or_(*conditions)).order_by(Tour.created_at).limit(1)
        )
        return result.scalar_one_or_none()

    def _create(self, booking: TransformedBooking, now: datetime) -> Tour:
        tour = Tour(
            external_booking_id=booking.external_booking_id,
            external_confirmation_code=booking.external_confirmation_code,
            date=booking.date,
            time=booking.time,
            total_amount_minor=booking.total_amount_minor,
            expected_amount_minor=booking.total_amount_minor,
            currency=booking.currency,
            payment_status=booking.payment_status,
            paid=booking.paid,
            needs_guide_assignment=True,
            needs_resync=False,
            rescheduled=False,
            last_synced_at=now,
        )
        for field in UPSTREAM_FIELDS:
            setattr(tour, field, getattr(booking, field))
        self.db.add(tour)
        return tour

    async def _leave_automatic_group(self, tour: Tour) -> None:
        if tour.group_id is None:
            return
        group = await self.db.get(TourGroup, tour.group_id)
        if group is not None and group.is_manual_merge:
            return
        if group is not None:
            group.total_pax = max(0, group.total_pax - tour.participants)
        logger.info(
            "Rescheduled tour left its automatic group",
            extra={"tour_id": str(tour.id), "group_id": str(tour.group_id)}
        )
        tour.group_id = None

    async def _update(self, tour: Tour, booking: TransformedBooking, now: datetime) -> None:
        if (tour.date, tour.time) != (booking.date, booking.time):
            await self._leave_automatic_group(tour)
            if not tour.rescheduled:
                # Only the first drift records where the booking started out
                tour.original_date = tour.date
                tour.original_time = tour.time
            tour.rescheduled = True
            tour.rescheduled_at = now

            logger.info(
                "Booking rescheduled upstream",
                extra={
                    "tour_id": str(tour.id),
                    "external_booking_id": booking.external_booking_id,
                    "from_date": tour.date.isoformat(),
                    "from_time": tour.time.strftime("%H:%M"),
                    "to_date": booking.date.isoformat(),
                    "to_time": booking.time.strftime("%H:%M"),
                }
            )
            tour.date = booking.date
            tour.time = booking.time

        for field in UPSTREAM_FIELDS:
            value = getattr(booking, field)
            if getattr(tour, field) != value:
                setattr(tour, field, value)

        # Identifiers are immutable once set, but fill them in when missing
        if tour.external_booking_id is None and booking.external_booking_id:
            tour.external_booking_id = booking.external_booking_id
        if tour.external_confirmation_code is None and booking.external_confirmation_code:
            tour.external_confirmation_code = booking.external_confirmation_code

        tour.needs_resync = False
        tour.last_synced_at = now

    async def reconcile(self, booking: TransformedBooking, now: Optional[datetime] = None) -> ReconcileOutcome:
        """
        Create or update the local tour for one upstream booking and commit it.

        Args:
            booking: Transformed upstream booking
            now: Sync timestamp, defaults to the current UTC time

        Returns:
            Whether a tour was created or updated

        Raises:
            StorageError: If the database rejects the change
        """
        now = now or datetime.utcnow()

        try:
            tour = await self.find_existing(booking)
            if tour is None:
                tour = self._create(booking, now)
                outcome = ReconcileOutcome.CREATED
            else:
                await self._update(tour, booking, now)
                outcome = ReconcileOutcome.UPDATED

            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Failed to store booking",
                extra={
                    "external_booking_id": booking.external_booking_id,
                    "confirmation_code": booking.external_confirmation_code,
                    "error": str(e),
                }
            )
            raise StorageError(
                f"Could not store booking {booking.external_confirmation_code or booking.external_booking_id}: {e}"
            ) from e

        logger.debug(
            "Booking reconciled",
            extra={
                "tour_id": str(tour.id),
                "external_booking_id": booking.external_booking_id,
                "outcome": outcome.value,
            }
        )
        return outcome
