"""Tour model definition.

A tour row is the local mirror of one upstream booking.
"""

import datetime as dt
from typing import TYPE_CHECKING, Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base

if TYPE_CHECKING:
    from .tour_group import TourGroup


class PaymentStatus:
    """Payment states recognised when a booking is first imported."""

    PAID = "paid"
    PARTIAL = "partial"
    UNPAID = "unpaid"


class Tour(Base):
    """Booking record reconciled from the upstream provider."""

    __tablename__ = "tours"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Upstream identity
    external_booking_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    external_confirmation_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    external_source: Mapped[str] = mapped_column(String(32), nullable=False, default="upstream")

    # Scheduling
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    duration: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    language: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Party
    participants: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    participant_names: Mapped[Optional[list[dict[str, str]]]] = mapped_column(JSON(none_as_null=True), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    booking_channel: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Payment information (minor units), initialised on import only
    total_amount_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expected_amount_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.UNPAID)
    paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Operational flags
    cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    needs_guide_assignment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    needs_resync: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    guide_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Reschedule capture
    rescheduled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_date: Mapped[Optional[dt.date]] = mapped_column(Date, nullable=True)
    original_time: Mapped[Optional[dt.time]] = mapped_column(Time, nullable=True)
    rescheduled_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    # Audit
    raw_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    # Weak reference to an operational group
    group_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("tour_groups.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Timestamps
    created_at: Mapped[dt.datetime] = mapped_column(
        nullable=False,
        default=dt.datetime.utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        nullable=False,
        default=dt.datetime.utcnow,
        onupdate=dt.datetime.utcnow,
        server_default=func.now()
    )

    # Constraints
    __table_args__ = (
        CheckConstraint("participants >= 1", name="ck_tour_participants_positive"),
        CheckConstraint("total_amount_minor >= 0", name="ck_tour_total_amount_non_negative"),
        CheckConstraint(
            "payment_status IN ('paid', 'partial', 'unpaid')",
            name="ck_tour_payment_status_valid"
        ),
    )

    # Relationships
    group: Mapped[Optional["TourGroup"]] = relationship("TourGroup", back_populates="tours")

    def __repr__(self) -> str:
        return (
            f"<Tour(id={self.id}, external_booking_id={self.external_booking_id}, "
            f"title={self.title!r}, date={self.date}, time={self.time})>"
        )
