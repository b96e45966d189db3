"""Tour group model definition."""

import datetime as dt
from typing import TYPE_CHECKING, Optional
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, Date, Integer, String, Text, Time, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base

if TYPE_CHECKING:
    from .tour import Tour


class TourGroup(Base):
    """Operational group of bookings departing together with one guide."""

    __tablename__ = "tour_groups"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Departure
    group_date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    group_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Assignment, copied from a member when the group is created
    guide_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Capacity
    max_pax: Mapped[int] = mapped_column(Integer, nullable=False, default=9)
    total_pax: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Operator-built groups are never touched by automatic grouping
    is_manual_merge: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

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
        CheckConstraint("total_pax >= 0", name="ck_tour_group_total_pax_non_negative"),
        CheckConstraint("max_pax > 0", name="ck_tour_group_max_pax_positive"),
    )

    # Relationships
    tours: Mapped[list["Tour"]] = relationship(
        "Tour",
        back_populates="group",
        passive_deletes=True
    )

    def __repr__(self) -> str:
        return (
            f"<TourGroup(id={self.id}, display_name={self.display_name!r}, "
            f"date={self.group_date}, time={self.group_time}, "
            f"pax={self.total_pax}/{self.max_pax}, manual={self.is_manual_merge})>"
        )
