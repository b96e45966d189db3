"""Sync run log model definition."""

import datetime as dt
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, DateTime, Float, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


class SyncStatus(str, Enum):
    """Lifecycle states of a sync run."""
    STARTED = "started"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class SyncType(str, Enum):
    """How a sync run was requested."""
    MANUAL = "manual"
    AUTO = "auto"
    FULL = "full"


class SyncLog(Base):
    """Audit record of one synchronization pass."""

    __tablename__ = "sync_logs"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Request
    sync_type: Mapped[str] = mapped_column(String(20), nullable=False, default=SyncType.MANUAL.value)
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    triggered_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Outcome
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SyncStatus.STARTED.value, index=True)
    bookings_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bookings_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bookings_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bookings_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bookings_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    groups_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tours_grouped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Timestamps
    created_at: Mapped[dt.datetime] = mapped_column(
        nullable=False,
        default=dt.datetime.utcnow,
        server_default=func.now(),
        index=True
    )
    completed_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "status IN ('started', 'completed', 'partial', 'failed')",
            name="ck_sync_log_status_valid"
        ),
        CheckConstraint(
            "sync_type IN ('manual', 'auto', 'full')",
            name="ck_sync_log_type_valid"
        ),
        CheckConstraint("end_date >= start_date", name="ck_sync_log_window_ordered"),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncLog(id={self.id}, type={self.sync_type}, status={self.status}, "
            f"window={self.start_date}..{self.end_date})>"
        )
