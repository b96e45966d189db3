"""Sync-related Pydantic schemas."""

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .booking import TourSummary


class SyncRequest(BaseModel):
    """Request schema for a routine sync."""

    start_date: Optional[date] = Field(None, description="First day of the window, defaults to today minus the past buffer")
    end_date: Optional[date] = Field(None, description="Last day of the window, defaults to today plus the routine horizon")
    sync_type: Literal["manual", "auto"] = Field("manual", description="How the run was requested")
    triggered_by: Optional[str] = Field(None, max_length=100, description="Operator or job that requested the run")

    @model_validator(mode="after")
    def check_window(self) -> "SyncRequest":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class FullSyncRequest(BaseModel):
    """Request schema for a full sync."""

    triggered_by: Optional[str] = Field(None, max_length=100, description="Operator or job that requested the run")


class GroupingResult(BaseModel):
    """Outcome of one grouping pass."""

    groups_created: int = Field(0, description="Groups created in this pass")
    groups_updated: int = Field(0, description="Existing groups reused in this pass")
    groups_deleted: int = Field(0, description="Orphan groups removed")
    tours_grouped: int = Field(0, description="Bookings assigned to a group")
    skipped: Optional[str] = Field(None, description="Reason the pass did not run")
    error: Optional[str] = Field(None, description="Error that rolled the pass back")


class SyncResult(BaseModel):
    """Structured outcome returned to whoever triggered a sync."""

    success: bool = Field(..., description="True unless the run failed outright")
    sync_log_id: Optional[str] = Field(None, description="Run log entry id")
    sync_type: str = Field(..., description="manual, auto or full")
    status: Literal["completed", "partial", "failed"] = Field(..., description="Final run status")
    start_date: date = Field(..., description="First day of the window")
    end_date: date = Field(..., description="Last day of the window")
    bookings_found: int = Field(0, description="Bookings returned by the upstream")
    bookings_synced: int = Field(0, description="Bookings created or updated")
    bookings_created: int = Field(0, description="Bookings created")
    bookings_updated: int = Field(0, description="Bookings updated")
    bookings_failed: int = Field(0, description="Bookings that could not be stored")
    errors: List[str] = Field(default_factory=list, description="First per-booking errors")
    grouping: Optional[GroupingResult] = Field(None, description="Grouping pass outcome, if one ran")
    duration_seconds: float = Field(0.0, description="Wall-clock run time")
    error_code: Optional[str] = Field(None, description="Machine readable reason of a failed run")
    error_message: Optional[str] = Field(None, description="Human readable reason of a failed run")


class SyncHistoryRequest(BaseModel):
    """Request schema for the sync history."""

    limit: int = Field(20, ge=1, le=100, description="Number of runs to return")


class SyncLogEntry(BaseModel):
    """Sync run log response schema."""

    id: str = Field(..., description="Run log id")
    sync_type: str = Field(..., description="manual, auto or full")
    status: str = Field(..., description="started, completed, partial or failed")
    start_date: date = Field(..., description="First day of the window")
    end_date: date = Field(..., description="Last day of the window")
    bookings_found: int = Field(0)
    bookings_synced: int = Field(0)
    bookings_created: int = Field(0)
    bookings_updated: int = Field(0)
    bookings_failed: int = Field(0)
    groups_created: int = Field(0)
    tours_grouped: int = Field(0)
    error_message: Optional[str] = Field(None)
    triggered_by: Optional[str] = Field(None)
    duration_seconds: Optional[float] = Field(None)
    created_at: datetime = Field(..., description="When the run started")
    completed_at: Optional[datetime] = Field(None, description="When the run finished")

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, value):
        return str(value) if value is not None else value

    class Config:
        from_attributes = True


class SyncHistoryResponse(BaseModel):
    """Response schema for the sync history."""

    items: List[SyncLogEntry] = Field(..., description="Runs, newest first")


class DateRange(BaseModel):
    """Inclusive date window."""

    start: date
    end: date


class SyncInfo(BaseModel):
    """Configured sync windows."""

    default_sync_days: int = Field(..., description="Days ahead covered by a routine sync")
    full_sync_days: int = Field(..., description="Days ahead covered by a full sync")
    past_days_buffer: int = Field(..., description="Days back covered by every sync")
    default_range: DateRange
    full_range: DateRange
    upstream_configured: bool = Field(..., description="True if signing credentials are set")


class UnassignedBookingsResponse(BaseModel):
    """Upcoming bookings that still need a guide."""

    items: List[TourSummary]
    count: int


class BackfillResult(BaseModel):
    """Outcome of a participant-name backfill."""

    scanned: int = Field(0, description="Tours without participant names")
    updated: int = Field(0, description="Tours whose names were recovered")
