"""Health and readiness schemas."""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    """Service health as reported to health checks."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthResponse(BaseModel):
    """Liveness answer; never touches the database or the upstream."""

    status: HealthStatus = Field(..., description="Service status")
    timestamp: datetime = Field(..., description="Current server time (ISO 8601)")
    version: str = Field("1.0.0", description="API version")
    local_date: date = Field(..., description="Today in the business timezone")
    timezone: str = Field(..., description="Business timezone used for booking dates")
    upstream_configured: bool = Field(False, description="True if signing credentials are set")


class ReadinessResponse(BaseModel):
    """Readiness answer based on the store and the sync backlog."""

    status: HealthStatus
    database: bool = Field(..., description="True if the store answered")
    last_sync_completed_at: Optional[datetime] = Field(None, description="End of the latest completed run")
    tours_awaiting_guide: int = 0
    tours_needing_resync: int = 0


class UpstreamCheck(BaseModel):
    """Outcome of an upstream connection test."""

    success: bool = Field(..., description="True if the upstream answered a signed search")
    bookings: Optional[int] = Field(None, description="Bookings found on the checked day")
    code: Optional[str] = Field(None, description="Error code when the check failed")
    message: Optional[str] = Field(None, description="Error message when the check failed")
