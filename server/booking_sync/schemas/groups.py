"""Operator grouping Pydantic schemas."""

import datetime as dt
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .booking import TourSummary


class ManualMergeRequest(BaseModel):
    """Request schema for merging tours into an operator-built group."""

    tour_ids: List[UUID] = Field(..., min_length=2, description="Tours to merge; the first one sets the departure")
    display_name: Optional[str] = Field(None, max_length=255, description="Group name, defaults to the first tour's title")
    notes: Optional[str] = Field(None, max_length=2000, description="Operator notes")


class UnmergeRequest(BaseModel):
    """Request schema for taking one tour out of its group."""

    tour_id: UUID = Field(..., description="Tour to remove from its group")


class DissolveRequest(BaseModel):
    """Request schema for deleting a group."""

    group_id: UUID = Field(..., description="Group to dissolve")


class GroupSummary(BaseModel):
    """Tour group response schema."""

    id: str = Field(..., description="Group id")
    group_date: dt.date = Field(..., description="Departure date")
    group_time: str = Field(..., description="Departure time (HH:MM)")
    display_name: str = Field(..., description="Group name")
    notes: Optional[str] = Field(None, description="Operator notes")
    guide_id: Optional[int] = Field(None, description="Assigned guide")
    max_pax: int = Field(..., description="Capacity")
    total_pax: int = Field(..., description="Travellers in the group")
    is_manual_merge: bool = Field(..., description="True for operator-built groups")
    tours: List[TourSummary] = Field(default_factory=list, description="Member bookings")


class UnmergeResult(BaseModel):
    """Outcome of removing a tour from its group."""

    tour_id: str = Field(..., description="Tour that left the group")
    group_id: str = Field(..., description="Group the tour was in")
    group_dissolved: bool = Field(..., description="True when the group had too few members left and was deleted")


class DissolveResult(BaseModel):
    """Outcome of dissolving a group."""

    group_id: str = Field(..., description="Deleted group")
    tours_ungrouped: int = Field(..., description="Tours released from the group")
