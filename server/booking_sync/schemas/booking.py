"""Booking-related Pydantic schemas."""

import datetime as dt
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TransformedBooking(BaseModel):
    """Upstream booking mapped onto the local tour fields."""

    external_booking_id: Optional[str] = Field(None, description="Upstream booking id")
    external_confirmation_code: Optional[str] = Field(None, description="Upstream confirmation code")

    title: str = Field(..., description="Tour title")
    date: dt.date = Field(..., description="Local departure date")
    time: dt.time = Field(..., description="Local departure time")
    duration: Optional[str] = Field(None, description="Human readable duration")
    language: Optional[str] = Field(None, description="Tour language")

    participants: int = Field(1, ge=1, description="Participant count")
    participant_names: Optional[List[Dict[str, str]]] = Field(None, description="Traveller first and last names, if supplied")
    customer_name: Optional[str] = Field(None, description="Lead customer name")
    customer_email: Optional[str] = Field(None, description="Lead customer email")
    customer_phone: Optional[str] = Field(None, description="Lead customer phone")
    booking_channel: Optional[str] = Field(None, description="Sales channel")

    total_amount_minor: int = Field(0, ge=0, description="Amount in minor units")
    currency: str = Field("EUR", min_length=3, max_length=3, description="ISO currency code")
    payment_status: str = Field("unpaid", description="paid, partial or unpaid")
    paid: bool = Field(False, description="True when the booking is fully paid")

    cancelled: bool = Field(False, description="Upstream cancellation state")
    raw_payload: Dict[str, Any] = Field(default_factory=dict, description="Verbatim upstream document")


class TourSummary(BaseModel):
    """Tour response schema used by the trigger surface."""

    id: str = Field(..., description="Local tour id")
    external_booking_id: Optional[str] = Field(None, description="Upstream booking id")
    external_confirmation_code: Optional[str] = Field(None, description="Upstream confirmation code")
    title: str = Field(..., description="Tour title")
    date: dt.date = Field(..., description="Departure date")
    time: str = Field(..., description="Departure time (HH:MM)")
    participants: int = Field(..., description="Participant count")
    customer_name: Optional[str] = Field(None, description="Lead customer name")
    language: Optional[str] = Field(None, description="Tour language")
    booking_channel: Optional[str] = Field(None, description="Sales channel")
    group_id: Optional[str] = Field(None, description="Operational group, if any")
    rescheduled: bool = Field(False, description="True if the booking moved since first import")
