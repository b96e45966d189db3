"""Builders for test data shared across the suites."""

import time as time_module
from datetime import date, time

import jwt

from booking_sync.core.config import settings
from booking_sync.models.tour import Tour


def make_token(username: str = "ops", expires_in: int = 3600) -> str:
    """Sign a bearer token the API accepts."""
    payload = {
        "sub": "user-1",
        "username": username,
        "exp": int(time_module.time()) + expires_in,
    }
    return jwt.encode(payload, settings.bearer_token_secret, algorithm="HS256")


def upstream_booking(
    booking_id,
    code,
    title="Uffizi Gallery Tour",
    start="2026-11-10T09:00:00+01:00",
    participants=2,
    **extra,
):
    """Upstream booking document in the shape returned by the booking search."""
    document = {
        "id": booking_id,
        "confirmationCode": code,
        "productBookings": [
            {
                "product": {"title": title, "duration": 120},
                "startDateTime": start,
                "participants": [{"count": participants}],
            }
        ],
        "customer": {"firstName": "Ada", "lastName": "Rossi", "email": "ada@example.com"},
        "totalPrice": 90.0,
        "currency": "EUR",
        "paymentStatus": "PAID",
    }
    document.update(extra)
    return document


def make_tour(
    title="Uffizi Gallery Tour",
    day=date(2026, 11, 10),
    start=time(9, 0),
    participants=2,
    **fields,
) -> Tour:
    """Local tour row for seeding the store directly."""
    return Tour(title=title, date=day, time=start, participants=participants, **fields)
