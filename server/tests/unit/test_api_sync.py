"""API tests for the sync trigger surface and the webhook endpoint."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from booking_sync.core.config import settings
from booking_sync.models.sync_log import SyncLog
from booking_sync.models.webhook_event import WebhookEvent
from booking_sync.services.sync_service import local_today
from factories import make_tour, upstream_booking


class StaticUpstream:
    """Upstream stand-in returning a fixed list of bookings."""

    def __init__(self, bookings=None):
        self.bookings = bookings or []

    async def search_bookings(self, start, end):
        return self.bookings


@pytest.mark.asyncio
async def test_run_requires_auth(test_client):
    response = await test_client.post("/v1/sync/run", json={})

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_run_sync(test_client, auth_headers, upstream_client_override, test_session):
    day = local_today() + timedelta(days=10)
    upstream_client_override["client"] = StaticUpstream([
        upstream_booking(1, "A-1", start=f"{day.isoformat()}T09:00:00"),
    ])

    response = await test_client.post("/v1/sync/run", json={}, headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["status"] == "completed"
    assert data["sync_type"] == "manual"
    assert data["bookings_created"] == 1

    log = (await test_session.execute(select(SyncLog))).scalar_one()
    assert log.triggered_by == "ops"


@pytest.mark.asyncio
async def test_run_sync_without_body(test_client, auth_headers, upstream_client_override):
    upstream_client_override["client"] = StaticUpstream()

    response = await test_client.post("/v1/sync/run", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["bookings_found"] == 0


@pytest.mark.asyncio
async def test_run_sync_rejects_inverted_window(test_client, auth_headers, upstream_client_override):
    upstream_client_override["client"] = StaticUpstream()

    response = await test_client.post(
        "/v1/sync/run",
        json={"start_date": "2026-12-01", "end_date": "2026-11-01"},
        headers=auth_headers,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_failed_run_is_reported_in_body(test_client, auth_headers, upstream_client_override):
    upstream_client_override["client"] = None

    response = await test_client.post("/v1/sync/run", json={"triggered_by": "cron"}, headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is False
    assert data["status"] == "failed"
    assert data["error_code"] == "SYNC_ENGINE_ERROR"


@pytest.mark.asyncio
async def test_full_sync(test_client, auth_headers, upstream_client_override):
    upstream_client_override["client"] = StaticUpstream()

    response = await test_client.post("/v1/sync/full", json={"triggered_by": "cron"}, headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["sync_type"] == "full"
    assert data["end_date"] == (local_today() + timedelta(days=365)).isoformat()


@pytest.mark.asyncio
async def test_sync_is_rate_limited(test_client, auth_headers, upstream_client_override):
    upstream_client_override["client"] = StaticUpstream()

    for _ in range(10):
        response = await test_client.post("/v1/sync/run", json={}, headers=auth_headers)
        assert response.status_code == 200

    response = await test_client.post("/v1/sync/run", json={}, headers=auth_headers)

    assert response.status_code == 429
    assert response.headers["X-RateLimit-Limit"] == "10"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert int(response.headers["Retry-After"]) > 0
    assert "X-RateLimit-Reset" in response.headers
    data = response.json()
    assert data["title"] == "Too Many Requests"
    assert data["code"] == "RATE_LIMITED"
    assert data["instance"] == "/v1/sync/run"


@pytest.mark.asyncio
async def test_rate_limit_is_per_client(test_client, auth_headers, upstream_client_override):
    upstream_client_override["client"] = StaticUpstream()

    for _ in range(10):
        await test_client.post("/v1/sync/run", json={}, headers=auth_headers)

    response = await test_client.post(
        "/v1/sync/run",
        json={},
        headers={**auth_headers, "X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
    )

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_history(test_client, auth_headers, upstream_client_override):
    upstream_client_override["client"] = StaticUpstream()
    await test_client.post("/v1/sync/run", json={}, headers=auth_headers)
    await test_client.post("/v1/sync/full", json={}, headers=auth_headers)

    response = await test_client.post("/v1/sync/history", json={"limit": 5}, headers=auth_headers)

    assert response.status_code == 200
    items = response.json()["items"]
    assert len(items) == 2
    assert {item["sync_type"] for item in items} == {"manual", "full"}


@pytest.mark.asyncio
async def test_history_limit_is_validated(test_client, auth_headers):
    response = await test_client.post("/v1/sync/history", json={"limit": 500}, headers=auth_headers)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_info(test_client, auth_headers):
    response = await test_client.post("/v1/sync/info", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["default_sync_days"] == 120
    assert data["default_range"]["start"] == (local_today() - timedelta(days=7)).isoformat()


@pytest.mark.asyncio
async def test_unassigned(test_client, auth_headers, test_session):
    test_session.add_all([
        make_tour(title="Upcoming", day=local_today() + timedelta(days=3)),
        make_tour(title="Covered", day=local_today() + timedelta(days=3), needs_guide_assignment=False),
    ])
    await test_session.commit()

    response = await test_client.post("/v1/sync/unassigned", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 1
    assert data["items"][0]["title"] == "Upcoming"


@pytest.mark.asyncio
async def test_backfill(test_client, auth_headers, test_session):
    payload = upstream_booking(1, "A-1")
    payload["productBookings"][0]["specialRequests"] = "Traveler 1:\nFirst Name: Eva\nLast Name: Neri\n"
    test_session.add(make_tour(raw_payload=payload))
    await test_session.commit()

    response = await test_client.post("/v1/sync/backfill-participants", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"scanned": 1, "updated": 1}


@pytest.mark.asyncio
async def test_webhook_is_acknowledged_and_recorded(test_client, test_session):
    prefix = settings.provider_header_prefix

    response = await test_client.post(
        "/v1/webhook/provider",
        json={"bookingId": 321},
        headers={f"{prefix}-Topic": "bookings/create", f"{prefix}-Booking-Id": "321"},
    )

    assert response.status_code == 200
    assert response.json() == {"status": "received", "topic": "bookings/create"}
    event = (await test_session.execute(select(WebhookEvent))).scalar_one()
    assert event.booking_id == "321"
    assert event.processed is True


@pytest.mark.asyncio
async def test_webhook_with_bad_input_still_acknowledged(test_client, test_session):
    response = await test_client.post("/v1/webhook/provider", content=b"<xml/>")

    assert response.status_code == 200
    assert response.json()["topic"] == ""
    event = (await test_session.execute(select(WebhookEvent))).scalar_one()
    assert event.processed is False
    assert event.payload == "<xml/>"
