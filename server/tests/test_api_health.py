"""Health, readiness and metrics endpoint tests."""

from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from booking_sync.main import create_app
from booking_sync.models.sync_log import SyncLog, SyncStatus
from booking_sync.services.sync_service import local_today
from factories import make_tour


@pytest.mark.asyncio
async def test_api_health_endpoints():
    """Health and info endpoints answer without touching the database."""
    app = create_app()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "booking-sync"

        response = await client.get("/info")
        assert response.status_code == 200
        data = response.json()
        assert data["timezone"] == "Europe/Rome"
        assert data["grouping"]["capacity"] == 9
        assert data["sync"]["past_days"] == 7
        assert data["sync"]["default_days"] == 120
        assert data["sync"]["full_days"] == 365
        assert data["endpoints"]["webhook"] == "/v1/webhook/provider"
        assert data["endpoints"]["groups"] == "/v1/groups"


@pytest.mark.asyncio
async def test_ping_is_json_serializable():
    """The ping endpoint renders its timestamp as ISO 8601."""
    app = create_app()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/v1/health/ping")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "T" in data["timestamp"]
        assert data["local_date"] == local_today().isoformat()
        assert isinstance(data["upstream_configured"], bool)


@pytest.mark.asyncio
async def test_metrics_endpoint_reports_backlog(test_client, test_session):
    """Prometheus text includes the backlog gauges."""
    test_session.add_all([
        make_tour(day=local_today() + timedelta(days=2)),
        make_tour(day=local_today() + timedelta(days=2), needs_resync=True),
    ])
    await test_session.commit()

    response = await test_client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "sync_runs_total" in response.text
    assert "tours_awaiting_guide 2.0" in response.text
    assert "tours_needing_resync 1.0" in response.text


@pytest.mark.asyncio
async def test_ready_is_degraded_without_completed_sync(test_client):
    response = await test_client.post("/v1/health/ready")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "degraded"
    assert data["database"] is True
    assert data["last_sync_completed_at"] is None


@pytest.mark.asyncio
async def test_ready_is_healthy_after_recent_sync(test_client, test_session):
    today = local_today()
    test_session.add(SyncLog(
        sync_type="auto",
        start_date=today,
        end_date=today,
        status=SyncStatus.COMPLETED.value,
        completed_at=datetime.utcnow() - timedelta(hours=1),
    ))
    await test_session.commit()

    response = await test_client.post("/v1/health/ready")

    assert response.json()["status"] == "healthy"

