"""Test configuration and fixtures."""

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from booking_sync.core.database import Base
from booking_sync.core.dependencies import get_db, get_lock_session_factory, get_upstream_client
from booking_sync.models import *  # noqa: F403 - Import all models
from factories import make_token, upstream_booking

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def test_session_factory(test_engine):
    """Session factory bound to the test engine, also used for lock leases."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def test_session(test_session_factory):
    """Create a test database session."""
    async with test_session_factory() as session:
        yield session


@pytest.fixture
def upstream_client_override():
    """Holder for the upstream client the test app should hand to routes."""
    return {"client": None}


@pytest_asyncio.fixture(scope="function")
async def test_app(test_session, test_session_factory, upstream_client_override):
    """Create a test FastAPI application."""
    from fastapi import FastAPI

    from booking_sync.core.errors import SyncEngineError
    from booking_sync.core.exceptions import (
        ProblemDetailsException,
        engine_error_handler,
        generic_exception_handler,
        problem_details_handler,
    )
    from booking_sync.routers import groups, health, metrics, sync, webhook

    # Create a simplified test app without lifespan
    app = FastAPI(
        title="Booking Sync API (Test)",
        description="Test version of the API",
        version="1.0.0-test",
    )

    # Register exception handlers
    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(SyncEngineError, engine_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "booking-sync",
            "version": "1.0.0",
            "environment": "test",
        }

    # Register API routers
    app.include_router(health.router)
    app.include_router(sync.router)
    app.include_router(groups.router)
    app.include_router(webhook.router)
    app.include_router(metrics.router)

    # Override dependencies
    async def override_get_db():
        yield test_session

    async def override_get_upstream_client():
        yield upstream_client_override["client"]

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_lock_session_factory] = lambda: test_session_factory
    app.dependency_overrides[get_upstream_client] = override_get_upstream_client

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app):
    """Create a test HTTP client."""
    from httpx import ASGITransport
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers():
    """Authorization header for an operator."""
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def sample_booking():
    """One upstream booking document."""
    return upstream_booking(101, "ABC-101")
