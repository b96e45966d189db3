"""FastAPI dependencies for database, authentication, rate limiting and the upstream client."""

from typing import AsyncGenerator, Callable, Optional
from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import jwt
from jwt import PyJWTError
from datetime import datetime, timezone

from .database import get_async_session, get_session_factory
from .config import settings
from .errors import RateLimitExceeded
from .exceptions import AuthenticationRequiredError, RateLimitError
from .observability import metrics_collector
from ..clients.upstream import UpstreamClient
from ..services.rate_limit_service import RateLimiter


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database dependency that provides async database sessions.

    Yields:
        AsyncSession: Database session
    """
    async for session in get_async_session():
        yield session


def get_lock_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory used for lock leases taken during a request."""
    return get_session_factory()


def build_upstream_client() -> UpstreamClient:
    """Create a signed upstream client from settings."""
    return UpstreamClient(
        settings.upstream_base_url,
        settings.upstream_access_key,
        settings.upstream_secret_key,
        header_prefix=settings.provider_header_prefix,
        timeout=settings.upstream_timeout_seconds,
        max_retries=settings.upstream_max_retries,
        default_retry_after=settings.upstream_default_retry_after,
        booking_role=settings.upstream_booking_role,
        page_size=settings.upstream_page_size,
        max_pages=settings.upstream_max_pages,
    )


async def get_upstream_client() -> AsyncGenerator[UpstreamClient, None]:
    """
    Upstream client dependency, closed when the request finishes.

    Yields:
        UpstreamClient: Signed client configured from settings
    """
    async with build_upstream_client() as client:
        yield client


async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> dict:
    """
    Authentication dependency that validates Bearer tokens.

    Args:
        authorization: Authorization header with Bearer token

    Returns:
        dict: User information from validated token

    Raises:
        AuthenticationRequiredError: If token is invalid or missing
    """
    if not authorization:
        raise AuthenticationRequiredError("Authorization header missing")

    try:
        scheme, token = authorization.split()
    except ValueError:
        raise AuthenticationRequiredError("Invalid authorization header format")
    if scheme.lower() != "bearer":
        raise AuthenticationRequiredError("Invalid authentication scheme")

    try:
        payload = jwt.decode(
            token,
            settings.bearer_token_secret,
            algorithms=["HS256"]
        )
    except PyJWTError as e:
        raise AuthenticationRequiredError(f"Token validation failed: {str(e)}")

    user_id = payload.get("sub")
    if user_id is None:
        raise AuthenticationRequiredError("Invalid token payload")

    # Check token expiration
    exp = payload.get("exp")
    if exp and datetime.now(timezone.utc).timestamp() > exp:
        raise AuthenticationRequiredError("Token has expired")

    return {
        "user_id": user_id,
        "username": payload.get("username"),
        "email": payload.get("email"),
        "roles": payload.get("roles", []),
    }


def get_client_ip(request: Request) -> str:
    """
    Resolve the caller's address, honouring the usual proxy headers.

    Checked in order: CF-Connecting-IP, the first X-Forwarded-For entry,
    X-Real-IP, then the socket peer.
    """
    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip.strip()

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return request.client.host if request.client else "unknown"


def rate_limit(operation: str = "default") -> Callable:
    """
    Build a dependency enforcing the inbound limit of an operation class.

    Args:
        operation: Operation class, e.g. ``sync`` or ``read``

    Returns:
        Dependency raising ``RateLimitError`` once the window is used up
    """
    async def dependency(request: Request, db: AsyncSession = Depends(get_db)) -> None:
        limiter = RateLimiter(db)
        try:
            decision = await limiter.enforce(get_client_ip(request), operation)
        except RateLimitExceeded as e:
            metrics_collector.record_inbound_rate_limited(operation)
            raise RateLimitError.from_exceeded(e, window=limiter.window_seconds, instance=request.url.path)
        request.state.rate_limit = decision

    return dependency
