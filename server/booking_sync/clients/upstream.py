"""Signed HTTP client for the upstream booking platform."""

import asyncio
import json
import logging
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from ..core.config import settings
from ..core.errors import (
    AuthenticationError,
    ProtocolError,
    RateLimitExceeded,
    SyncEngineError,
    TransportError,
    UpstreamHTTPError,
)
from ..core.observability import metrics_collector
from .booking_search import BOOKING_SEARCH_STRATEGIES, BookingSearchStrategy, SearchPage
from .signing import RequestBudget, signed_headers

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = (401, 403)


def extract_items(payload: Any) -> List[Dict[str, Any]]:
    """Pull the booking list out of a search response."""
    if isinstance(payload, dict):
        items = payload.get("items")
        if not isinstance(items, list):
            return []
    elif isinstance(payload, list):
        items = payload
    else:
        return []
    return [item for item in items if isinstance(item, dict)]


def _error_message(response: httpx.Response) -> str:
    """Best-effort error message from an upstream error response."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for key in ("message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value

    text = response.text[:200] if response.text else ""
    return text or response.reason_phrase or "Unknown error"


class UpstreamClient:
    """
    Client for the upstream booking API.

    Every request is signed, counted against the outbound request budget and
    retried after HTTP 429 using the provider's retry hint. Booking searches
    walk the ordered list of request shapes until one returns bookings.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        *,
        header_prefix: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        default_retry_after: Optional[int] = None,
        booking_role: Optional[str] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        budget: Optional[RequestBudget] = None,
        strategies: Sequence[BookingSearchStrategy] = BOOKING_SEARCH_STRATEGIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the client. Unset arguments fall back to application settings.

        Args:
            base_url: Upstream API root
            access_key: Public half of the signing credentials
            secret_key: Secret half of the signing credentials
            header_prefix: Prefix of the signing headers
            timeout: Per-request timeout in seconds
            max_retries: Retries after HTTP 429
            default_retry_after: Wait used when a 429 carries no hint
            booking_role: Role sent in booking-search filters
            page_size: Bookings requested per page
            max_pages: Page cap for paginated searches
            budget: Outbound request budget, shared if several clients coexist
            strategies: Ordered booking search request shapes
            transport: Optional httpx transport, used by tests
            sleep: Coroutine used to wait between retries
        """
        self.base_url = (base_url or settings.upstream_base_url).rstrip("/")
        self.access_key = access_key if access_key is not None else settings.upstream_access_key
        self.secret_key = secret_key if secret_key is not None else settings.upstream_secret_key
        self.header_prefix = header_prefix or settings.provider_header_prefix
        self.max_retries = settings.upstream_max_retries if max_retries is None else max_retries
        self.default_retry_after = default_retry_after or settings.upstream_default_retry_after
        self.booking_role = booking_role or settings.upstream_booking_role
        self.page_size = page_size or settings.upstream_page_size
        self.max_pages = max_pages or settings.upstream_max_pages
        self.budget = budget or RequestBudget(settings.upstream_requests_per_minute)
        self.strategies = tuple(strategies)
        self.sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.upstream_timeout_seconds,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "UpstreamClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _build_request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
    ) -> httpx.Request:
        content = None
        headers: Dict[str, str] = {}
        if body is not None:
            content = json.dumps(body)
            headers["Content-Type"] = "application/json;charset=UTF-8"

        request = self._client.build_request(method, path, params=params, content=content, headers=headers)

        # Sign the target exactly as it will go over the wire
        target = request.url.raw_path.decode("ascii")
        request.headers.update(
            signed_headers(self.access_key, self.secret_key, method, target, self.header_prefix)
        )
        return request

    def _retry_after(self, response: httpx.Response) -> int:
        header = response.headers.get("Retry-After")
        if header and header.strip().isdigit():
            return int(header.strip())

        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            hint = body.get("retryAfter")
            if isinstance(hint, (int, float)) and hint >= 0:
                return int(hint)
            if isinstance(hint, str) and hint.isdigit():
                return int(hint)

        return self.default_retry_after

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(
                "Upstream returned a non-JSON response",
                details={
                    "status_code": response.status_code,
                    "body_preview": response.text[:200],
                },
            ) from e

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        """
        Send a signed request.

        Args:
            method: HTTP method
            path: Path relative to the API root, optionally with a query string
            body: JSON body
            params: Query parameters appended to the path

        Returns:
            Status code and decoded JSON body (None for an empty body)

        Raises:
            TransportError: On network failures and timeouts
            ProtocolError: If a successful response is not JSON
            AuthenticationError: If the upstream rejects our credentials
            UpstreamHTTPError: For any other error status
            RateLimitExceeded: If the request budget is spent or 429 retries run out
        """
        method = method.upper()
        attempt = 0

        while True:
            self.budget.acquire()
            request = self._build_request(method, path, body, params)

            try:
                response = await self._client.send(request)
            except httpx.TimeoutException as e:
                raise TransportError(f"Upstream request timed out: {method} {path}") from e
            except httpx.TransportError as e:
                raise TransportError(f"Upstream request failed: {method} {path}: {e}") from e

            metrics_collector.record_upstream_request(method, response.status_code)

            if response.status_code == 429:
                retry_after = self._retry_after(response)
                if attempt >= self.max_retries:
                    logger.error(
                        "Upstream rate limit persisted after retries",
                        extra={"method": method, "path": path, "attempts": attempt + 1}
                    )
                    raise RateLimitExceeded(
                        f"Upstream rate limit exceeded after {attempt} retries",
                        retry_after=retry_after,
                    )

                attempt += 1
                metrics_collector.record_upstream_retry()
                logger.warning(
                    "Upstream rate limited, backing off",
                    extra={
                        "method": method,
                        "path": path,
                        "retry_after": retry_after,
                        "attempt": attempt,
                    }
                )
                await self.sleep(retry_after)
                continue

            if response.status_code >= 400:
                message = _error_message(response)
                logger.warning(
                    "Upstream returned an error",
                    extra={"method": method, "path": path, "status_code": response.status_code, "error": message}
                )
                if response.status_code in AUTH_FAILURE_STATUSES:
                    raise AuthenticationError(response.status_code, message)
                raise UpstreamHTTPError(response.status_code, message)

            return response.status_code, self._decode(response)

    async def _run_strategy(self, strategy: BookingSearchStrategy, start: date, end: date) -> List[Dict[str, Any]]:
        bookings: List[Dict[str, Any]] = []
        seen_ids = set()
        page = 0

        while True:
            search_page = SearchPage(start, end, page, self.page_size, self.booking_role)
            _, payload = await self.request(
                strategy.method,
                strategy.path,
                body=strategy.body(search_page),
                params=strategy.query(search_page),
            )
            items = extract_items(payload)

            for item in items:
                booking_id = item.get("id")
                if booking_id is not None:
                    if booking_id in seen_ids:
                        continue
                    seen_ids.add(booking_id)
                bookings.append(item)

            if not strategy.paginated or not items:
                break

            total_hits = payload.get("totalHits") if isinstance(payload, dict) else None
            if not isinstance(total_hits, int):
                total_hits = len(items)
            page += 1
            if page * self.page_size >= total_hits or page >= self.max_pages:
                break

        return bookings

    async def search_bookings(self, start: date, end: date) -> List[Dict[str, Any]]:
        """
        Fetch bookings starting within the window, trying each request shape in order.

        Args:
            start: First day of the window
            end: Last day of the window

        Returns:
            Raw booking documents from the first request shape that returned any

        Raises:
            SyncEngineError: The last error, if every request shape failed
        """
        last_error: Optional[SyncEngineError] = None
        any_succeeded = False

        for strategy in self.strategies:
            try:
                bookings = await self._run_strategy(strategy, start, end)
            except SyncEngineError as e:
                last_error = e
                logger.warning(
                    "Booking search shape failed",
                    extra={"strategy": strategy.name, "error": e.message, "code": e.code}
                )
                continue

            any_succeeded = True
            if bookings:
                logger.info(
                    "Booking search succeeded",
                    extra={
                        "strategy": strategy.name,
                        "count": len(bookings),
                        "start": start.isoformat(),
                        "end": end.isoformat(),
                    }
                )
                return bookings

            logger.debug("Booking search shape returned nothing", extra={"strategy": strategy.name})

        if last_error is not None and not any_succeeded:
            raise last_error

        return []

    async def get_booking(self, booking_id: str) -> Any:
        """Fetch one booking by its upstream id."""
        _, payload = await self.request("GET", f"/booking.json/booking/{booking_id}")
        return payload

    async def test_connection(self, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Check credentials and reachability with a one-day booking search.

        Returns:
            Dict with ``success`` and either ``bookings`` or the error details
        """
        today = today or date.today()
        try:
            bookings = await self.search_bookings(today, today + timedelta(days=1))
        except SyncEngineError as e:
            return {"success": False, **e.to_dict()}
        return {"success": True, "bookings": len(bookings)}
