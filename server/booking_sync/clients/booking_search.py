"""Ordered request shapes for the upstream booking search.

The upstream does not answer every request shape consistently across date
ranges and booking statuses, so the search is tried in a fixed order. Later
shapes relax the filters of earlier ones; the order is part of the contract.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, Optional, Tuple


@dataclass(frozen=True)
class SearchPage:
    """Parameters of one booking search request."""

    start: date
    end: date
    page: int
    page_size: int
    role: str


@dataclass(frozen=True)
class BookingSearchStrategy:
    """One candidate request shape for the booking search."""

    name: str
    method: str
    path: str
    build_query: Optional[Callable[[SearchPage], Dict[str, Any]]] = None
    build_body: Optional[Callable[[SearchPage], Dict[str, Any]]] = None
    paginated: bool = False

    def query(self, page: SearchPage) -> Optional[Dict[str, Any]]:
        return self.build_query(page) if self.build_query else None

    def body(self, page: SearchPage) -> Optional[Dict[str, Any]]:
        return self.build_body(page) if self.build_body else None


def _date_range_body(page: SearchPage, statuses: list[str], lower: str, upper: str) -> Dict[str, Any]:
    return {
        "bookingRole": page.role,
        "bookingStatuses": statuses,
        "pageSize": page.page_size,
        "page": page.page,
        "startDateRange": {
            "from": lower,
            "to": upper,
            "includeLower": True,
            "includeUpper": True,
        },
    }


def _primary_body(page: SearchPage) -> Dict[str, Any]:
    return _date_range_body(
        page,
        ["CONFIRMED", "PENDING"],
        f"{page.start.isoformat()}T00:00:00.000Z",
        f"{page.end.isoformat()}T23:59:59.999Z",
    )


def _confirmed_only_body(page: SearchPage) -> Dict[str, Any]:
    return _date_range_body(
        page,
        ["CONFIRMED"],
        f"{page.start.isoformat()}T00:00:00+00:00",
        f"{page.end.isoformat()}T00:00:00+00:00",
    )


def _legacy_params(page: SearchPage) -> Dict[str, Any]:
    return {
        "start": page.start.isoformat(),
        "end": page.end.isoformat(),
        "page": page.page,
        "pageSize": page.page_size,
    }


BOOKING_SEARCH_STRATEGIES: Tuple[BookingSearchStrategy, ...] = (
    BookingSearchStrategy(
        name="booking-search",
        method="POST",
        path="/booking.json/booking-search",
        build_body=_primary_body,
        paginated=True,
    ),
    BookingSearchStrategy(
        name="booking-search-confirmed",
        method="POST",
        path="/booking.json/booking-search",
        build_body=_confirmed_only_body,
        paginated=True,
    ),
    BookingSearchStrategy(
        name="legacy-search-get",
        method="GET",
        path="/booking.json/search",
        build_query=_legacy_params,
    ),
    BookingSearchStrategy(
        name="legacy-search-post",
        method="POST",
        path="/booking.json/search",
        build_body=_legacy_params,
    ),
)
