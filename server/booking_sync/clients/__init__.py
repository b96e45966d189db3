"""Clients for the upstream booking platform."""

from .booking_search import BOOKING_SEARCH_STRATEGIES, BookingSearchStrategy
from .signing import RequestBudget, compute_signature
from .upstream import UpstreamClient

__all__ = [
    "BOOKING_SEARCH_STRATEGIES",
    "BookingSearchStrategy",
    "RequestBudget",
    "UpstreamClient",
    "compute_signature",
]
