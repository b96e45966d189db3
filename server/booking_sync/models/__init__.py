"""Models module exporting all database models."""

from .engine_lock import EngineLock
from .rate_limit import RateLimitCounter
from .sync_log import SyncLog, SyncStatus, SyncType
from .tour import PaymentStatus, Tour
from .tour_group import TourGroup
from .webhook_event import WebhookEvent

__all__ = [
    # Booking mirror
    "Tour",
    "PaymentStatus",
    "TourGroup",

    # Run audit
    "SyncLog",
    "SyncStatus",
    "SyncType",

    # Push notifications
    "WebhookEvent",

    # Coordination
    "RateLimitCounter",
    "EngineLock",
]
