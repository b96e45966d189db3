"""Service layer package."""

from .grouping_service import GroupingService
from .rate_limit_service import RateLimiter
from .reconciler import Reconciler
from .sync_service import SyncService
from .webhook_service import WebhookIngestor

__all__ = [
    "GroupingService",
    "RateLimiter",
    "Reconciler",
    "SyncService",
    "WebhookIngestor",
]
