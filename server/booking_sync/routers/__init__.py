"""FastAPI routers package."""

from .groups import router as groups_router
from .health import router as health_router
from .metrics import router as metrics_router
from .sync import router as sync_router
from .webhook import router as webhook_router

__all__ = [
    "groups_router",
    "health_router",
    "metrics_router",
    "sync_router",
    "webhook_router",
]
