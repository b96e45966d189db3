"""Pydantic schemas for request/response validation."""

from .booking import *  # noqa: F403
from .groups import *  # noqa: F403
from .health import *  # noqa: F403
from .sync import *  # noqa: F403
from .webhook import *  # noqa: F403
