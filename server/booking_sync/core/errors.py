"""Error taxonomy for the synchronization engine.

These errors are raised by the upstream client, the reconciler and the
inbound rate limiter. They are independent of HTTP; the routers translate
them into problem details where a caller needs to see them.
"""

from typing import Any, Dict, Optional


class SyncEngineError(Exception):
    """Base class for engine errors."""

    code = "SYNC_ENGINE_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for structured results and logs."""
        data = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        data.update(self.details)
        return data


class TransportError(SyncEngineError):
    """Network or connection failure while talking to the upstream provider."""

    code = "UPSTREAM_UNAVAILABLE"
    retryable = True


class ProtocolError(SyncEngineError):
    """The upstream provider answered with a body that is not valid JSON."""

    code = "UPSTREAM_PROTOCOL_ERROR"


class UpstreamHTTPError(SyncEngineError):
    """The upstream provider answered with an error status."""

    code = "UPSTREAM_HTTP_ERROR"

    def __init__(self, status_code: int, message: str):
        super().__init__(
            f"Upstream returned HTTP {status_code}: {message}",
            details={"status_code": status_code},
        )
        self.status_code = status_code
        self.upstream_message = message


class AuthenticationError(UpstreamHTTPError):
    """The upstream provider rejected our credentials or signature."""

    code = "AUTHENTICATION_FAILED"


class RateLimitExceeded(SyncEngineError):
    """A request budget is exhausted, either ours or the upstream's."""

    code = "UPSTREAM_RATE_LIMITED"
    retryable = True

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: int = 60,
        limit: Optional[int] = None,
        remaining: int = 0,
        reset_at: Optional[int] = None,
    ):
        details: Dict[str, Any] = {"retry_after": retry_after}
        if limit is not None:
            details["limit"] = limit
        super().__init__(message, details=details)
        self.retry_after = retry_after
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at


class StorageError(SyncEngineError):
    """The persistence layer failed; the current unit of work is lost."""

    code = "STORAGE_ERROR"


class BookingTransformError(SyncEngineError, ValueError):
    """An upstream booking cannot be mapped onto a local record."""

    code = "INVALID_BOOKING"


class TourNotFoundError(SyncEngineError):
    """An operator named a tour that is not in the local store."""

    code = "TOUR_NOT_FOUND"


class GroupNotFoundError(SyncEngineError):
    """An operator named a tour group that does not exist."""

    code = "GROUP_NOT_FOUND"


class GroupOperationError(SyncEngineError):
    """An operator grouping request cannot be applied as asked."""

    code = "INVALID_GROUP_OPERATION"


class GroupCapacityError(GroupOperationError):
    """A merge would put more travellers in a group than it can take."""

    code = "GROUP_CAPACITY_EXCEEDED"

    def __init__(self, total_pax: int, max_pax: int):
        super().__init__(
            f"Total participants ({total_pax}) exceeds maximum group size of {max_pax}",
            details={"total_pax": total_pax, "max_pax": max_pax},
        )
        self.total_pax = total_pax
        self.max_pax = max_pax


class GroupingBusyError(SyncEngineError):
    """The grouping lock is held by another pass or operator change."""

    code = "GROUPING_BUSY"
    retryable = True
