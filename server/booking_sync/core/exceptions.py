"""HTTP problem details (RFC 9457) for the trigger surface.

Engine errors from ``core.errors`` stay HTTP-agnostic; this module owns the
translation of those errors, and of request-level failures, into
``application/problem+json`` shaped bodies.
"""

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from .errors import RateLimitExceeded, SyncEngineError

logger = logging.getLogger(__name__)

PROBLEM_TYPE_BASE = "https://booking-sync.local/problems/"

# Status used when an engine error escapes a route unhandled
ENGINE_ERROR_STATUS = {
    "AUTHENTICATION_FAILED": 502,
    "UPSTREAM_HTTP_ERROR": 502,
    "UPSTREAM_PROTOCOL_ERROR": 502,
    "UPSTREAM_UNAVAILABLE": 503,
    "UPSTREAM_RATE_LIMITED": 503,
    "STORAGE_ERROR": 503,
    "INVALID_BOOKING": 422,
    "TOUR_NOT_FOUND": 404,
    "GROUP_NOT_FOUND": 404,
    "INVALID_GROUP_OPERATION": 400,
    "GROUP_CAPACITY_EXCEEDED": 409,
    "GROUPING_BUSY": 503,
}


def problem_type(slug: str) -> str:
    """Build the type URI of a problem kind."""
    return f"{PROBLEM_TYPE_BASE}{slug}"


class ProblemDetailsException(HTTPException):
    """
    Base exception rendered as an RFC 9457 problem document.

    Every problem carries a machine readable ``code`` next to the standard
    members so callers can branch on it without parsing ``title``.
    """

    def __init__(
        self,
        status_code: int,
        title: str,
        code: str,
        detail: Optional[str] = None,
        instance: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize the problem.

        Args:
            status_code: HTTP status code
            title: Short summary of the problem kind
            code: Stable error code, also used to derive the type URI
            detail: Explanation of this occurrence
            instance: Request path the problem occurred on
            extensions: Additional problem members
            headers: HTTP headers to include in the response
        """
        self.status_code = status_code
        self.title = title
        self.code = code
        self.detail = detail
        self.type_uri = problem_type(code.lower().replace("_", "-"))
        self.instance = instance
        self.extensions = extensions or {}

        self.problem_details: Dict[str, Any] = {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status_code,
            "code": self.code,
        }
        if self.detail:
            self.problem_details["detail"] = self.detail
        if self.instance:
            self.problem_details["instance"] = self.instance
        self.problem_details.update(self.extensions)

        super().__init__(status_code=status_code, detail=self.problem_details, headers=headers)


class InvalidSyncWindowError(ProblemDetailsException):
    """A sync was requested for a window whose start is after its end."""

    def __init__(self, start: date, end: date, instance: Optional[str] = None):
        super().__init__(
            status_code=400,
            title="Invalid Sync Window",
            code="INVALID_WINDOW",
            detail=f"start_date {start.isoformat()} is after end_date {end.isoformat()}",
            instance=instance,
            extensions={"errors": {"start_date": "must not be after end_date"}},
        )


class AuthenticationRequiredError(ProblemDetailsException):
    """Exception for missing or invalid caller credentials."""

    def __init__(
        self,
        detail: str = "Authentication credentials are required",
        instance: Optional[str] = None,
    ):
        super().__init__(
            status_code=401,
            title="Authentication Required",
            code="AUTHENTICATION_REQUIRED",
            detail=detail,
            instance=instance,
            headers={"WWW-Authenticate": "Bearer"},
        )


class RateLimitError(ProblemDetailsException):
    """Inbound rate limit rejection with the standard budget headers."""

    def __init__(
        self,
        detail: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        limit: Optional[int] = None,
        remaining: int = 0,
        reset_at: Optional[int] = None,
        window: Optional[int] = None,
        instance: Optional[str] = None,
    ):
        extensions: Dict[str, Any] = {"retryable": True}
        headers: Dict[str, str] = {}
        if limit is not None:
            extensions["limit"] = limit
            headers["X-RateLimit-Limit"] = str(limit)
            headers["X-RateLimit-Remaining"] = str(remaining)
        if window:
            extensions["window_seconds"] = window
        if retry_after is not None:
            extensions["retry_after"] = retry_after
            headers["Retry-After"] = str(retry_after)
        if reset_at is not None:
            headers["X-RateLimit-Reset"] = str(reset_at)

        super().__init__(
            status_code=429,
            title="Too Many Requests",
            code="RATE_LIMITED",
            detail=detail,
            instance=instance,
            extensions=extensions,
            headers=headers,
        )

    @classmethod
    def from_exceeded(
        cls, exc: RateLimitExceeded, window: Optional[int] = None, instance: Optional[str] = None
    ) -> "RateLimitError":
        """Wrap a limiter decision that ran out of budget."""
        return cls(
            detail=exc.message,
            retry_after=exc.retry_after,
            limit=exc.limit,
            remaining=exc.remaining,
            reset_at=exc.reset_at,
            window=window,
            instance=instance,
        )


async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    """Render a problem details exception."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.problem_details,
        headers=exc.headers,
    )


async def engine_error_handler(request: Request, exc: SyncEngineError) -> JSONResponse:
    """
    Render an engine error that escaped a route.

    Upstream failures surface as 502/503 so callers can tell them apart
    from faults in this service; the error's own details are kept.
    """
    status_code = ENGINE_ERROR_STATUS.get(exc.code, 500)
    logger.warning(
        "Engine error reached the API",
        extra={"code": exc.code, "path": request.url.path, "status_code": status_code},
    )
    problem = ProblemDetailsException(
        status_code=status_code,
        title="Sync Engine Error",
        code=exc.code,
        detail=exc.message,
        instance=request.url.path,
        extensions={"retryable": exc.retryable, **exc.details},
    )
    return await problem_details_handler(request, problem)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Convert an unhandled exception into a 500 problem.

    The generated ``error_id`` is logged with the traceback so an operator
    can match a caller's report to the log line.
    """
    error_id = str(uuid.uuid4())
    logger.exception(
        "Unhandled error",
        extra={"error_id": error_id, "path": request.url.path, "method": request.method},
    )

    return JSONResponse(
        status_code=500,
        content={
            "type": problem_type("internal-error"),
            "title": "Internal Server Error",
            "status": 500,
            "code": "INTERNAL_ERROR",
            "detail": "An unexpected error occurred while processing the request",
            "instance": request.url.path,
            "error_id": error_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
