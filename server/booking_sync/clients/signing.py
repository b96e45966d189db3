"""Request signing and outbound request budgeting for the upstream API."""

import base64
import hashlib
import hmac
import math
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional

from ..core.errors import RateLimitExceeded

SIGNATURE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_signature_date(moment: Optional[datetime] = None) -> str:
    """Format a UTC instant the way the upstream expects it in signatures."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(SIGNATURE_DATE_FORMAT)


def compute_signature(secret_key: str, date: str, access_key: str, method: str, path: str) -> str:
    """
    Compute the request signature.

    The signed string is ``date + access_key + METHOD + path``, where ``path``
    is the request target exactly as sent, query string included.

    Returns:
        Base64 encoded HMAC-SHA1 digest
    """
    message = f"{date}{access_key}{method.upper()}{path}"
    digest = hmac.new(secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def signed_headers(
    access_key: str,
    secret_key: str,
    method: str,
    path: str,
    header_prefix: str = "X-Provider",
    moment: Optional[datetime] = None,
) -> Dict[str, str]:
    """Build the authentication headers for one request."""
    date = format_signature_date(moment)
    return {
        f"{header_prefix}-Date": date,
        f"{header_prefix}-AccessKey": access_key,
        f"{header_prefix}-Signature": compute_signature(secret_key, date, access_key, method, path),
    }


class RequestBudget:
    """
    Rolling-window ceiling on outbound requests.

    Each accepted request is timestamped; requests older than the window no
    longer count. Once the ceiling is reached, ``acquire`` refuses instead of
    letting a request go out that the upstream would reject anyway.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._sent: Deque[float] = deque()

    def _evict(self, now: float) -> None:
        while self._sent and now - self._sent[0] >= self.window_seconds:
            self._sent.popleft()

    @property
    def remaining(self) -> int:
        self._evict(self.clock())
        return max(0, self.limit - len(self._sent))

    def acquire(self) -> None:
        """
        Consume one request slot.

        Raises:
            RateLimitExceeded: If the ceiling for the current window is reached
        """
        now = self.clock()
        self._evict(now)

        if len(self._sent) >= self.limit:
            retry_after = max(1, math.ceil(self.window_seconds - (now - self._sent[0])))
            raise RateLimitExceeded(
                f"Outbound request budget of {self.limit} per {int(self.window_seconds)}s exhausted",
                retry_after=retry_after,
                limit=self.limit,
                remaining=0,
            )

        self._sent.append(now)
