"""Inbound rate limiting backed by the database."""

import calendar
import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.errors import RateLimitExceeded, StorageError
from ..models.rate_limit import RateLimitCounter

logger = logging.getLogger(__name__)

# Requests allowed per window for each operation class
RATE_LIMITS: Dict[str, int] = {
    "login": 5,
    "auth": 10,
    "read": 100,
    "list": 60,
    "write": 30,
    "create": 20,
    "update": 30,
    "delete": 10,
    "sync": 10,
    "webhook": 30,
    "default": 60,
}


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int


class RateLimiter:
    """Fixed-window request counters per client and operation class."""

    def __init__(
        self,
        db: AsyncSession,
        window_seconds: Optional[int] = None,
        limits: Optional[Dict[str, int]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        cleanup_probability: Optional[float] = None,
    ):
        self.db = db
        self.window_seconds = window_seconds or settings.rate_limit_window_seconds
        self.limits = limits or RATE_LIMITS
        self.clock = clock
        self.cleanup_probability = (
            settings.rate_limit_cleanup_probability if cleanup_probability is None else cleanup_probability
        )

    def limit_for(self, operation: str) -> int:
        return self.limits.get(operation, self.limits["default"])

    async def _counter(self, client_id: str, operation: str, now: datetime) -> RateLimitCounter:
        result = await self.db.execute(
            select(RateLimitCounter).where(
                RateLimitCounter.client_id == client_id,
                RateLimitCounter.operation == operation
            ).execution_options(populate_existing=True)
        )
        counter = result.scalar_one_or_none()
        if counter is not None:
            return counter

        counter = RateLimitCounter(client_id=client_id, operation=operation, request_count=0, window_start=now)
        self.db.add(counter)
        try:
            await self.db.commit()
        except IntegrityError:
            # Another request created the counter first
            await self.db.rollback()
            result = await self.db.execute(
                select(RateLimitCounter).where(
                    RateLimitCounter.client_id == client_id,
                    RateLimitCounter.operation == operation
                ).execution_options(populate_existing=True)
            )
            counter = result.scalar_one()
        return counter

    def _decision(self, allowed: bool, limit: int, count: int, window_start: datetime, now: datetime) -> RateLimitDecision:
        reset = window_start + timedelta(seconds=self.window_seconds)
        retry_after = max(0, math.ceil((reset - now).total_seconds()))
        return RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=calendar.timegm(reset.utctimetuple()),
            retry_after=retry_after if not allowed else 0,
        )

    async def check(self, client_id: str, operation: str = "default") -> RateLimitDecision:
        """
        Count one request against the client's window for an operation class.

        Args:
            client_id: Caller identity, usually the client IP
            operation: Operation class, see ``RATE_LIMITS``

        Returns:
            Decision with the remaining budget and reset time

        Raises:
            StorageError: If the counter table cannot be used
        """
        limit = self.limit_for(operation)
        now = self.clock()

        try:
            if random.random() < self.cleanup_probability:
                await self.cleanup(now)

            counter = await self._counter(client_id, operation, now)
            window_start = counter.window_start

            if now - window_start >= timedelta(seconds=self.window_seconds):
                # Window elapsed; this request opens a new one
                await self.db.execute(
                    update(RateLimitCounter)
                    .where(RateLimitCounter.id == counter.id)
                    .values(request_count=1, window_start=now)
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
                return self._decision(True, limit, 1, now, now)

            if counter.request_count >= limit:
                await self.db.commit()
                logger.warning(
                    "Inbound rate limit exceeded",
                    extra={"client_id": client_id, "operation": operation, "limit": limit}
                )
                return self._decision(False, limit, counter.request_count, window_start, now)

            # Conditional increment so concurrent requests cannot overshoot the limit
            result = await self.db.execute(
                update(RateLimitCounter)
                .where(
                    RateLimitCounter.id == counter.id,
                    RateLimitCounter.request_count < limit
                )
                .values(request_count=RateLimitCounter.request_count + 1)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            allowed = result.rowcount == 1
            return self._decision(allowed, limit, counter.request_count + 1 if allowed else limit, window_start, now)
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Rate limit check failed: {e}") from e

    async def enforce(self, client_id: str, operation: str = "default") -> RateLimitDecision:
        """
        Check the limit and raise when the request must be rejected.

        Raises:
            RateLimitExceeded: If the client has used up the window
        """
        decision = await self.check(client_id, operation)
        if not decision.allowed:
            raise RateLimitExceeded(
                f"Too many {operation} requests. Please try again later.",
                retry_after=decision.retry_after,
                limit=decision.limit,
                remaining=decision.remaining,
                reset_at=decision.reset_at,
            )
        return decision

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """Delete counters whose window started before the retention period."""
        now = now or self.clock()
        cutoff = now - timedelta(seconds=settings.rate_limit_retention_seconds)
        result = await self.db.execute(
            delete(RateLimitCounter)
            .where(RateLimitCounter.window_start < cutoff)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.info("Purged stale rate limit counters", extra={"deleted": result.rowcount})
        return result.rowcount or 0

    async def reset(self, client_id: str, operation: str) -> None:
        """Forget a client's counter for one operation class."""
        await self.db.execute(
            delete(RateLimitCounter)
            .where(RateLimitCounter.client_id == client_id, RateLimitCounter.operation == operation)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
