"""Storage-backed named locks.

A lock is a row in ``engine_locks``. Acquiring it either inserts the row or
takes over a row whose lease has expired; both happen in a short side
session so that every process sharing the database sees the lease
immediately. Releasing deletes the row only if we still own it.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.engine_lock import EngineLock
from .errors import StorageError

logger = logging.getLogger(__name__)


class NamedLock:
    """Mutual-exclusion lease shared between processes through the database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        name: str,
        lease_seconds: int = 300,
        poll_interval: float = 0.25,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize the lock.

        Args:
            session_factory: Factory for the side sessions that manage the lease
            name: Lock name shared by all contenders
            lease_seconds: Lease length after which an abandoned lock may be taken over
            poll_interval: Delay between acquisition attempts
            clock: Source of the current UTC time
        """
        self.session_factory = session_factory
        self.name = name
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self.clock = clock
        self.owner = uuid.uuid4().hex
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def _try_acquire(self) -> bool:
        now = self.clock()
        expires_at = now + timedelta(seconds=self.lease_seconds)

        async with self.session_factory() as session:
            try:
                session.add(EngineLock(
                    name=self.name,
                    owner=self.owner,
                    acquired_at=now,
                    expires_at=expires_at
                ))
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()

            # Someone holds it; take over only if their lease ran out
            result = await session.execute(
                update(EngineLock)
                .where(
                    EngineLock.name == self.name,
                    EngineLock.expires_at < now
                )
                .values(owner=self.owner, acquired_at=now, expires_at=expires_at)
            )
            await session.commit()
            if result.rowcount == 1:
                logger.warning(
                    "Took over expired lock lease",
                    extra={"lock": self.name, "owner": self.owner}
                )
                return True
            return False

    async def acquire(self, timeout: float = 10.0) -> bool:
        """
        Try to take the lock, polling until it frees up or the timeout passes.

        Args:
            timeout: Seconds to keep trying

        Returns:
            True if the lock is now held by this instance

        Raises:
            StorageError: If the lease table cannot be reached
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        try:
            while True:
                if await self._try_acquire():
                    self._held = True
                    logger.debug("Lock acquired", extra={"lock": self.name, "owner": self.owner})
                    return True

                if loop.time() + self.poll_interval > deadline:
                    logger.info(
                        "Lock unavailable",
                        extra={"lock": self.name, "timeout_seconds": timeout}
                    )
                    return False

                await asyncio.sleep(self.poll_interval)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not acquire lock {self.name}: {e}") from e

    async def release(self) -> None:
        """Release the lock if this instance still owns it."""
        if not self._held:
            return

        self._held = False
        async with self.session_factory() as session:
            try:
                await session.execute(
                    delete(EngineLock).where(
                        EngineLock.name == self.name,
                        EngineLock.owner == self.owner
                    )
                )
                await session.commit()
                logger.debug("Lock released", extra={"lock": self.name, "owner": self.owner})
            except SQLAlchemyError as e:
                await session.rollback()
                # The lease expires on its own; the next contender takes it over
                logger.error(
                    f"Failed to release lock {self.name}: {e}",
                    extra={"lock": self.name, "owner": self.owner},
                    exc_info=True
                )

    async def __aenter__(self) -> "NamedLock":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> Optional[bool]:
        await self.release()
        return None
