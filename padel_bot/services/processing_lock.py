"""
Named advisory lock backed by the processing_locks table.

Lets every caller of the expiry sweep (the bot's background loop, an admin
command, another bot instance sharing the database) agree that only one
sweep runs at a time. A lock whose TTL has elapsed is considered abandoned
and can be taken over.
"""

import logging
import os
import socket
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator, Optional
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from padel_bot.config import Config
from padel_bot.database.models import ProcessingLockRecord
from padel_bot.services.base import BaseService
from padel_bot.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

class ProcessingLock(BaseService):
    """Table-backed named mutex shared by all processes using the same database."""

    def __init__(self, session_factory, ttl_seconds: int = None, holder: Optional[str] = None):
        super().__init__(session_factory)
        self.ttl = timedelta(seconds=ttl_seconds or Config.SWEEP_LOCK_TTL_SECONDS)
        self.holder = holder or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    async def acquire(self, name: str) -> bool:
        """
        Try to take the lock without waiting.

        Returns:
            True if this holder now owns the lock, False if someone else does
        """
        now = utc_now()
        expires_at = now + self.ttl

        try:
            async with self.get_session() as session:
                session.add(ProcessingLockRecord(
                    name=name,
                    holder=self.holder,
                    acquired_at=now,
                    expires_at=expires_at
                ))
            logger.debug(f"Lock '{name}' acquired by {self.holder}")
            return True
        except IntegrityError:
            pass

        # Row exists; take it over only if its holder let it expire
        async with self.get_session() as session:
            result = await session.execute(
                update(ProcessingLockRecord)
                .where(
                    ProcessingLockRecord.name == name,
                    ProcessingLockRecord.expires_at <= now
                )
                .values(holder=self.holder, acquired_at=now, expires_at=expires_at)
            )
            taken_over = result.rowcount == 1

        if taken_over:
            logger.warning(f"Lock '{name}' had expired; taken over by {self.holder}")
        else:
            logger.debug(f"Lock '{name}' is held by another worker")
        return taken_over

    async def release(self, name: str) -> None:
        """Release the lock if this holder owns it. Releasing a lock you don't hold is a no-op."""
        async with self.get_session() as session:
            result = await session.execute(
                delete(ProcessingLockRecord).where(
                    ProcessingLockRecord.name == name,
                    ProcessingLockRecord.holder == self.holder
                )
            )
        if result.rowcount == 0:
            logger.warning(f"Lock '{name}' was not held by {self.holder} at release time")
        else:
            logger.debug(f"Lock '{name}' released by {self.holder}")

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncGenerator[bool, None]:
        """
        Context manager form. Yields whether the lock was acquired and
        always releases an acquired lock, even when the body raises.

        Usage:
            async with lock.hold('settlement-sweep') as acquired:
                if not acquired:
                    return
        """
        acquired = await self.acquire(name)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(name)
