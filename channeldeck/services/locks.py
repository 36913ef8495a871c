"""
Advisory lock guarding connectivity test runs.

The lock record lives in the store's ``test_locks`` table, so every instance
sharing the database agrees on who holds it. A holder that dies without
releasing is taken over once its TTL runs out; admins can also force-clear.
"""
import logging
import os
import socket
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from channeldeck.config import get_settings
from channeldeck.errors import TestLockBusy

logger = logging.getLogger(__name__)


class TestLock:
    """Process-wide (and cross-instance) exclusive lock for test runs."""

    __test__ = False

    DEFAULT_NAME = "channel-test"

    def __init__(self, store, ttl_seconds: Optional[float] = None, name: str = DEFAULT_NAME):
        self.store = store
        self.ttl_seconds = ttl_seconds or get_settings().test_lock_ttl_seconds
        self.name = name

    @staticmethod
    def new_holder() -> str:
        return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    async def acquire(self, holder: Optional[str] = None) -> str:
        """Take the lock or raise ``TestLockBusy``. Returns the holder token."""
        holder = holder or self.new_holder()
        if not await self.store.acquire_lock(self.name, holder, self.ttl_seconds):
            raise TestLockBusy(
                "Another test operation is already in progress. Please wait for it to complete."
            )
        logger.debug(f"Test lock {self.name} acquired by {holder}")
        return holder

    async def release(self, holder: str) -> bool:
        released = await self.store.release_lock(self.name, holder)
        if not released:
            logger.warning(f"Test lock {self.name} was no longer held by {holder} at release")
        return released

    async def refresh(self, holder: str) -> bool:
        return await self.store.refresh_lock(self.name, holder, self.ttl_seconds)

    async def is_locked(self) -> bool:
        return await self.store.lock_holder(self.name) is not None

    async def force_clear(self) -> bool:
        cleared = await self.store.clear_lock(self.name)
        if cleared:
            logger.warning(f"Test lock {self.name} force-cleared")
        return cleared

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[str]:
        holder = await self.acquire()
        try:
            yield holder
        finally:
            await self.release(holder)
