"""Per-branch serialization of ledger writers."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from branch_ledger.config import get_settings
from branch_ledger.errors import LockTimeout

logger = structlog.get_logger(__name__)


class BranchLockManager:
    """Hands out one lock per branch id.

    Branches never share a lock, so work on different branches runs in
    parallel. Acquisition waits at most ``timeout`` seconds.

    Usage:
        locks = BranchLockManager()
        async with locks.hold("B1"):
            ...
    """

    def __init__(self, timeout: float | None = None):
        self._timeout = timeout if timeout is not None else get_settings().lock_timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def timeout(self) -> float:
        return self._timeout

    def _lock_for(self, branch_id: str) -> asyncio.Lock:
        lock = self._locks.get(branch_id)
        if lock is None:
            lock = self._locks[branch_id] = asyncio.Lock()
        return lock

    def is_locked(self, branch_id: str) -> bool:
        lock = self._locks.get(branch_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, branch_id: str) -> AsyncIterator[None]:
        """Enter the branch's critical section or raise LockTimeout."""
        lock = self._lock_for(branch_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._timeout)
        except TimeoutError as e:
            logger.warning("branch_lock_timeout", branch_id=branch_id, timeout=self._timeout)
            raise LockTimeout(branch_id, self._timeout) from e
        try:
            yield
        finally:
            lock.release()
