"""Keyed single-writer locks for manifest repositories.

Two updates targeting the same repository never interleave their
read-modify-commit-push sequence; updates to different repositories run
concurrently.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

logger = structlog.get_logger(__name__)


class RepositoryLocks:
    """One asyncio.Lock per repository identity, created on demand."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, repository_id: str) -> asyncio.Lock:
        lock = self._locks.get(repository_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[repository_id] = lock
        return lock

    def is_locked(self, repository_id: str) -> bool:
        lock = self._locks.get(repository_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, repository_id: str) -> AsyncIterator[None]:
        """Hold the repository's lock for the duration of the block."""
        lock = self.lock_for(repository_id)
        if lock.locked():
            logger.debug("repository_lock_wait", repository=repository_id)
        async with lock:
            yield
