"""Per-escrow mutual exclusion.

Every read -> validate -> write sequence on one escrow runs while holding
that escrow's lock. Locks are keyed by escrow id, so operations on different
escrows never wait on each other. There is no process-wide lock.

Two implementations share the ``hold(key)`` shape:
    - InProcessEscrowLocks  (asyncio locks; single-process deployments, tests)
    - RedisEscrowLocks      (infrastructure/redis_client.py; multi-process)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from contextlib import AbstractAsyncContextManager


class EscrowLocks(Protocol):
    def hold(self, key: str) -> AbstractAsyncContextManager[None]:
        """Hold the lock for ``key`` for the duration of the ``async with`` block."""
        ...


class InProcessEscrowLocks:
    """asyncio lock per escrow id, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        """Number of escrow ids with a live lock entry."""
        return len(self._locks)
