"""Redis client and distributed per-escrow locks.

When several worker processes share one database, the in-process escrow
lock is not enough. ``RedisEscrowLocks`` serializes work on an escrow across
processes with a Redis lock keyed by escrow id.

Usage:
    from vaultix_escrow.infrastructure.redis_client import init_redis, RedisEscrowLocks

    redis = await init_redis()
    locks = RedisEscrowLocks(redis, timeout=30.0)
    async with locks.hold(str(escrow_id)):
        ...
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from redis.exceptions import LockError

from vaultix_escrow.config import get_settings
from vaultix_escrow.domain.exceptions import ConflictError
from vaultix_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


class RedisEscrowLocks:
    """Distributed lock per escrow id.

    ``timeout`` bounds how long a crashed holder can keep the lock;
    ``blocking_timeout`` bounds how long a caller waits before giving up
    with a ConflictError.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        timeout: float = 30.0,
        blocking_timeout: float | None = None,
        prefix: str = "escrow-lock:",
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._blocking_timeout = timeout if blocking_timeout is None else blocking_timeout
        self._prefix = prefix

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._client.lock(
            f"{self._prefix}{key}",
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        if not await lock.acquire():
            raise ConflictError(f"Escrow {key} is busy, try again", code="ESCROW_BUSY")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Expired while held; the work already committed or rolled back.
                logger.warning("redis.escrow_lock_expired", escrow_id=key)
