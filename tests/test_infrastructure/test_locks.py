"""Tests for per-escrow locks."""

from __future__ import annotations

import asyncio

import pytest
from redis.exceptions import LockError
from structlog.testing import capture_logs

from vaultix_escrow.domain.exceptions import ConflictError
from vaultix_escrow.infrastructure.locks import InProcessEscrowLocks
from vaultix_escrow.infrastructure.redis_client import RedisEscrowLocks


class StubRedisLock:
    def __init__(self, acquired: bool, release_error: bool) -> None:
        self.acquired = acquired
        self.release_error = release_error
        self.released = False

    async def acquire(self) -> bool:
        return self.acquired

    async def release(self) -> None:
        self.released = True
        if self.release_error:
            raise LockError("Cannot release an unlocked lock")


class StubRedis:
    def __init__(self, acquired: bool = True, release_error: bool = False) -> None:
        self.names: list[str] = []
        self.lock_obj = StubRedisLock(acquired, release_error)

    def lock(self, name: str, timeout: float, blocking_timeout: float) -> StubRedisLock:
        self.names.append(name)
        return self.lock_obj


class TestInProcessLocks:
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self) -> None:
        locks = InProcessEscrowLocks()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("escrow-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_keys_do_not_wait(self) -> None:
        locks = InProcessEscrowLocks()
        inside = asyncio.Event()

        async def holder() -> None:
            async with locks.hold("escrow-1"):
                await asyncio.wait_for(inside.wait(), timeout=1)

        task = asyncio.create_task(holder())
        await asyncio.sleep(0)
        async with locks.hold("escrow-2"):
            inside.set()
        await task

    @pytest.mark.asyncio
    async def test_entries_dropped_after_use(self) -> None:
        locks = InProcessEscrowLocks()
        async with locks.hold("escrow-1"):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self) -> None:
        locks = InProcessEscrowLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold("escrow-1"):
                raise RuntimeError("boom")
        assert len(locks) == 0
        async with locks.hold("escrow-1"):
            pass


class TestRedisLocks:
    @pytest.mark.asyncio
    async def test_holds_and_releases(self) -> None:
        client = StubRedis()
        locks = RedisEscrowLocks(client, timeout=5.0)

        async with locks.hold("abc"):
            assert client.lock_obj.released is False

        assert client.names == ["escrow-lock:abc"]
        assert client.lock_obj.released is True

    @pytest.mark.asyncio
    async def test_busy_raises_conflict(self) -> None:
        locks = RedisEscrowLocks(StubRedis(acquired=False), timeout=5.0)
        with pytest.raises(ConflictError) as exc_info:
            async with locks.hold("abc"):
                pytest.fail("lock body must not run")
        assert exc_info.value.code == "ESCROW_BUSY"

    @pytest.mark.asyncio
    async def test_expired_lock_is_logged(self) -> None:
        locks = RedisEscrowLocks(StubRedis(release_error=True), timeout=5.0)
        with capture_logs() as logs:
            async with locks.hold("abc"):
                pass
        assert [entry["event"] for entry in logs] == ["redis.escrow_lock_expired"]
