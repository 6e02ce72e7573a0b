"""Unit tests for the distributed lock service over the in-process backend."""

from __future__ import annotations

import asyncio

import pytest

from pipeline_orchestrator.exceptions import LockUnavailableError
from pipeline_orchestrator.locking import (
    DistributedLock,
    LockRefresher,
    MemoryLockBackend,
    create_lock_backend,
)
from pipeline_orchestrator.settings import LockSettings
from tests.fakes import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> MemoryLockBackend:
    return MemoryLockBackend(clock=clock)


@pytest.fixture
def lock(backend: MemoryLockBackend, clock: FakeClock) -> DistributedLock:
    async def advance(seconds: float) -> None:
        clock.advance(seconds * 1000)

    return DistributedLock(backend, instance_id="test", clock=clock, sleep=advance)


class TestAcquireRelease:
    """Token-owned acquire/release semantics."""

    @pytest.mark.asyncio
    async def test_concurrent_acquire_single_winner(self, lock: DistributedLock) -> None:
        first, second = await asyncio.gather(
            lock.acquire("run:1", ttl_ms=1000),
            lock.acquire("run:1", ttl_ms=1000),
        )

        assert [first.acquired, second.acquired].count(True) == 1
        loser = second if first.acquired else first
        winner = first if first.acquired else second
        assert loser.current_owner == winner.token

    @pytest.mark.asyncio
    async def test_tokens_are_unique_and_prefixed(self, lock: DistributedLock) -> None:
        a = await lock.acquire("a")
        b = await lock.acquire("b")
        assert a.token != b.token
        assert a.token is not None and a.token.startswith("test-")

    @pytest.mark.asyncio
    async def test_release_with_wrong_token_keeps_lock(self, lock: DistributedLock) -> None:
        held = await lock.acquire("run:1", ttl_ms=1000)

        assert await lock.release("run:1", "not-the-token") is False
        assert await lock.is_locked("run:1") is True

        assert held.token is not None
        assert await lock.release("run:1", held.token) is True
        assert await lock.is_locked("run:1") is False

    @pytest.mark.asyncio
    async def test_expired_lock_can_be_taken_over(
        self, lock: DistributedLock, clock: FakeClock
    ) -> None:
        await lock.acquire("run:1", ttl_ms=500)
        clock.advance(500)

        takeover = await lock.acquire("run:1", ttl_ms=500)
        assert takeover.acquired is True


class TestExtend:
    """extend() only works for the current, unexpired owner."""

    @pytest.mark.asyncio
    async def test_extend_pushes_expiry(self, lock: DistributedLock, clock: FakeClock) -> None:
        held = await lock.acquire("k", ttl_ms=500)
        assert held.token is not None
        clock.advance(400)

        assert await lock.extend("k", held.token, ttl_ms=500) is True
        clock.advance(400)
        assert await lock.is_locked("k") is True

    @pytest.mark.asyncio
    async def test_extend_after_expiry_and_reacquire_fails(
        self, lock: DistributedLock, clock: FakeClock
    ) -> None:
        original = await lock.acquire("k", ttl_ms=500)
        assert original.token is not None
        clock.advance(600)
        third_party = await lock.acquire("k", ttl_ms=500)
        assert third_party.acquired is True

        assert await lock.extend("k", original.token, ttl_ms=500) is False
        assert await lock.release("k", original.token) is False
        assert await lock.is_locked("k") is True


class TestWaitForLock:
    """Fixed-interval polling until the deadline."""

    @pytest.mark.asyncio
    async def test_waits_until_holder_expires(self, lock: DistributedLock) -> None:
        await lock.acquire("k", ttl_ms=300)

        result = await lock.acquire(
            "k", ttl_ms=300, wait_for_lock=True, wait_timeout_ms=1000, retry_interval_ms=100
        )

        assert result.acquired is True

    @pytest.mark.asyncio
    async def test_gives_up_at_deadline_with_owner(self, lock: DistributedLock) -> None:
        holder = await lock.acquire("k", ttl_ms=10_000)

        result = await lock.acquire(
            "k", wait_for_lock=True, wait_timeout_ms=500, retry_interval_ms=100
        )

        assert result.acquired is False
        assert result.current_owner == holder.token


class TestHold:
    """The hold() context manager."""

    @pytest.mark.asyncio
    async def test_hold_releases_on_exit(self, lock: DistributedLock) -> None:
        async with lock.hold("k", ttl_ms=1000) as held:
            assert held.acquired is True
            assert await lock.is_locked("k") is True
        assert await lock.is_locked("k") is False

    @pytest.mark.asyncio
    async def test_hold_raises_when_unavailable(self, lock: DistributedLock) -> None:
        await lock.acquire("k", ttl_ms=1000)

        with pytest.raises(LockUnavailableError, match="Failed to acquire lock for: k"):
            async with lock.hold("k"):
                pass


class TestMemoryBackend:
    """Bounded map behaviour of the in-process backend."""

    @pytest.mark.asyncio
    async def test_evicts_expired_before_oldest(self, clock: FakeClock) -> None:
        backend = MemoryLockBackend(max_locks=2, clock=clock)
        await backend.acquire("old", "t1", 10_000)
        await backend.acquire("short", "t2", 100)
        clock.advance(200)

        await backend.acquire("new", "t3", 10_000)

        keys = {info.key for info in await backend.active_locks()}
        assert keys == {"old", "new"}

    @pytest.mark.asyncio
    async def test_evicts_oldest_when_full(self, clock: FakeClock) -> None:
        backend = MemoryLockBackend(max_locks=2, clock=clock)
        await backend.acquire("first", "t1", 10_000)
        await backend.acquire("second", "t2", 10_000)

        await backend.acquire("third", "t3", 10_000)

        assert await backend.get("first") is None
        assert await backend.get("third") is not None

    @pytest.mark.asyncio
    async def test_cleanup_counts_expired(self, clock: FakeClock) -> None:
        backend = MemoryLockBackend(clock=clock)
        await backend.acquire("a", "t", 100)
        await backend.acquire("b", "t", 10_000)
        clock.advance(150)

        assert await backend.cleanup() == 1
        assert [info.key for info in await backend.active_locks()] == ["b"]


class TestLockRefresher:
    """Periodic extension at a fraction of the TTL."""

    @pytest.mark.asyncio
    async def test_refresher_keeps_lock_alive(
        self, lock: DistributedLock, clock: FakeClock
    ) -> None:
        held = await lock.acquire("k", ttl_ms=300)
        assert held.token is not None

        async def tick(seconds: float) -> None:
            clock.advance(seconds * 1000)
            await asyncio.sleep(0)

        refresher = LockRefresher(lock, "k", held.token, 300, sleep=tick)
        assert refresher.interval_s == pytest.approx(0.1)

        refresher.start()
        for _ in range(20):
            await asyncio.sleep(0)
        await refresher.stop()

        assert refresher.extensions >= 3
        assert refresher.lost is False
        assert await lock.is_locked("k") is True

    @pytest.mark.asyncio
    async def test_refresher_flags_lost_lock(
        self, lock: DistributedLock, backend: MemoryLockBackend
    ) -> None:
        held = await lock.acquire("k", ttl_ms=300)
        assert held.token is not None
        await backend.release("k", held.token)

        async def tick(seconds: float) -> None:
            await asyncio.sleep(0)

        async with LockRefresher(lock, "k", held.token, 300, sleep=tick) as refresher:
            for _ in range(5):
                await asyncio.sleep(0)

        assert refresher.lost is True
        assert refresher.extensions == 0


class TestLockBackendFactory:
    """create_lock_backend selection."""

    def test_memory_by_default(self) -> None:
        assert create_lock_backend(LockSettings()).name == "memory"

    def test_sqlite_without_db_falls_back_to_memory(self) -> None:
        assert create_lock_backend(LockSettings(backend="sqlite")).name == "memory"
