"""Token-owned distributed lock.

:class:`DistributedLock` issues ownership tokens and optionally waits for a
busy lock. Correctness only depends on the backend honouring the token
contract, so the orchestrator behaves the same on every backend.
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import socket
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from ..exceptions import LockUnavailableError
from .backends.base import LockBackend, LockInfo

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 30_000
DEFAULT_WAIT_TIMEOUT_MS = 10_000
DEFAULT_RETRY_INTERVAL_MS = 100


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


def default_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(frozen=True)
class LockResult:
    """Outcome of an acquire attempt.

    Attributes:
        acquired: True if the caller now owns the lock.
        key: Lock key.
        token: Ownership token; required for release/extend. None on failure.
        current_owner: Token of the holder when acquisition failed, if known.
    """

    acquired: bool
    key: str
    token: str | None = None
    current_owner: str | None = None


class DistributedLock:
    """Mutual exclusion with TTL, extend and wait-for-lock.

    Usage:
        lock = DistributedLock(MemoryLockBackend())
        result = await lock.acquire("pipeline-run:abc", ttl_ms=30000)
        if result.acquired:
            try:
                ...
            finally:
                await lock.release(result.key, result.token)
    """

    def __init__(
        self,
        backend: LockBackend,
        instance_id: str | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        wait_timeout_ms: int = DEFAULT_WAIT_TIMEOUT_MS,
        retry_interval_ms: int = DEFAULT_RETRY_INTERVAL_MS,
    ) -> None:
        """Initialize the lock service.

        Args:
            backend: Storage for lock rows.
            instance_id: Prefix for issued tokens. Defaults to host-pid.
            clock: Millisecond clock used for wait deadlines.
            sleep: Awaitable sleep taking seconds (injectable for tests).
            default_ttl_ms: TTL used when a call does not pass one.
            wait_timeout_ms: Default deadline for wait_for_lock.
            retry_interval_ms: Default interval between wait attempts.
        """
        self._backend = backend
        self._instance_id = instance_id or default_instance_id()
        self._clock = clock or _monotonic_ms
        self._sleep = sleep
        self._default_ttl_ms = default_ttl_ms
        self._wait_timeout_ms = wait_timeout_ms
        self._retry_interval_ms = retry_interval_ms

    @property
    def backend_name(self) -> str:
        return self._backend.name

    @property
    def default_ttl_ms(self) -> int:
        return self._default_ttl_ms

    def _new_token(self) -> str:
        return f"{self._instance_id}-{int(self._clock())}-{secrets.token_hex(4)}"

    async def acquire(
        self,
        key: str,
        ttl_ms: int | None = None,
        wait_for_lock: bool = False,
        wait_timeout_ms: int | None = None,
        retry_interval_ms: int | None = None,
    ) -> LockResult:
        """Try to take the lock for *key*.

        Args:
            key: Lock key.
            ttl_ms: Lock lifetime. Uses the service default if None.
            wait_for_lock: Retry on a fixed interval until the deadline.
            wait_timeout_ms: Deadline for waiting.
            retry_interval_ms: Interval between attempts while waiting.

        Returns:
            LockResult with the token on success, or the current owner on
            failure when the backend can tell.
        """
        ttl = ttl_ms or self._default_ttl_ms
        token = self._new_token()

        if await self._backend.acquire(key, token, ttl):
            logger.debug("Acquired lock %s", key)
            return LockResult(acquired=True, key=key, token=token)

        if wait_for_lock:
            timeout = self._wait_timeout_ms if wait_timeout_ms is None else wait_timeout_ms
            interval = retry_interval_ms or self._retry_interval_ms
            deadline = self._clock() + timeout
            while self._clock() < deadline:
                await self._sleep(interval / 1000)
                if await self._backend.acquire(key, token, ttl):
                    logger.debug("Acquired lock %s after waiting", key)
                    return LockResult(acquired=True, key=key, token=token)

        holder = await self._backend.get(key)
        owner = holder.token if holder else None
        logger.info("Lock %s unavailable (held by %s)", key, owner or "unknown")
        return LockResult(acquired=False, key=key, current_owner=owner)

    async def release(self, key: str, token: str) -> bool:
        """Release *key* if *token* still owns it."""
        released = await self._backend.release(key, token)
        if not released:
            logger.warning("Release of lock %s refused: token no longer owns it", key)
        return released

    async def extend(self, key: str, token: str, ttl_ms: int | None = None) -> bool:
        """Push the expiry of *key* forward if *token* still owns it."""
        return await self._backend.extend(key, token, ttl_ms or self._default_ttl_ms)

    async def is_locked(self, key: str) -> bool:
        """Non-mutating check for diagnostics."""
        return await self._backend.is_locked(key)

    async def cleanup(self) -> int:
        """Drop expired locks from the backend."""
        return await self._backend.cleanup()

    async def active_locks(self) -> list[LockInfo]:
        return await self._backend.active_locks()

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        ttl_ms: int | None = None,
        wait_for_lock: bool = False,
        wait_timeout_ms: int | None = None,
    ) -> AsyncIterator[LockResult]:
        """Hold *key* for the duration of the block.

        Raises:
            LockUnavailableError: If the lock could not be acquired.
        """
        result = await self.acquire(
            key,
            ttl_ms=ttl_ms,
            wait_for_lock=wait_for_lock,
            wait_timeout_ms=wait_timeout_ms,
        )
        if not result.acquired or result.token is None:
            raise LockUnavailableError(key, result.current_owner)
        try:
            yield result
        finally:
            await self.release(key, result.token)
