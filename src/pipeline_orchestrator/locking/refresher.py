"""Background lock extension for long-running holders."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .service import DistributedLock

logger = logging.getLogger(__name__)


class LockRefresher:
    """Periodically extends a held lock.

    Runs as an asyncio task extending the lock every ``fraction`` of its
    TTL. If an extension is refused (the token lost ownership) the
    refresher stops and sets :attr:`lost`; the holder should stop advancing
    the guarded work at its next checkpoint.

    Usage:
        async with LockRefresher(lock, key, token, ttl_ms=30000) as refresher:
            await do_work()
            if refresher.lost:
                ...
    """

    def __init__(
        self,
        lock: DistributedLock,
        key: str,
        token: str,
        ttl_ms: int,
        fraction: float = 1 / 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._lock = lock
        self._key = key
        self._token = token
        self._ttl_ms = ttl_ms
        self._interval_s = max(ttl_ms * fraction, 1) / 1000
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._lost = False
        self.extensions = 0

    @property
    def lost(self) -> bool:
        return self._lost

    @property
    def interval_s(self) -> float:
        return self._interval_s

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"lock-refresh:{self._key}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def __aenter__(self) -> LockRefresher:
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval_s)
            try:
                extended = await self._lock.extend(self._key, self._token, self._ttl_ms)
            except Exception:
                logger.exception("Lock refresh for %s failed", self._key)
                extended = False
            if not extended:
                self._lost = True
                logger.warning("Lost lock %s; refresher stopping", self._key)
                return
            self.extensions += 1
