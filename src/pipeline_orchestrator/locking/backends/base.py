"""Lock backend contract."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass


def wall_clock_ms() -> float:
    """Epoch milliseconds; lock expiries are comparable across processes."""
    return time.time() * 1000


@dataclass(frozen=True)
class LockInfo:
    """A held lock as seen by a backend."""

    key: str
    token: str
    expires_at_ms: float


class LockBackend(ABC):
    """Storage for ``(key, token, expiry)`` triples.

    Every mutating call is conditional: ``acquire`` only succeeds when the
    key is free, expired or already owned by *token*; ``release`` and
    ``extend`` only succeed while *token* owns the key.
    """

    name: str = "abstract"

    @abstractmethod
    async def acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        """Store the lock for *ttl_ms* if it is free. Returns True on success."""

    @abstractmethod
    async def release(self, key: str, token: str) -> bool:
        """Remove the lock if *token* owns it."""

    @abstractmethod
    async def extend(self, key: str, token: str, ttl_ms: int) -> bool:
        """Reset the expiry to now + *ttl_ms* if *token* owns an unexpired lock."""

    @abstractmethod
    async def get(self, key: str) -> LockInfo | None:
        """Return the unexpired lock for *key*, if any."""

    async def is_locked(self, key: str) -> bool:
        return await self.get(key) is not None

    @abstractmethod
    async def cleanup(self) -> int:
        """Drop expired locks. Returns how many were removed."""

    @abstractmethod
    async def active_locks(self) -> list[LockInfo]:
        """Return every unexpired lock."""
