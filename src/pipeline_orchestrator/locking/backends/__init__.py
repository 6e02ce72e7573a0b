"""Lock storage backends."""

from .base import LockBackend, LockInfo, wall_clock_ms
from .memory import MemoryLockBackend
from .sqlite import SqliteLockBackend

__all__ = [
    "LockBackend",
    "LockInfo",
    "MemoryLockBackend",
    "SqliteLockBackend",
    "wall_clock_ms",
]
