"""Distributed locking: token-owned locks over pluggable backends."""

from .backends import LockBackend, LockInfo, MemoryLockBackend, SqliteLockBackend
from .factory import create_lock_backend
from .refresher import LockRefresher
from .service import DistributedLock, LockResult

__all__ = [
    "DistributedLock",
    "LockBackend",
    "LockInfo",
    "LockRefresher",
    "LockResult",
    "MemoryLockBackend",
    "SqliteLockBackend",
    "create_lock_backend",
]
