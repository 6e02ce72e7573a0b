"""Lock backend selection."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from .backends import LockBackend, MemoryLockBackend, SqliteLockBackend

if TYPE_CHECKING:
    from ..database import PipelineDB
    from ..settings import LockSettings

logger = logging.getLogger(__name__)


def create_lock_backend(
    settings: LockSettings,
    db: PipelineDB | None = None,
    clock: Callable[[], float] | None = None,
) -> LockBackend:
    """Build the configured lock backend.

    A ``sqlite`` backend needs a database; without one the in-process
    backend is used and a warning is logged, since it only protects a
    single instance.
    """
    if settings.backend == "sqlite":
        if db is not None:
            return SqliteLockBackend(db, clock=clock)
        logger.warning("sqlite lock backend requested without a database; using memory")
    return MemoryLockBackend(max_locks=settings.max_memory_locks, clock=clock)
