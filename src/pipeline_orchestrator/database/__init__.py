"""Async SQLite persistence for checkpoints, locks and runs.

All operations are async using aiosqlite for non-blocking I/O.
"""

from __future__ import annotations

from .connection import DEFAULT_DB_PATH, SCHEMA_PATH
from .core import PipelineDB

__all__ = [
    "DEFAULT_DB_PATH",
    "PipelineDB",
    "SCHEMA_PATH",
]
