"""Connection lifecycle for PipelineDB.

The checkpoint, lock and run mixins all talk to the single aiosqlite
connection opened here. Writes from one process go through ``_write_lock``
so each statement and its commit stay together; writes from other
processes sharing the file are serialized by SQLite itself.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

DEFAULT_DB_PATH = Path.cwd() / ".pipeline" / "pipeline.db"

MEMORY = ":memory:"

# Milliseconds a writer waits on another process's lock before SQLITE_BUSY
BUSY_TIMEOUT_MS = 5000

REQUIRED_TABLES = frozenset({"pipeline_checkpoints", "pipeline_locks", "pipeline_runs"})


class ConnectionMixin:
    """Opens, initializes and closes the shared aiosqlite connection."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        """Remember where the database lives; nothing is opened yet.

        Args:
            db_path: SQLite file, or ":memory:" for a private throwaway
                database. Defaults to .pipeline/pipeline.db under the
                current working directory.
        """
        self.db_path: str | Path = MEMORY if db_path == MEMORY else Path(db_path or DEFAULT_DB_PATH)
        self._conn: aiosqlite.Connection | None = None
        self._initialized = False
        self._write_lock = asyncio.Lock()

    async def __aenter__(self) -> ConnectionMixin:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the connection, creating parent directories and the schema."""
        if self._conn is not None:
            return
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            logger.info("Opening pipeline database %s", self.db_path.resolve())
        self._conn = await aiosqlite.connect(str(self.db_path))
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
        await self._initialize_schema()

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None
        self._initialized = False

    async def _ensure_connected(self) -> None:
        if self._conn is None:
            await self.connect()

    async def _initialize_schema(self) -> None:
        """Apply schema.sql and check the expected tables exist.

        Raises:
            RuntimeError: If the script fails or a table is missing, which
                means the file was created by something else.
        """
        if self._conn is None:
            msg = "Database not connected"
            raise RuntimeError(msg)
        if self._initialized:
            return

        async with self._write_lock:
            try:
                await self._conn.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))
                await self._conn.commit()
            except aiosqlite.Error as e:
                msg = f"Could not apply schema to {self.db_path}: {e}"
                raise RuntimeError(msg) from e

        async with self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        ) as cursor:
            present = {row["name"] for row in await cursor.fetchall()}
        missing = REQUIRED_TABLES - present
        if missing:
            msg = f"{self.db_path} is not a pipeline database (missing: {', '.join(sorted(missing))})"
            raise RuntimeError(msg)

        self._initialized = True
        logger.debug("Schema ready on %s", self.db_path)
