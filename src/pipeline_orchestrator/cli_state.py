"""Checkpoint and lock CLI commands for the pipeline orchestrator.

Provides CLI subcommands for inspecting and clearing persisted state.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click

from .database import PipelineDB
from .locking import LockInfo, SqliteLockBackend
from .settings import resolve_db_for_cli


def _resolve_db_path(db: str | None) -> Path:
    try:
        db_path, _ = resolve_db_for_cli(db)
    except (FileNotFoundError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    return db_path


# =============================================================================
# Checkpoints
# =============================================================================


@click.group()
def checkpoint() -> None:
    """Checkpoint inspection commands."""
    pass


@checkpoint.command(name="show")
@click.argument("pipeline_id")
@click.option("--db", type=click.Path(), help="Database path")
def checkpoint_show(pipeline_id: str, db: str | None) -> None:
    """Print the stored checkpoint of a pipeline as JSON."""
    snapshot = asyncio.run(_checkpoint_show_async(pipeline_id, _resolve_db_path(db)))
    if snapshot is None:
        click.echo(f"No checkpoint for pipeline {pipeline_id}")
        return
    click.echo(json.dumps(snapshot, indent=2, sort_keys=True))


async def _checkpoint_show_async(pipeline_id: str, db_path: Path) -> dict[str, Any] | None:
    """Async implementation of checkpoint show command."""
    db = PipelineDB(db_path)
    await db.connect()
    try:
        return await db.get_checkpoint(pipeline_id)
    finally:
        await db.close()


@checkpoint.command(name="clear")
@click.argument("pipeline_id")
@click.option("--db", type=click.Path(), help="Database path")
def checkpoint_clear(pipeline_id: str, db: str | None) -> None:
    """Delete the stored checkpoint of a pipeline."""
    removed = asyncio.run(_checkpoint_clear_async(pipeline_id, _resolve_db_path(db)))
    if removed:
        click.echo(f"Cleared checkpoint for pipeline {pipeline_id}")
    else:
        click.echo(f"No checkpoint for pipeline {pipeline_id}")


async def _checkpoint_clear_async(pipeline_id: str, db_path: Path) -> bool:
    """Async implementation of checkpoint clear command."""
    db = PipelineDB(db_path)
    await db.connect()
    try:
        return await db.clear_checkpoint(pipeline_id)
    finally:
        await db.close()


# =============================================================================
# Locks
# =============================================================================


@click.group()
def lock() -> None:
    """Distributed lock inspection commands."""
    pass


@lock.command(name="status")
@click.argument("key", required=False)
@click.option("--db", type=click.Path(), help="Database path")
def lock_status(key: str | None, db: str | None) -> None:
    """List locks currently held in the database, or just KEY."""
    locks = asyncio.run(_lock_status_async(key, _resolve_db_path(db)))
    _print_locks(locks)


async def _lock_status_async(key: str | None, db_path: Path) -> list[LockInfo]:
    """Async implementation of lock status command."""
    db = PipelineDB(db_path)
    await db.connect()
    try:
        backend = SqliteLockBackend(db)
        if key is None:
            return await backend.active_locks()
        info = await backend.get(key)
        return [info] if info else []
    finally:
        await db.close()


def _print_locks(locks: list[LockInfo]) -> None:
    """Print lock status output."""
    click.echo("\n" + "=" * 60)
    click.echo("Held Locks")
    click.echo("=" * 60)

    if not locks:
        click.echo("No locks held.")
        return

    for info in locks:
        click.echo(f"  {info.key}: token={info.token} expires_at={int(info.expires_at_ms)}")


@lock.command(name="cleanup")
@click.option("--db", type=click.Path(), help="Database path")
def lock_cleanup(db: str | None) -> None:
    """Remove expired locks."""
    removed = asyncio.run(_lock_cleanup_async(_resolve_db_path(db)))
    click.echo(f"Removed {removed} expired lock(s)")


async def _lock_cleanup_async(db_path: Path) -> int:
    """Async implementation of lock cleanup command."""
    db = PipelineDB(db_path)
    await db.connect()
    try:
        return await SqliteLockBackend(db).cleanup()
    finally:
        await db.close()
