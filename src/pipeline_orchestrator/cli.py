"""CLI for the pipeline orchestrator.

Provides commands to validate, simulate and run pipeline definitions and
to manage tracked runs.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path

import click

from .checkpoint import SqliteCheckpointStore
from .cli_state import checkpoint, lock
from .database import PipelineDB
from .definition import PipelineDefinition, load_definition
from .exceptions import DefinitionError, PipelineError
from .executors import default_registry
from .locking import DistributedLock, create_lock_backend
from .models import Run, RunResult, RunStatus
from .orchestration import PipelineOrchestrator, SqliteRunStore
from .settings import OrchestratorSettings, load_settings, resolve_db_for_cli

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def cli(verbose: bool) -> None:
    """Pipeline Orchestrator - Run data pipelines with checkpoints and gates."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


# Register subcommand groups from separate modules
cli.add_command(checkpoint)
cli.add_command(lock)


def _read_definition(path: str) -> PipelineDefinition:
    """Load a definition file or exit with an error message."""
    try:
        return load_definition(Path(path).read_text(encoding="utf-8"))
    except DefinitionError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _resolve_db(db: str | None) -> tuple[Path, OrchestratorSettings]:
    try:
        return resolve_db_for_cli(db)
    except (FileNotFoundError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _build_orchestrator(db: PipelineDB, settings: OrchestratorSettings) -> PipelineOrchestrator:
    backend = create_lock_backend(settings.lock, db)
    return PipelineOrchestrator(
        default_registry(),
        SqliteCheckpointStore(db),
        lock=DistributedLock(
            backend,
            default_ttl_ms=settings.lock.ttl_ms,
            wait_timeout_ms=settings.lock.wait_timeout_ms,
            retry_interval_ms=settings.lock.retry_interval_ms,
        ),
        run_store=SqliteRunStore(db),
        settings=settings,
    )


# =============================================================================
# Definition commands
# =============================================================================


@cli.command()
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False))
def validate(definition_file: str) -> None:
    """Validate a pipeline definition without running it."""
    definition = _read_definition(definition_file)
    orchestrator = PipelineOrchestrator(default_registry())
    try:
        orchestrator.validate(definition)
    except DefinitionError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    shape = "graph" if definition.is_graph else "linear"
    click.echo(f"Definition valid: {len(definition.steps)} steps ({shape})")


@cli.command(name="dry-run")
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False))
def dry_run(definition_file: str) -> None:
    """Simulate a pipeline and print metrics, samples and errors as JSON."""
    definition = _read_definition(definition_file)
    try:
        settings = load_settings()
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    orchestrator = PipelineOrchestrator(default_registry(), settings=settings)
    try:
        report = asyncio.run(orchestrator.dry_run(definition))
    except DefinitionError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(json.dumps(dataclasses.asdict(report), indent=2, default=str))


# =============================================================================
# Run commands
# =============================================================================


@cli.command()
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--pipeline-id", "-p", default=None, help="Pipeline id (keys the checkpoint)")
@click.option("--resume", "resume_run_id", default=None, help="Resume the PAUSED run with this id")
@click.option("--wait", is_flag=True, help="Wait for the run lock instead of failing")
@click.option("--db", type=click.Path(), help="Database path")
def run(
    definition_file: str,
    pipeline_id: str | None,
    resume_run_id: str | None,
    wait: bool,
    db: str | None,
) -> None:
    """Run a pipeline definition as a tracked run."""
    definition = _read_definition(definition_file)
    db_path, settings = _resolve_db(db)
    result = asyncio.run(_run_async(definition, pipeline_id, resume_run_id, wait, db_path, settings))
    _print_result(result)

    if result.status in (RunStatus.FAILED, RunStatus.CANCELLED):
        sys.exit(1)


async def _run_async(
    definition: PipelineDefinition,
    pipeline_id: str | None,
    resume_run_id: str | None,
    wait: bool,
    db_path: Path,
    settings: OrchestratorSettings,
) -> RunResult:
    """Async implementation of run command."""
    db = PipelineDB(db_path)
    await db.connect()

    try:
        orchestrator = _build_orchestrator(db, settings)
        try:
            if resume_run_id:
                return await orchestrator.resume_run(
                    definition, resume_run_id, wait_for_lock=wait
                )
            return await orchestrator.start_run(
                definition, pipeline_id=pipeline_id, wait_for_lock=wait
            )
        except PipelineError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
    finally:
        await db.close()


def _print_result(result: RunResult) -> None:
    """Print run results to console."""
    click.echo("\n" + "=" * 50)
    click.echo(f"Run {result.run_id}: {result.status.value}")
    click.echo("=" * 50)
    click.echo(f"Processed: {result.processed}")
    click.echo(f"Succeeded: {result.succeeded}")
    click.echo(f"Failed: {result.failed}")

    if result.error:
        click.echo(f"Error: {result.error}")
    if result.paused_at_step:
        click.echo(f"Paused at gate: {result.paused_at_step}")
        click.echo(
            "Approve with 'pipeline-orchestrator approve <pipeline-id> "
            f"{result.paused_at_step}' and resume with '--resume {result.run_id}'"
        )

    click.echo("\nSteps:")
    for detail in result.details:
        click.echo(f"  {detail['step']}: {detail['status']}")


@cli.command()
@click.argument("pipeline_id")
@click.argument("step_key")
@click.option("--db", type=click.Path(), help="Database path")
def approve(pipeline_id: str, step_key: str, db: str | None) -> None:
    """Approve a paused GATE step."""
    db_path, settings = _resolve_db(db)
    asyncio.run(_approve_async(pipeline_id, step_key, db_path, settings))
    click.echo(f"Approved gate {step_key} for pipeline {pipeline_id}")


async def _approve_async(
    pipeline_id: str, step_key: str, db_path: Path, settings: OrchestratorSettings
) -> None:
    db = PipelineDB(db_path)
    await db.connect()
    try:
        await _build_orchestrator(db, settings).approve_gate(pipeline_id, step_key)
    finally:
        await db.close()


@cli.command()
@click.argument("run_id")
@click.option("--db", type=click.Path(), help="Database path")
def reject(run_id: str, db: str | None) -> None:
    """Reject the gate a run is paused at, cancelling the run."""
    db_path, settings = _resolve_db(db)
    updated = asyncio.run(_run_action_async("reject", run_id, db_path, settings))
    click.echo(f"Run {updated.run_id}: {updated.status.value}")


@cli.command()
@click.argument("run_id")
@click.option("--db", type=click.Path(), help="Database path")
def cancel(run_id: str, db: str | None) -> None:
    """Request cancellation of a run."""
    db_path, settings = _resolve_db(db)
    updated = asyncio.run(_run_action_async("cancel", run_id, db_path, settings))
    click.echo(f"Run {updated.run_id}: {updated.status.value}")


async def _run_action_async(
    action: str, run_id: str, db_path: Path, settings: OrchestratorSettings
) -> Run:
    db = PipelineDB(db_path)
    await db.connect()
    try:
        orchestrator = _build_orchestrator(db, settings)
        try:
            if action == "reject":
                return await orchestrator.reject_gate(run_id)
            return await orchestrator.request_cancel(run_id)
        except PipelineError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
    finally:
        await db.close()


@cli.command()
@click.option("--pipeline-id", "-p", default=None, help="Only runs of this pipeline")
@click.option("--db", type=click.Path(), help="Database path")
def runs(pipeline_id: str | None, db: str | None) -> None:
    """List tracked runs, newest first."""
    db_path, _ = _resolve_db(db)
    rows = asyncio.run(_runs_async(pipeline_id, db_path))

    if not rows:
        click.echo("No runs found.")
        return
    for item in rows:
        line = f"{item.run_id}  {item.status.value:<16} {item.pipeline_id or '-'}"
        if item.paused_at_step:
            line += f"  (gate: {item.paused_at_step})"
        if item.error:
            line += f"  error: {item.error}"
        click.echo(line)


async def _runs_async(pipeline_id: str | None, db_path: Path) -> list[Run]:
    db = PipelineDB(db_path)
    await db.connect()
    try:
        return await SqliteRunStore(db).list_runs(pipeline_id)
    finally:
        await db.close()


def main() -> None:
    """Entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
