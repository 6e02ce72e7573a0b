"""Pipeline orchestrator.

Entry point tying the pieces together: checkpoint lifecycle, linear or
graph execution, run state transitions, the per-run distributed lock,
gate approval, cancellation, replay and dry runs.

Control flow of a tracked run:
    acquire run lock -> load or clear checkpoint -> walk steps
    -> persist checkpoint if dirty -> record terminal state -> release lock
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import TYPE_CHECKING, Union

from ..checkpoint import (
    CheckpointStore,
    ExecutorContext,
    MemoryCheckpointStore,
    gate_approval_key,
    gate_pending_key,
)
from ..circuit_breaker import CircuitBreakerService
from ..exceptions import (
    DefinitionError,
    InvalidRunTransitionError,
    LockUnavailableError,
    PipelineNotFoundError,
)
from ..locking import DistributedLock, LockRefresher, MemoryLockBackend
from ..models import DryRunReport, Record, Run, RunResult, RunStatus
from ..settings import OrchestratorSettings
from .cancellation import CancellationProbe, CancellationToken
from .dry_run import DryRunSimulator
from .events import LifecycleEventType
from .graph import execute_graph
from .hooks import STAGE_RUN_COMPLETE, STAGE_RUN_ERROR, STAGE_RUN_START
from .linear import execute_linear
from .replay import replay_from_step as _replay
from .run_store import MemoryRunStore, RunStore
from .runner import RecordErrorSink, StepRunner
from .topology import Topology, validate_graph

if TYPE_CHECKING:
    from ..definition import PipelineDefinition
    from ..executors.gate import GateExecutor
    from ..executors.registry import ExecutorRegistry
    from .events import EventPublisher
    from .hooks import HookRunner

logger = logging.getLogger(__name__)

CancelArg = Union[CancellationToken, CancellationProbe, None]

_STATUS_EVENTS = {
    RunStatus.COMPLETED: LifecycleEventType.RUN_COMPLETED,
    RunStatus.FAILED: LifecycleEventType.RUN_FAILED,
    RunStatus.PAUSED: LifecycleEventType.RUN_PAUSED,
    RunStatus.CANCELLED: LifecycleEventType.RUN_CANCELLED,
}


def run_lock_key(run_id: str) -> str:
    return f"pipeline-run:{run_id}"


def _as_token(cancel: CancelArg) -> CancellationToken:
    if isinstance(cancel, CancellationToken):
        return cancel
    return CancellationToken(cancel)


class PipelineOrchestrator:
    """Executes pipeline definitions.

    Usage:
        orchestrator = PipelineOrchestrator(default_registry())
        result = await orchestrator.execute(definition, pipeline_id="orders")
        if result.paused:
            await orchestrator.approve_gate("orders", result.paused_at_step)
            result = await orchestrator.execute(definition, pipeline_id="orders", resume=True)

    Tracked runs (with a Run record and the run lock) go through
    :meth:`start_run` / :meth:`resume_run` instead.
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        checkpoint_store: CheckpointStore | None = None,
        *,
        lock: DistributedLock | None = None,
        run_store: RunStore | None = None,
        breaker: CircuitBreakerService | None = None,
        events: EventPublisher | None = None,
        hooks: HookRunner | None = None,
        gate: GateExecutor | None = None,
        record_error_sink: RecordErrorSink | None = None,
        settings: OrchestratorSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            registry: Executors per step type.
            checkpoint_store: Checkpoint persistence. In-memory if None.
            lock: Run lock. In-process backend if None.
            run_store: Run persistence. In-memory if None.
            breaker: Circuit breaker for EXPORT/SINK steps.
            events: Lifecycle event publisher.
            hooks: Hook runner for definition hooks.
            gate: GATE evaluator.
            record_error_sink: Receives every per-record error.
            settings: Defaults for lock, retry, breaker and dry run.
            sleep: Awaitable sleep (injectable for tests).
        """
        self._settings = settings or OrchestratorSettings()
        lock_settings = self._settings.lock
        self._registry = registry
        self._checkpoints = checkpoint_store or MemoryCheckpointStore()
        self._lock = lock or DistributedLock(
            MemoryLockBackend(max_locks=lock_settings.max_memory_locks),
            default_ttl_ms=lock_settings.ttl_ms,
            wait_timeout_ms=lock_settings.wait_timeout_ms,
            retry_interval_ms=lock_settings.retry_interval_ms,
        )
        self._runs = run_store or MemoryRunStore()
        self._breaker = breaker or CircuitBreakerService(self._settings.circuit_breaker)
        self._events = events
        self._hooks = hooks
        self._gate = gate
        self._sink = record_error_sink
        self._sleep = sleep
        self._simulator = DryRunSimulator(registry, self._settings.dry_run.sample_limit)

    @property
    def breaker(self) -> CircuitBreakerService:
        return self._breaker

    @property
    def lock(self) -> DistributedLock:
        return self._lock

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, definition: PipelineDefinition) -> Topology | None:
        """Check executors and graph shape before anything runs.

        Returns:
            The topology for graph definitions, None for linear ones.

        Raises:
            DefinitionError: On a missing executor, unknown edge endpoint
                or cycle.
        """
        self._registry.check_definition(definition)
        if definition.is_graph:
            return validate_graph(definition)
        return None

    # =========================================================================
    # Untracked execution
    # =========================================================================

    async def execute(
        self,
        definition: PipelineDefinition,
        *,
        pipeline_id: str | None = None,
        resume: bool = False,
        cancel: CancelArg = None,
        run_id: str | None = None,
    ) -> RunResult:
        """Execute *definition* once, without a Run record or lock.

        A fresh run (``resume=False``) with a pipeline id clears the stored
        checkpoint first, unless it is already cancelled, in which case the
        store is left untouched; a resume loads it unchanged. The checkpoint is
        saved afterwards iff a step marked it dirty.

        Raises:
            DefinitionError: If the definition fails validation. Nothing
                has executed in that case.
        """
        topology = self.validate(definition)
        token = _as_token(cancel)
        if pipeline_id and not resume and not await token.is_cancelled():
            await self._checkpoints.clear(pipeline_id)
        ctx = await self._prepare_context(definition, pipeline_id, resume, run_id)
        runner = self._new_runner(definition, ctx)

        async def walk() -> RunResult:
            if topology is not None:
                return await execute_graph(runner, topology, token)
            return await execute_linear(runner, definition.steps, token)

        return await self._drive(runner, ctx, walk)

    async def replay_from_step(
        self,
        definition: PipelineDefinition,
        start_step_key: str,
        seed: list[Record],
        *,
        pipeline_id: str | None = None,
        cancel: CancelArg = None,
        run_id: str | None = None,
    ) -> RunResult:
        """Re-execute from *start_step_key* with *seed* as its input.

        The stored checkpoint is loaded as for a resume.

        Raises:
            DefinitionError: On an invalid definition or unknown start step.
        """
        topology = self.validate(definition)
        if definition.get_step(start_step_key) is None:
            msg = f"Replay start step not found: {start_step_key}"
            raise DefinitionError(msg)

        ctx = await self._prepare_context(definition, pipeline_id, True, run_id)
        runner = self._new_runner(definition, ctx)
        token = _as_token(cancel)

        async def walk() -> RunResult:
            return await _replay(runner, start_step_key, seed, token, topology)

        return await self._drive(runner, ctx, walk)

    async def dry_run(self, definition: PipelineDefinition) -> DryRunReport:
        """Simulate *definition*; never reads or writes the checkpoint store.

        Raises:
            DefinitionError: If a graph definition has a cycle or an
                unknown edge endpoint.
        """
        if definition.is_graph:
            validate_graph(definition)
        return await self._simulator.simulate(definition)

    # =========================================================================
    # Tracked runs
    # =========================================================================

    async def start_run(
        self,
        definition: PipelineDefinition,
        *,
        pipeline_id: str | None = None,
        run_id: str | None = None,
        resume: bool = False,
        cancel: CancellationProbe | None = None,
        wait_for_lock: bool = False,
    ) -> RunResult:
        """Create a Run and execute it under the run lock.

        Raises:
            LockUnavailableError: If another instance holds the run lock.
                No Run record is written in that case.
            InvalidRunTransitionError: If a run with *run_id* already exists.
            DefinitionError: If the definition is invalid. Any exception
                escaping execution records the Run as FAILED first.
        """
        run = Run(pipeline_id=pipeline_id)
        if run_id:
            run.run_id = run_id
        return await self._run_locked(run, definition, resume, cancel, wait_for_lock)

    async def resume_run(
        self,
        definition: PipelineDefinition,
        run_id: str,
        *,
        cancel: CancellationProbe | None = None,
        wait_for_lock: bool = False,
    ) -> RunResult:
        """Continue a PAUSED run with its stored checkpoint.

        Raises:
            PipelineNotFoundError: If the run does not exist.
            InvalidRunTransitionError: If the run is not PAUSED, checked
                again once the run lock is held.
            LockUnavailableError: If another instance holds the run lock.
        """
        run = await self._require_run(run_id)
        if run.status != RunStatus.PAUSED:
            raise InvalidRunTransitionError(run_id, run.status.value, RunStatus.RUNNING.value)
        return await self._run_locked(
            run, definition, True, cancel, wait_for_lock, existing=True
        )

    async def approve_gate(self, pipeline_id: str, step_key: str) -> None:
        """Set the approval flag for *step_key* in the pipeline's checkpoint."""
        snapshot = await self._checkpoints.get(pipeline_id) or {}
        snapshot[gate_approval_key(step_key)] = True
        await self._checkpoints.set(pipeline_id, snapshot)
        logger.info("Gate %s approved for pipeline %s", step_key, pipeline_id)

    async def reject_gate(self, run_id: str) -> Run:
        """Cancel a PAUSED run and drop its pending gate snapshot.

        Raises:
            PipelineNotFoundError: If the run does not exist.
            InvalidRunTransitionError: If the run is not PAUSED.
        """
        run = await self._require_run(run_id)
        if run.status != RunStatus.PAUSED:
            raise InvalidRunTransitionError(run_id, run.status.value, RunStatus.CANCELLED.value)
        step_key = run.paused_at_step
        run.transition(RunStatus.CANCELLED)
        run.error = f"Gate {step_key} rejected"
        await self._runs.save(run)

        if run.pipeline_id and step_key:
            snapshot = await self._checkpoints.get(run.pipeline_id)
            if snapshot is not None and gate_pending_key(step_key) in snapshot:
                del snapshot[gate_pending_key(step_key)]
                await self._checkpoints.set(run.pipeline_id, snapshot)
        logger.info("Gate %s rejected, run %s cancelled", step_key, run_id)
        return run

    async def request_cancel(self, run_id: str) -> Run:
        """Ask a run to stop.

        A RUNNING run moves to CANCEL_REQUESTED and stops at its next step
        boundary. PENDING and PAUSED runs have no step in flight and are
        cancelled immediately.

        Raises:
            PipelineNotFoundError: If the run does not exist.
            InvalidRunTransitionError: If the run already finished.
        """
        run = await self._require_run(run_id)
        if run.status in (RunStatus.PENDING, RunStatus.PAUSED):
            run.transition(RunStatus.CANCELLED)
        elif run.status != RunStatus.CANCEL_REQUESTED:
            run.transition(RunStatus.CANCEL_REQUESTED)
        await self._runs.save(run)
        logger.info("Cancellation requested for run %s (%s)", run_id, run.status.value)
        return run

    async def get_run(self, run_id: str) -> Run | None:
        return await self._runs.get(run_id)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _require_run(self, run_id: str) -> Run:
        run = await self._runs.get(run_id)
        if run is None:
            raise PipelineNotFoundError(run_id)
        return run

    async def _prepare_context(
        self,
        definition: PipelineDefinition,
        pipeline_id: str | None,
        resume: bool,
        run_id: str | None,
    ) -> ExecutorContext:
        checkpoint: dict = {}
        if pipeline_id and resume:
            checkpoint = await self._checkpoints.get(pipeline_id) or {}
        return ExecutorContext.for_run(
            checkpoint,
            definition.context,
            pipeline_id=pipeline_id,
            run_id=run_id,
        )

    def _new_runner(self, definition: PipelineDefinition, ctx: ExecutorContext) -> StepRunner:
        return StepRunner(
            definition,
            self._registry,
            ctx,
            events=self._events,
            hooks=self._hooks,
            gate=self._gate,
            breaker=self._breaker,
            record_error_sink=self._sink,
            retry_policy=self._settings.retry,
            sleep=self._sleep,
        )

    async def _drive(
        self,
        runner: StepRunner,
        ctx: ExecutorContext,
        walk: Callable[[], Awaitable[RunResult]],
    ) -> RunResult:
        payload = {"runId": ctx.run_id, "pipelineId": ctx.pipeline_id}
        await runner.hooks.stage(STAGE_RUN_START, payload)
        await runner.emit(LifecycleEventType.RUN_STARTED)

        try:
            result = await walk()
        except Exception as exc:
            logger.error("Run %s failed: %s", ctx.run_id or ctx.pipeline_id or "-", exc)
            result = runner.result(RunStatus.FAILED, error=str(exc))
        finally:
            await self._persist_checkpoint(ctx)

        await runner.emit(
            _STATUS_EVENTS[result.status],
            result.paused_at_step,
            **result.metrics(),
        )
        if result.status == RunStatus.FAILED:
            await runner.hooks.stage(STAGE_RUN_ERROR, {**payload, "error": result.error})
        else:
            await runner.hooks.stage(
                STAGE_RUN_COMPLETE, {**payload, "status": result.status.value}
            )
        return result

    async def _persist_checkpoint(self, ctx: ExecutorContext) -> None:
        if ctx.dry_run or not ctx.dirty or not ctx.pipeline_id:
            return
        if ctx.checkpointing is not None and not ctx.checkpointing.enabled:
            logger.debug("Checkpointing disabled for pipeline %s", ctx.pipeline_id)
            return
        await self._checkpoints.set(ctx.pipeline_id, ctx.checkpoint)
        logger.debug("Persisted checkpoint for pipeline %s", ctx.pipeline_id)

    async def _run_locked(
        self,
        run: Run,
        definition: PipelineDefinition,
        resume: bool,
        cancel: CancellationProbe | None,
        wait_for_lock: bool,
        *,
        existing: bool = False,
    ) -> RunResult:
        key = run_lock_key(run.run_id)
        ttl_ms = self._settings.lock.ttl_ms
        acquired = await self._lock.acquire(key, ttl_ms=ttl_ms, wait_for_lock=wait_for_lock)
        if not acquired.acquired or acquired.token is None:
            raise LockUnavailableError(key, acquired.current_owner)

        try:
            run = await self._claim_run(run, existing)
        except Exception:
            await self._lock.release(key, acquired.token)
            raise

        refresher = LockRefresher(
            self._lock,
            key,
            acquired.token,
            ttl_ms,
            fraction=self._settings.lock.refresh_fraction,
        )
        refresher.start()
        try:
            run.transition(RunStatus.RUNNING)
            await self._runs.save(run)
            token = CancellationToken(self._cancel_probe(run.run_id, cancel, refresher))

            try:
                result = await self.execute(
                    definition,
                    pipeline_id=run.pipeline_id,
                    resume=resume,
                    cancel=token,
                    run_id=run.run_id,
                )
            except Exception as exc:
                run.transition(RunStatus.FAILED)
                run.error = str(exc)
                run.metrics = {"processed": 0, "succeeded": 0, "failed": 0}
                await self._runs.save(run)
                raise

            if refresher.lost and result.status == RunStatus.CANCELLED:
                logger.warning("Run %s lost its lock; stopped before the next step", run.run_id)
                result = replace(
                    result,
                    status=RunStatus.FAILED,
                    error=f"Run lock {key} lost during execution",
                )

            await self._finish_run(run, result)
            return result
        finally:
            await refresher.stop()
            await self._lock.release(key, acquired.token)

    async def _claim_run(self, run: Run, existing: bool) -> Run:
        """Re-read *run* now that the lock is held.

        Another instance may have started, resumed or cancelled it between
        the caller's check and the lock acquisition.

        Raises:
            PipelineNotFoundError: If a resumed run disappeared.
            InvalidRunTransitionError: If a new run id is already taken or a
                resumed run is no longer PAUSED.
        """
        stored = await self._runs.get(run.run_id)
        if not existing:
            if stored is not None:
                raise InvalidRunTransitionError(
                    run.run_id, stored.status.value, RunStatus.RUNNING.value
                )
            return run
        if stored is None:
            raise PipelineNotFoundError(run.run_id)
        if stored.status != RunStatus.PAUSED:
            raise InvalidRunTransitionError(
                run.run_id, stored.status.value, RunStatus.RUNNING.value
            )
        return stored

    async def _finish_run(self, run: Run, result: RunResult) -> None:
        stored = await self._runs.get(run.run_id)
        if stored is not None and stored.status == RunStatus.CANCEL_REQUESTED:
            run.status = RunStatus.CANCEL_REQUESTED
        run.transition(result.status)
        run.error = result.error
        run.paused_at_step = result.paused_at_step
        run.metrics = result.metrics()
        await self._runs.save(run)
        logger.info("Run %s finished: %s %s", run.run_id, run.status.value, run.metrics)

    def _cancel_probe(
        self,
        run_id: str,
        external: CancellationProbe | None,
        refresher: LockRefresher,
    ) -> CancellationProbe:
        async def probe() -> bool:
            if refresher.lost:
                return True
            if external is not None and await external():
                return True
            stored = await self._runs.get(run_id)
            return stored is not None and stored.status == RunStatus.CANCEL_REQUESTED

        return probe
