"""Tests for tracked runs, checkpoint lifecycle, events and hooks."""

from __future__ import annotations

import asyncio

import pytest

from pipeline_orchestrator.checkpoint import MemoryCheckpointStore, gate_pending_key
from pipeline_orchestrator.definition import load_definition
from pipeline_orchestrator.exceptions import (
    DefinitionError,
    InvalidRunTransitionError,
    LockUnavailableError,
    PipelineNotFoundError,
)
from pipeline_orchestrator.executors import ExtractExecutor, OperatorExecutor
from pipeline_orchestrator.models import RunStatus
from pipeline_orchestrator.orchestration import (
    EventBus,
    HookRunner,
    LifecycleEventType,
    MemoryRunStore,
    PipelineOrchestrator,
    run_lock_key,
)
from pipeline_orchestrator.settings import LockSettings, OrchestratorSettings
from tests.fakes import (
    ExplodingOperator,
    FlakyLoader,
    StaticExtractor,
    build_registry,
    records,
)

GATED = {
    "steps": [
        {"key": "src", "type": "EXTRACT"},
        {"key": "review", "type": "GATE"},
        {"key": "out", "type": "LOAD"},
    ]
}

PLAIN = {"steps": [{"key": "src", "type": "EXTRACT"}, {"key": "out", "type": "LOAD"}]}


class CursorExtractor(ExtractExecutor):
    """Counts its own invocations in the checkpoint."""

    def __init__(self) -> None:
        self.seen: list[object] = []

    async def execute(self, step, records, ctx, on_record_error):
        previous = ctx.get(step.key)
        self.seen.append(previous)
        ctx.set(step.key, {"cursor": (previous or {}).get("cursor", 0) + 1})
        return [{"id": 1}]


class CancelRequestingOperator(OperatorExecutor):
    """Requests cancellation of the current run through the orchestrator."""

    def __init__(self) -> None:
        self.orchestrator: PipelineOrchestrator | None = None

    async def execute(self, step, records, ctx, on_record_error):
        assert self.orchestrator is not None and ctx.run_id is not None
        await self.orchestrator.request_cancel(ctx.run_id)
        return records


class LockStealingOperator(OperatorExecutor):
    """Hands the run lock to another owner, then outlives the refresh interval."""

    def __init__(self) -> None:
        self.orchestrator: PipelineOrchestrator | None = None
        self.intruder_token: str | None = None

    async def execute(self, step, records, ctx, on_record_error):
        assert self.orchestrator is not None and ctx.run_id is not None
        lock = self.orchestrator.lock
        key = run_lock_key(ctx.run_id)
        for info in await lock.active_locks():
            if info.key == key:
                await lock.release(key, info.token)
        taken = await lock.acquire(key, ttl_ms=60_000)
        self.intruder_token = taken.token
        await asyncio.sleep(0.35)
        return records


class BrokenCheckpointStore(MemoryCheckpointStore):
    async def clear(self, pipeline_id):
        raise OSError("disk gone")


class RecordingHooks(HookRunner):
    def __init__(self) -> None:
        self.stages: list[tuple[str, dict]] = []

    async def run_stage(self, stage, actions, payload):
        self.stages.append((stage, payload))


class TestCheckpointLifecycle:
    """Clear on fresh run, load on resume, persist iff dirty."""

    @pytest.fixture
    def store(self) -> MemoryCheckpointStore:
        return MemoryCheckpointStore({"p": {"src": {"cursor": 41}, "stale": True}})

    @pytest.mark.asyncio
    async def test_fresh_run_starts_from_empty_checkpoint(
        self, store: MemoryCheckpointStore
    ) -> None:
        extractor = CursorExtractor()
        orchestrator = PipelineOrchestrator(build_registry(extractor, loader=FlakyLoader()), store)

        await orchestrator.execute(load_definition(PLAIN), pipeline_id="p")

        assert extractor.seen == [None]
        assert await store.get("p") == {"src": {"cursor": 1}}

    @pytest.mark.asyncio
    async def test_resume_sees_stored_checkpoint(self, store: MemoryCheckpointStore) -> None:
        extractor = CursorExtractor()
        orchestrator = PipelineOrchestrator(build_registry(extractor, loader=FlakyLoader()), store)

        await orchestrator.execute(load_definition(PLAIN), pipeline_id="p", resume=True)

        assert extractor.seen == [{"cursor": 41}]
        assert await store.get("p") == {"src": {"cursor": 42}, "stale": True}

    @pytest.mark.asyncio
    async def test_clean_run_does_not_write(self, store: MemoryCheckpointStore) -> None:
        orchestrator = PipelineOrchestrator(
            build_registry(StaticExtractor(records(1)), loader=FlakyLoader()), store
        )

        await orchestrator.execute(load_definition(PLAIN), pipeline_id="p", resume=True)

        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_disabled_checkpointing_does_not_write(
        self, store: MemoryCheckpointStore
    ) -> None:
        orchestrator = PipelineOrchestrator(
            build_registry(CursorExtractor(), loader=FlakyLoader()), store
        )
        definition = load_definition({**PLAIN, "context": {"checkpointing": {"enabled": False}}})

        await orchestrator.execute(definition, pipeline_id="p", resume=True)

        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_checkpoint_persisted_when_run_fails(self) -> None:
        store = MemoryCheckpointStore()
        orchestrator = PipelineOrchestrator(
            build_registry(CursorExtractor(), ExplodingOperator()), store
        )
        definition = load_definition(
            {
                "steps": [
                    {"key": "src", "type": "EXTRACT"},
                    {"key": "bad", "type": "TRANSFORM"},
                ]
            }
        )

        result = await orchestrator.execute(definition, pipeline_id="p")

        assert result.status == RunStatus.FAILED
        assert await store.get("p") == {"src": {"cursor": 1}}


class TestTrackedRuns:
    """start_run / resume_run / approve / reject / cancel."""

    @pytest.fixture
    def runs(self) -> MemoryRunStore:
        return MemoryRunStore()

    @pytest.fixture
    def loader(self) -> FlakyLoader:
        return FlakyLoader()

    @pytest.fixture
    def store(self) -> MemoryCheckpointStore:
        return MemoryCheckpointStore()

    @pytest.fixture
    def orchestrator(self, runs, loader, store) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            build_registry(StaticExtractor(records(3)), loader=loader),
            store,
            run_store=runs,
        )

    @pytest.mark.asyncio
    async def test_completed_run_recorded_and_lock_released(
        self, orchestrator: PipelineOrchestrator
    ) -> None:
        result = await orchestrator.start_run(load_definition(PLAIN), run_id="r1")

        assert result.status == RunStatus.COMPLETED
        assert result.run_id == "r1"
        run = await orchestrator.get_run("r1")
        assert run is not None
        assert run.status == RunStatus.COMPLETED
        assert run.metrics == {"processed": 3, "succeeded": 3, "failed": 0}
        assert await orchestrator.lock.is_locked(run_lock_key("r1")) is False

    @pytest.mark.asyncio
    async def test_held_lock_rejects_without_run_record(
        self, orchestrator: PipelineOrchestrator, loader: FlakyLoader
    ) -> None:
        await orchestrator.lock.acquire(run_lock_key("r1"), ttl_ms=60_000)

        with pytest.raises(LockUnavailableError, match="pipeline-run:r1"):
            await orchestrator.start_run(load_definition(PLAIN), run_id="r1")

        assert await orchestrator.get_run("r1") is None
        assert loader.batches == []

    @pytest.mark.asyncio
    async def test_invalid_definition_records_failed_run(self, runs: MemoryRunStore) -> None:
        orchestrator = PipelineOrchestrator(
            build_registry(StaticExtractor([])), run_store=runs
        )

        with pytest.raises(DefinitionError):
            await orchestrator.start_run(load_definition(PLAIN), run_id="bad")

        run = await runs.get("bad")
        assert run is not None
        assert run.status == RunStatus.FAILED
        assert "No executor registered" in (run.error or "")

    @pytest.mark.asyncio
    async def test_gate_pause_approve_resume(
        self, orchestrator: PipelineOrchestrator, loader: FlakyLoader
    ) -> None:
        definition = load_definition(GATED)

        paused = await orchestrator.start_run(definition, pipeline_id="p", run_id="r1")
        run = await orchestrator.get_run("r1")
        assert paused.status == RunStatus.PAUSED
        assert run is not None and run.status == RunStatus.PAUSED
        assert run.paused_at_step == "review"

        still_paused = await orchestrator.resume_run(definition, "r1")
        assert still_paused.status == RunStatus.PAUSED

        await orchestrator.approve_gate("p", "review")
        done = await orchestrator.resume_run(definition, "r1")

        assert done.status == RunStatus.COMPLETED
        assert [len(b) for b in loader.batches] == [3]
        run = await orchestrator.get_run("r1")
        assert run is not None and run.status == RunStatus.COMPLETED
        assert run.paused_at_step is None

    @pytest.mark.asyncio
    async def test_resume_requires_paused_run(self, orchestrator: PipelineOrchestrator) -> None:
        definition = load_definition(PLAIN)
        await orchestrator.start_run(definition, run_id="r1")

        with pytest.raises(InvalidRunTransitionError):
            await orchestrator.resume_run(definition, "r1")
        with pytest.raises(PipelineNotFoundError):
            await orchestrator.resume_run(definition, "missing")

    @pytest.mark.asyncio
    async def test_reject_gate_cancels_and_drops_snapshot(
        self, orchestrator: PipelineOrchestrator, store: MemoryCheckpointStore
    ) -> None:
        await orchestrator.start_run(load_definition(GATED), pipeline_id="p", run_id="r1")
        snapshot = await store.get("p")
        assert snapshot is not None and gate_pending_key("review") in snapshot

        run = await orchestrator.reject_gate("r1")

        assert run.status == RunStatus.CANCELLED
        assert run.error == "Gate review rejected"
        snapshot = await store.get("p")
        assert snapshot is not None and gate_pending_key("review") not in snapshot

    @pytest.mark.asyncio
    async def test_cancel_paused_run_is_immediate(
        self, orchestrator: PipelineOrchestrator
    ) -> None:
        await orchestrator.start_run(load_definition(GATED), pipeline_id="p", run_id="r1")

        run = await orchestrator.request_cancel("r1")

        assert run.status == RunStatus.CANCELLED
        with pytest.raises(InvalidRunTransitionError):
            await orchestrator.request_cancel("r1")

    @pytest.mark.asyncio
    async def test_cancel_requested_mid_run_stops_at_next_step(
        self, runs: MemoryRunStore, loader: FlakyLoader
    ) -> None:
        operator = CancelRequestingOperator()
        orchestrator = PipelineOrchestrator(
            build_registry(StaticExtractor(records(2)), operator, loader), run_store=runs
        )
        operator.orchestrator = orchestrator
        definition = load_definition(
            {
                "steps": [
                    {"key": "src", "type": "EXTRACT"},
                    {"key": "t", "type": "TRANSFORM"},
                    {"key": "out", "type": "LOAD"},
                ]
            }
        )

        result = await orchestrator.start_run(definition, run_id="r1")

        assert result.status == RunStatus.CANCELLED
        assert loader.batches == []
        run = await runs.get("r1")
        assert run is not None and run.status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_concurrent_resumes_run_once(
        self, orchestrator: PipelineOrchestrator, loader: FlakyLoader
    ) -> None:
        definition = load_definition(GATED)
        await orchestrator.start_run(definition, pipeline_id="p", run_id="r1")
        await orchestrator.approve_gate("p", "review")

        outcomes = await asyncio.gather(
            orchestrator.resume_run(definition, "r1", wait_for_lock=True),
            orchestrator.resume_run(definition, "r1", wait_for_lock=True),
            return_exceptions=True,
        )

        statuses = [o.status for o in outcomes if not isinstance(o, BaseException)]
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        assert statuses == [RunStatus.COMPLETED]
        assert len(errors) == 1 and isinstance(errors[0], InvalidRunTransitionError)
        assert [len(b) for b in loader.batches] == [3]
        run = await orchestrator.get_run("r1")
        assert run is not None and run.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_rechecks_status_once_lock_is_held(
        self, orchestrator: PipelineOrchestrator, loader: FlakyLoader
    ) -> None:
        definition = load_definition(GATED)
        await orchestrator.start_run(definition, pipeline_id="p", run_id="r1")
        await orchestrator.approve_gate("p", "review")
        held = await orchestrator.lock.acquire(run_lock_key("r1"), ttl_ms=60_000)

        waiting = asyncio.create_task(
            orchestrator.resume_run(definition, "r1", wait_for_lock=True)
        )
        await asyncio.sleep(0)
        # Cancelled while the resume was still waiting for the lock
        await orchestrator.request_cancel("r1")
        await orchestrator.lock.release(held.key, held.token)

        with pytest.raises(InvalidRunTransitionError, match="CANCELLED -> RUNNING"):
            await waiting

        assert loader.batches == []
        run = await orchestrator.get_run("r1")
        assert run is not None and run.status == RunStatus.CANCELLED
        assert await orchestrator.lock.is_locked(run_lock_key("r1")) is False

    @pytest.mark.asyncio
    async def test_start_rejects_existing_run_id(
        self, orchestrator: PipelineOrchestrator, loader: FlakyLoader
    ) -> None:
        definition = load_definition(PLAIN)
        await orchestrator.start_run(definition, run_id="r1")

        with pytest.raises(InvalidRunTransitionError, match="COMPLETED -> RUNNING"):
            await orchestrator.start_run(definition, run_id="r1")

        assert len(loader.batches) == 1
        run = await orchestrator.get_run("r1")
        assert run is not None and run.status == RunStatus.COMPLETED
        assert await orchestrator.lock.is_locked(run_lock_key("r1")) is False

    @pytest.mark.asyncio
    async def test_lost_lock_stops_run_as_failed(
        self, runs: MemoryRunStore, loader: FlakyLoader
    ) -> None:
        operator = LockStealingOperator()
        orchestrator = PipelineOrchestrator(
            build_registry(StaticExtractor(records(2)), operator, loader),
            run_store=runs,
            settings=OrchestratorSettings(lock=LockSettings(ttl_ms=300)),
        )
        operator.orchestrator = orchestrator
        definition = load_definition(
            {
                "steps": [
                    {"key": "src", "type": "EXTRACT"},
                    {"key": "t", "type": "TRANSFORM"},
                    {"key": "out", "type": "LOAD"},
                ]
            }
        )

        result = await orchestrator.start_run(definition, run_id="r1")

        assert result.status == RunStatus.FAILED
        assert "lost" in (result.error or "")
        assert loader.batches == []
        run = await runs.get("r1")
        assert run is not None and run.status == RunStatus.FAILED
        assert run.error == result.error
        # The new owner keeps the lock
        holders = {i.key: i.token for i in await orchestrator.lock.active_locks()}
        assert holders[run_lock_key("r1")] == operator.intruder_token

    @pytest.mark.asyncio
    async def test_unexpected_error_records_failed_run(
        self, runs: MemoryRunStore, loader: FlakyLoader
    ) -> None:
        orchestrator = PipelineOrchestrator(
            build_registry(StaticExtractor(records(2)), loader=loader),
            BrokenCheckpointStore(),
            run_store=runs,
        )

        with pytest.raises(OSError, match="disk gone"):
            await orchestrator.start_run(load_definition(PLAIN), pipeline_id="p", run_id="r1")

        run = await runs.get("r1")
        assert run is not None
        assert run.status == RunStatus.FAILED
        assert run.error == "disk gone"
        assert run.metrics == {"processed": 0, "succeeded": 0, "failed": 0}
        assert loader.batches == []
        assert await orchestrator.lock.is_locked(run_lock_key("r1")) is False


class TestEventsAndHooks:
    """Lifecycle events and hook stages."""

    @pytest.mark.asyncio
    async def test_event_sequence(self) -> None:
        bus = EventBus()
        seen: list[LifecycleEventType] = []

        async def collect(event) -> None:
            seen.append(event.type)

        bus.subscribe(collect)
        orchestrator = PipelineOrchestrator(
            build_registry(StaticExtractor(records(1)), loader=FlakyLoader()), events=bus
        )

        await orchestrator.execute(load_definition(PLAIN))

        assert seen == [
            LifecycleEventType.RUN_STARTED,
            LifecycleEventType.STEP_STARTED,
            LifecycleEventType.STEP_COMPLETED,
            LifecycleEventType.STEP_STARTED,
            LifecycleEventType.STEP_COMPLETED,
            LifecycleEventType.RUN_COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_affect_run(self) -> None:
        bus = EventBus()

        def explode(event) -> None:
            raise RuntimeError("subscriber down")

        bus.subscribe(explode)
        orchestrator = PipelineOrchestrator(
            build_registry(StaticExtractor(records(2)), loader=FlakyLoader()), events=bus
        )

        result = await orchestrator.execute(load_definition(PLAIN))

        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_hook_stages(self) -> None:
        hooks = RecordingHooks()
        orchestrator = PipelineOrchestrator(
            build_registry(StaticExtractor(records(2)), loader=FlakyLoader()), hooks=hooks
        )

        await orchestrator.execute(load_definition(PLAIN), pipeline_id="p")

        assert [stage for stage, _ in hooks.stages] == [
            "onStart",
            "beforeStep",
            "afterStep",
            "beforeStep",
            "afterStep",
            "onComplete",
        ]
        assert hooks.stages[-1][1]["status"] == "COMPLETED"

    @pytest.mark.asyncio
    async def test_error_hook_on_failure(self) -> None:
        hooks = RecordingHooks()
        orchestrator = PipelineOrchestrator(
            build_registry(StaticExtractor(records(1)), ExplodingOperator()), hooks=hooks
        )
        definition = load_definition(
            {"steps": [{"key": "src", "type": "EXTRACT"}, {"key": "t", "type": "TRANSFORM"}]}
        )

        await orchestrator.execute(definition)

        stage, payload = hooks.stages[-1]
        assert stage == "onError"
        assert payload["error"] == "boom in t"
