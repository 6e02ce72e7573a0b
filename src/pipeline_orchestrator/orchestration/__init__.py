"""Pipeline execution: linear and graph walks, replay, dry run, runs."""

from .cancellation import CancellationProbe, CancellationToken
from .dry_run import DryRunSimulator
from .events import EventBus, EventPublisher, LifecycleEvent, LifecycleEventType
from .graph import execute_graph
from .hooks import HookRunner
from .linear import execute_linear
from .orchestrator import PipelineOrchestrator, run_lock_key
from .replay import replay_from_step
from .run_store import MemoryRunStore, RunStore, SqliteRunStore
from .runner import StepOutcome, StepRunner
from .topology import Topology, build_topology, reachable_from, validate_graph

__all__ = [
    "CancellationProbe",
    "CancellationToken",
    "DryRunSimulator",
    "EventBus",
    "EventPublisher",
    "HookRunner",
    "LifecycleEvent",
    "LifecycleEventType",
    "MemoryRunStore",
    "PipelineOrchestrator",
    "RunStore",
    "SqliteRunStore",
    "StepOutcome",
    "StepRunner",
    "Topology",
    "build_topology",
    "execute_graph",
    "execute_linear",
    "reachable_from",
    "replay_from_step",
    "run_lock_key",
    "validate_graph",
]
