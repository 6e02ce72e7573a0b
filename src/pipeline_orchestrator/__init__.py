"""Pipeline Orchestrator.

This package executes data pipeline definitions (linear step lists or
directed graphs) with checkpointing, human approval gates, replay, dry
runs, circuit breaking and distributed run locks.
"""

from __future__ import annotations

from .checkpoint import (
    CheckpointStore,
    ExecutorContext,
    MemoryCheckpointStore,
    SqliteCheckpointStore,
)
from .circuit_breaker import CircuitBreakerService, CircuitOpenError, CircuitState
from .database import PipelineDB
from .definition import PipelineDefinition, load_definition
from .exceptions import (
    AdapterError,
    DefinitionError,
    InvalidRunTransitionError,
    LockUnavailableError,
    PipelineError,
    PipelineNotFoundError,
    RecordError,
)
from .executors import ExecutorRegistry, MemoryLoader, default_registry
from .locking import DistributedLock, MemoryLockBackend, SqliteLockBackend
from .models import DryRunReport, Run, RunResult, RunStatus, StepType
from .orchestration import (
    CancellationToken,
    EventBus,
    LifecycleEventType,
    MemoryRunStore,
    PipelineOrchestrator,
    SqliteRunStore,
)
from .settings import OrchestratorSettings, load_settings
from .cli import cli, main

__version__ = "0.1.0"

__all__ = [
    # Orchestration
    "PipelineOrchestrator",
    "CancellationToken",
    "EventBus",
    "LifecycleEventType",
    "MemoryRunStore",
    "SqliteRunStore",
    # Definitions
    "PipelineDefinition",
    "load_definition",
    "StepType",
    # Executors
    "ExecutorRegistry",
    "MemoryLoader",
    "default_registry",
    # Checkpoints
    "CheckpointStore",
    "ExecutorContext",
    "MemoryCheckpointStore",
    "SqliteCheckpointStore",
    # Locking
    "DistributedLock",
    "MemoryLockBackend",
    "SqliteLockBackend",
    # Circuit breaker
    "CircuitBreakerService",
    "CircuitOpenError",
    "CircuitState",
    # Database
    "PipelineDB",
    # Models
    "DryRunReport",
    "Run",
    "RunResult",
    "RunStatus",
    # Settings
    "OrchestratorSettings",
    "load_settings",
    # Errors
    "AdapterError",
    "DefinitionError",
    "InvalidRunTransitionError",
    "LockUnavailableError",
    "PipelineError",
    "PipelineNotFoundError",
    "RecordError",
    # CLI
    "cli",
    "main",
    "__version__",
]
