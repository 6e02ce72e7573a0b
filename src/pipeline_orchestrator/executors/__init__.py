"""Step executor contracts, registry and built-in executors."""

from .base import (
    ExtractExecutor,
    LoadExecutor,
    OnRecordError,
    OperatorExecutor,
    RouteExecutor,
    Simulatable,
    StepExecutor,
)
from .builtin import (
    FieldEqualityRouter,
    FieldMappingTransform,
    InlineRecordsExtractor,
    MemoryLoader,
    RequiredFieldsValidator,
    default_registry,
)
from .gate import GateDecision, GateExecutor
from .idempotency import apply_idempotency
from .registry import ExecutorRegistry
from .throughput import deliver_with_throughput

__all__ = [
    "ExecutorRegistry",
    "ExtractExecutor",
    "FieldEqualityRouter",
    "FieldMappingTransform",
    "GateDecision",
    "GateExecutor",
    "InlineRecordsExtractor",
    "LoadExecutor",
    "MemoryLoader",
    "OnRecordError",
    "OperatorExecutor",
    "RequiredFieldsValidator",
    "RouteExecutor",
    "Simulatable",
    "StepExecutor",
    "apply_idempotency",
    "default_registry",
    "deliver_with_throughput",
]
