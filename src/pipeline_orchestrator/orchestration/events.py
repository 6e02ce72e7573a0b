"""Lifecycle events for logging and monitoring.

Publishing is fire-and-forget from the orchestrator's point of view: a
failing publisher or subscriber is logged and never affects the run.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, Union

logger = logging.getLogger(__name__)


class LifecycleEventType(str, Enum):
    """Run and step lifecycle notifications."""

    RUN_STARTED = "run.started"
    RUN_COMPLETED = "run.completed"
    RUN_FAILED = "run.failed"
    RUN_PAUSED = "run.paused"
    RUN_CANCELLED = "run.cancelled"
    STEP_STARTED = "step.started"
    STEP_COMPLETED = "step.completed"
    STEP_FAILED = "step.failed"


@dataclass(frozen=True)
class LifecycleEvent:
    """One lifecycle notification."""

    type: LifecycleEventType
    run_id: str | None = None
    pipeline_id: str | None = None
    step_key: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class EventPublisher(Protocol):
    async def publish(self, event: LifecycleEvent) -> None: ...


Subscriber = Callable[[LifecycleEvent], Union[Awaitable[None], None]]


class EventBus:
    """In-process fan-out of lifecycle events.

    Subscribers may be plain functions or coroutine functions. Each one is
    isolated: an exception is logged and the remaining subscribers still
    receive the event.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> bool:
        try:
            self._subscribers.remove(callback)
            return True
        except ValueError:
            return False

    async def publish(self, event: LifecycleEvent) -> None:
        # Iterate over a copy so subscribers may unsubscribe during dispatch
        for callback in self._subscribers[:]:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "Event subscriber %s failed on %s: %s",
                    callback,
                    event.type.value,
                    e,
                    exc_info=True,
                )


async def emit(publisher: EventPublisher | None, event: LifecycleEvent) -> None:
    """Publish *event*, logging and discarding any publisher failure."""
    if publisher is None:
        return
    try:
        await publisher.publish(event)
    except Exception as e:
        logger.warning("Publishing %s failed: %s", event.type.value, e)
