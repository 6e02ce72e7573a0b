"""Keyed circuit breaker service.

One service instance owns every circuit of a process. Circuits are created
lazily on first use, kept in a bounded map and never persisted: the breaker
is a backpressure hint, the adapters remain the source of truth.

State changes are evaluated on read. An OPEN circuit reads as HALF_OPEN
once ``reset_timeout_ms`` has elapsed since its last failure; no timer is
involved.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from ..circuit_breaker_config import DEFAULT_CONFIG, CircuitBreakerConfig, CircuitState
from .exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


def circuit_key(adapter_code: str, host: str) -> str:
    """Build the circuit key for an adapter talking to *host*.

    URLs are reduced to ``scheme://host[:port]``; bare hosts are lowercased
    and stripped of trailing slashes so equivalent endpoints share a circuit.
    """
    raw = (host or "").strip()
    if "://" in raw:
        parts = urlsplit(raw)
        normalized = f"{parts.scheme.lower()}://{parts.netloc.lower()}"
    else:
        normalized = raw.rstrip("/").lower()
    return f"{adapter_code}:{normalized}"


@dataclass
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    failures: deque[float] = field(default_factory=deque)
    half_open_successes: int = 0
    total_successes: int = 0
    total_failures: int = 0
    last_failure_at: float | None = None
    opened_at: float | None = None


class CircuitBreakerService:
    """Per-key closed/open/half-open state machine.

    The breaker is advisory. Call sites check :meth:`can_execute` (or
    :meth:`guard`) before an operation and report the outcome with
    :meth:`record_success` / :meth:`record_failure`.

    Usage:
        breaker = CircuitBreakerService(CircuitBreakerConfig(failure_threshold=3))
        key = circuit_key("webhook", "https://hooks.example.com/in")
        if breaker.can_execute(key):
            try:
                await deliver()
            except AdapterError:
                breaker.record_failure(key)
            else:
                breaker.record_success(key)
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            config: Thresholds. Uses DEFAULT_CONFIG if None.
            clock: Millisecond clock. Defaults to a monotonic clock.
        """
        self._config = config or DEFAULT_CONFIG
        self._clock = clock or _monotonic_ms
        self._circuits: OrderedDict[str, _Circuit] = OrderedDict()

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    # =========================================================================
    # Reads
    # =========================================================================

    def get_state(self, key: str) -> CircuitState:
        """Return the current state of *key*, creating a closed circuit if new."""
        return self._touch(key).state

    def can_execute(self, key: str) -> bool:
        """Return True unless the circuit for *key* is currently open."""
        return self.get_state(key) != CircuitState.OPEN

    def guard(self, key: str) -> None:
        """Raise CircuitOpenError if the circuit for *key* is open.

        Raises:
            CircuitOpenError: If calls for *key* are currently refused.
        """
        circuit = self._touch(key)
        if circuit.state == CircuitState.OPEN:
            raise CircuitOpenError(key, self._time_until_retry_ms(circuit) / 1000)

    def get_stats(self, key: str) -> dict[str, Any]:
        """Return a diagnostic snapshot of the circuit for *key*."""
        circuit = self._touch(key)
        return {
            "key": key,
            "state": circuit.state.value,
            "failure_count": len(circuit.failures),
            "half_open_successes": circuit.half_open_successes,
            "total_successes": circuit.total_successes,
            "total_failures": circuit.total_failures,
            "last_failure_at": circuit.last_failure_at,
            "time_until_retry_ms": self._time_until_retry_ms(circuit),
        }

    def keys(self) -> list[str]:
        """Return tracked circuit keys, least recently used first."""
        return list(self._circuits)

    # =========================================================================
    # Outcome reporting
    # =========================================================================

    def record_success(self, key: str) -> CircuitState:
        """Record a successful call and return the resulting state."""
        circuit = self._touch(key)
        circuit.total_successes += 1

        if circuit.state == CircuitState.HALF_OPEN:
            circuit.half_open_successes += 1
            if circuit.half_open_successes >= self._config.success_threshold:
                circuit.state = CircuitState.CLOSED
                circuit.failures.clear()
                circuit.half_open_successes = 0
                circuit.opened_at = None
                logger.info("Circuit %s closed after recovery", key)

        return circuit.state

    def record_failure(self, key: str) -> CircuitState:
        """Record a failed call and return the resulting state."""
        circuit = self._touch(key)
        now = self._clock()
        circuit.failures.append(now)
        circuit.total_failures += 1
        circuit.last_failure_at = now

        if circuit.state == CircuitState.HALF_OPEN:
            self._open(key, circuit, now)
        elif (
            circuit.state == CircuitState.CLOSED
            and len(circuit.failures) >= self._config.failure_threshold
        ):
            self._open(key, circuit, now)

        return circuit.state

    def reset(self, key: str | None = None) -> None:
        """Forget one circuit, or every circuit when *key* is None."""
        if key is None:
            self._circuits.clear()
        else:
            self._circuits.pop(key, None)

    # =========================================================================
    # Internals
    # =========================================================================

    def _open(self, key: str, circuit: _Circuit, now: float) -> None:
        circuit.state = CircuitState.OPEN
        circuit.opened_at = now
        circuit.half_open_successes = 0
        logger.warning(
            "Circuit %s opened after %d failures in window",
            key,
            len(circuit.failures),
        )

    def _touch(self, key: str) -> _Circuit:
        """Fetch (or create) a circuit, mark it recently used and refresh it."""
        circuit = self._circuits.get(key)
        if circuit is None:
            self._maybe_evict()
            circuit = _Circuit()
            self._circuits[key] = circuit
        else:
            self._circuits.move_to_end(key)
        self._refresh(key, circuit)
        return circuit

    def _refresh(self, key: str, circuit: _Circuit) -> None:
        now = self._clock()
        cutoff = now - self._config.window_ms
        while circuit.failures and circuit.failures[0] < cutoff:
            circuit.failures.popleft()

        if (
            circuit.state == CircuitState.OPEN
            and circuit.last_failure_at is not None
            and now - circuit.last_failure_at >= self._config.reset_timeout_ms
        ):
            circuit.state = CircuitState.HALF_OPEN
            circuit.half_open_successes = 0
            logger.info("Circuit %s half-open, allowing trial calls", key)

    def _time_until_retry_ms(self, circuit: _Circuit) -> float:
        if circuit.state != CircuitState.OPEN or circuit.last_failure_at is None:
            return 0.0
        elapsed = self._clock() - circuit.last_failure_at
        return max(0.0, self._config.reset_timeout_ms - elapsed)

    def _maybe_evict(self) -> None:
        if len(self._circuits) < self._config.max_circuits:
            return
        # Idle closed circuits go first, then the least recently used one.
        for key, circuit in self._circuits.items():
            if circuit.state == CircuitState.CLOSED and not circuit.failures:
                del self._circuits[key]
                logger.debug("Evicted idle circuit %s", key)
                return
        key, _ = self._circuits.popitem(last=False)
        logger.debug("Evicted least recently used circuit %s", key)
