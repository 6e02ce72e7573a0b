"""Batched delivery for LOAD-class steps.

Records are cut into batches of ``batch_size`` and dispatched with at most
``concurrency`` batches in flight. Each batch is retried with backoff on
retryable adapter errors. EXPORT and SINK deliveries consult the circuit
breaker before every batch and report the outcome back to it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..backoff import RetryPolicy, retry_async
from ..circuit_breaker import CircuitBreakerService, CircuitOpenError, circuit_key
from ..exceptions import AdapterError
from ..models import NETWORK_STEP_TYPES, ExecutionResult, Record

if TYPE_CHECKING:
    from ..checkpoint import ExecutorContext
    from ..definition import PipelineStep, ThroughputConfig
    from .base import LoadExecutor, OnRecordError

logger = logging.getLogger(__name__)

# Single attempt, no delay
NO_RETRY = RetryPolicy(max_attempts=1)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, AdapterError) and exc.retryable


def chunk(records: list[Record], size: int | None) -> list[list[Record]]:
    """Split *records* into consecutive batches of at most *size*."""
    if not records:
        return []
    if not size or size >= len(records):
        return [records]
    return [records[i : i + size] for i in range(0, len(records), size)]


class _RateLimiter:
    """Spaces batch starts at least ``1 / rps`` seconds apart."""

    def __init__(
        self,
        rps: float | None,
        sleep: Callable[[float], Awaitable[None]],
        clock: Callable[[], float],
    ) -> None:
        self._interval = 1 / rps if rps else 0.0
        self._sleep = sleep
        self._clock = clock
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        if not self._interval:
            return
        async with self._lock:
            now = self._clock()
            delay = self._next_slot - now
            if delay > 0:
                await self._sleep(delay)
                now = self._next_slot
            self._next_slot = now + self._interval


@dataclass
class _Tally:
    ok: int = 0
    fail: int = 0
    shed: bool = False

    @property
    def error_rate(self) -> float:
        total = self.ok + self.fail
        return self.fail / total if total else 0.0


async def deliver_with_throughput(
    step: PipelineStep,
    records: list[Record],
    executor: LoadExecutor,
    ctx: ExecutorContext,
    on_record_error: OnRecordError,
    throughput: ThroughputConfig | None = None,
    retry_policy: RetryPolicy | None = None,
    breaker: CircuitBreakerService | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ExecutionResult:
    """Deliver *records* through *executor* under throughput limits.

    Failed batches (after retries, or refused by an open circuit) count
    every record of the batch as failed and are reported once through
    *on_record_error*. They never raise.

    Args:
        step: LOAD/EXPORT/FEED/SINK step.
        records: Records to deliver.
        executor: Destination executor.
        ctx: Shared executor context.
        on_record_error: Record error sink.
        throughput: Batching, concurrency, rate and error-rate settings.
        retry_policy: Per-batch retry policy. Single attempt when None.
        breaker: Circuit breaker consulted for EXPORT/SINK steps.
        sleep: Awaitable sleep taking seconds (injectable for tests).
        clock: Seconds clock for rate limiting.

    Returns:
        Aggregated ok/fail counts over every batch.
    """
    batches = chunk(records, throughput.batch_size if throughput else None)
    if not batches:
        return ExecutionResult()

    policy = retry_policy or NO_RETRY
    concurrency = (throughput.concurrency if throughput else None) or 1
    limiter = _RateLimiter(throughput.rate_limit_rps if throughput else None, sleep, clock)
    pause_rule = throughput.pause_on_error_rate if throughput else None
    drain = throughput.drain_strategy if throughput else "backoff"

    key: str | None = None
    if breaker is not None and step.step_type in NETWORK_STEP_TYPES:
        endpoint = getattr(step.config, "endpoint", "")
        key = circuit_key(step.adapter_code or step.step_type.value.lower(), endpoint)

    tally = _Tally()
    semaphore = asyncio.Semaphore(concurrency)

    async def fail_batch(batch: list[Record], message: str) -> None:
        tally.fail += len(batch)
        await on_record_error(step.key, message, {"batchSize": len(batch)})

    async def attempt(batch: list[Record]) -> ExecutionResult:
        # Each attempt, retries included, is guarded and reported on its own
        if key is not None and breaker is not None:
            breaker.guard(key)
        try:
            return await executor.execute(step, batch, ctx, on_record_error)
        except Exception:
            if key is not None and breaker is not None:
                breaker.record_failure(key)
            raise

    async def send(index: int, batch: list[Record]) -> None:
        async with semaphore:
            if tally.shed:
                await fail_batch(batch, "Batch shed: error rate above threshold")
                return

            await limiter.wait()

            try:
                result = await retry_async(
                    lambda: attempt(batch),
                    policy,
                    _is_retryable,
                    sleep=sleep,
                    description=f"{step.key} batch {index + 1}/{len(batches)}",
                )
            except CircuitOpenError as exc:
                logger.warning("Step %s batch %d refused: %s", step.key, index + 1, exc)
                await fail_batch(batch, str(exc))
            except Exception as exc:
                logger.warning("Step %s batch %d failed: %s", step.key, index + 1, exc)
                await fail_batch(batch, str(exc))
            else:
                tally.ok += result.ok
                tally.fail += result.fail
                if key is not None and breaker is not None:
                    if result.fail and not result.ok:
                        breaker.record_failure(key)
                    else:
                        breaker.record_success(key)

            if pause_rule is not None and tally.error_rate >= pause_rule.threshold:
                if drain == "shed":
                    if not tally.shed:
                        logger.warning(
                            "Step %s error rate %.2f >= %.2f, shedding remaining batches",
                            step.key,
                            tally.error_rate,
                            pause_rule.threshold,
                        )
                    tally.shed = True
                else:
                    logger.info(
                        "Step %s error rate %.2f >= %.2f, backing off %.1fs",
                        step.key,
                        tally.error_rate,
                        pause_rule.threshold,
                        pause_rule.interval_sec,
                    )
                    await sleep(pause_rule.interval_sec)

    await asyncio.gather(*(send(i, batch) for i, batch in enumerate(batches)))
    return ExecutionResult(ok=tally.ok, fail=tally.fail)
