"""Retry backoff calculation.

Every retrying call site in the package computes its delay through
:func:`calculate_backoff` so retry behaviour is uniform and testable on
its own.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry/backoff settings.

    Attributes:
        max_attempts: Total attempts including the first call.
        initial_delay_ms: Delay before the first retry.
        max_delay_ms: Upper bound for any single delay (before jitter).
        backoff_multiplier: Growth factor between consecutive delays.
        jitter_factor: Fraction of the delay applied as +/- random noise.
    """

    max_attempts: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 30000
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.0


def calculate_backoff(
    attempt: int,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> float:
    """Compute the delay in milliseconds before retry number *attempt*.

    ``min(initial * multiplier ** (attempt - 1), max)``, optionally
    perturbed by +/- ``jitter_factor`` of that value.

    Args:
        attempt: 1-indexed retry number (the first retry uses 1).
        policy: Backoff settings.
        rng: Random source for jitter. Uses the module RNG if None.

    Returns:
        Delay in milliseconds, never negative.

    Raises:
        ValueError: If attempt is lower than 1.
    """
    if attempt < 1:
        msg = f"attempt must be >= 1, got {attempt}"
        raise ValueError(msg)

    delay = min(
        policy.initial_delay_ms * policy.backoff_multiplier ** (attempt - 1),
        policy.max_delay_ms,
    )
    if policy.jitter_factor > 0:
        source = rng or random
        spread = delay * policy.jitter_factor
        delay += source.uniform(-spread, spread)
    return max(0.0, delay)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Call *fn* until it succeeds, retrying retryable errors with backoff.

    Args:
        fn: Zero-argument coroutine factory.
        policy: Attempt budget and delays.
        is_retryable: Decides whether an exception is worth retrying.
        sleep: Awaitable sleep taking seconds (injectable for tests).
        description: Label used in log messages.

    Returns:
        The first successful result.

    Raises:
        The last exception once attempts are exhausted, or any
        non-retryable exception immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as exc:
            if attempt >= policy.max_attempts or not is_retryable(exc):
                raise
            delay_ms = calculate_backoff(attempt, policy)
            logger.info(
                "Retrying %s (attempt %d/%d) after %.0fms: %s",
                description,
                attempt + 1,
                policy.max_attempts,
                delay_ms,
                exc,
            )
            await sleep(delay_ms / 1000)
