"""Cooperative cancellation.

Cancellation is only observed between steps. A step already in flight is
never interrupted.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

CancellationProbe = Callable[[], Awaitable[bool]]


class CancellationToken:
    """Local cancel flag plus an optional external async probe.

    Once either source reports cancellation the token stays cancelled.
    """

    def __init__(self, probe: CancellationProbe | None = None) -> None:
        self._probe = probe
        self._cancelled = False
        self.checks = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    async def is_cancelled(self) -> bool:
        """Poll the probe (if any) and return the combined state."""
        self.checks += 1
        if self._cancelled:
            return True
        if self._probe is not None:
            try:
                if await self._probe():
                    self._cancelled = True
            except Exception as e:
                logger.warning("Cancellation probe failed, continuing: %s", e)
        return self._cancelled
