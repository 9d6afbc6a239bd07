"""Idle-time eviction scheduling.

Eviction shares the resident bucket cache with the ingestion path, so it
is never run from a timer thread. The host's idle ticks drive it instead:
each tick asks the scheduler whether a sweep is due.
"""

from __future__ import annotations

import logging
from typing import Callable

from bucketdedup.bucket.manager import BucketManager, SweepResult

logger = logging.getLogger(__name__)


class EvictionScheduler:
    """Runs bucket eviction sweeps on idle ticks.

    Example:
        >>> scheduler = EvictionScheduler(manager, sweep_interval_ms=5000)
        >>> scheduler.on_idle()  # sweeps at most once every 5 seconds
    """

    def __init__(
        self,
        manager: BucketManager,
        sweep_interval_ms: int = 0,
        on_sweep: Callable[[SweepResult], None] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            manager: Bucket manager to sweep.
            sweep_interval_ms: Minimum time between sweeps (0 = every tick).
            on_sweep: Callback after each sweep.
        """
        if sweep_interval_ms < 0:
            raise ValueError("sweep_interval_ms must be non-negative")
        self._manager = manager
        self._interval = sweep_interval_ms
        self._on_sweep = on_sweep
        self._last_run_ms: int | None = None
        self._run_count = 0

    @property
    def last_run_ms(self) -> int | None:
        return self._last_run_ms

    @property
    def run_count(self) -> int:
        return self._run_count

    def is_due(self, now_ms: int) -> bool:
        if self._last_run_ms is None or self._interval == 0:
            return True
        return now_ms - self._last_run_ms >= self._interval

    def on_idle(self, now_ms: int | None = None) -> SweepResult | None:
        """Sweep if the interval has elapsed since the last sweep."""
        if now_ms is None:
            now_ms = self._manager.now()
        if not self.is_due(now_ms):
            return None
        return self.run_now(now_ms)

    def run_now(self, now_ms: int | None = None) -> SweepResult:
        if now_ms is None:
            now_ms = self._manager.now()

        logger.debug("Running eviction sweep at %d", now_ms)
        result = self._manager.eviction_sweep(now_ms)
        self._last_run_ms = now_ms
        self._run_count += 1

        if self._on_sweep:
            self._on_sweep(result)
        return result
