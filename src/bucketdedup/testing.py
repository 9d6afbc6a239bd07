"""Helpers for testing deduplication pipelines.

Example:
    >>> clock = ManualClock(start_ms=1_000_000)
    >>> sink = CollectorSink()
    >>> manager = BucketManager(MemoryBucketStore(), bucket_span_ms=1000, clock=clock)
    >>> deduper = Deduper(manager, sink)
    >>> clock.advance(5000)
"""

from __future__ import annotations

import threading
from typing import Any, Generic, TypeVar

from bucketdedup.events import Event

T = TypeVar("T")


class CollectorSink(Generic[T]):
    """Output sink that records everything emitted to it."""

    def __init__(self) -> None:
        self.collected_tuples: list[T] = []

    def __call__(self, item: T) -> None:
        self.collected_tuples.append(item)

    def __len__(self) -> int:
        return len(self.collected_tuples)

    def clear(self) -> None:
        self.collected_tuples.clear()


class ManualClock:
    """Deterministic epoch-millisecond clock for expiry tests."""

    def __init__(self, start_ms: int = 0) -> None:
        self._now = start_ms
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            return self._now

    def advance(self, millis: int) -> int:
        with self._lock:
            self._now += millis
            return self._now

    def set(self, now_ms: int) -> None:
        with self._lock:
            self._now = now_ms

    def __repr__(self) -> str:
        return f"ManualClock({self._now})"


def make_events(keys: list[Any], timestamp: int, payload: Any = None) -> list[Event]:
    """Build single-field events sharing one timestamp."""
    return [Event(key=(k,), timestamp=timestamp, payload=payload) for k in keys]
