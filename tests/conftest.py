"""Shared fixtures and store doubles for bucketdedup tests."""

from __future__ import annotations

import threading
from typing import Iterable

import pytest

from bucketdedup.bucket import Bucket, BucketManager, MemoryBucketStore, StoreUnavailableError
from bucketdedup.common.retry import RetryConfig
from bucketdedup.events import DedupKey
from bucketdedup.testing import CollectorSink, ManualClock


# =============================================================================
# Store doubles
# =============================================================================


class GatedBucketStore(MemoryBucketStore):
    """Memory store whose loads block until the gate is opened."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.gate = threading.Event()
        self.load_calls: list[int] = []

    def load(self, bucket_key: int):
        self.load_calls.append(bucket_key)
        if not self.gate.wait(timeout=10):
            raise StoreUnavailableError("load", bucket_key, "gate never opened")
        return super().load(bucket_key)


class FlakyBucketStore(MemoryBucketStore):
    """Memory store that fails the first ``load_failures`` loads and
    every write while ``fail_writes`` is set."""

    def __init__(self, load_failures: int = 0, **kwargs) -> None:
        super().__init__(**kwargs)
        self.load_failures = load_failures
        self.fail_writes = False
        self.load_attempts = 0
        self._attempt_lock = threading.Lock()

    def load(self, bucket_key: int):
        with self._attempt_lock:
            self.load_attempts += 1
            if self.load_attempts <= self.load_failures:
                raise StoreUnavailableError("load", bucket_key, "simulated outage")
        return super().load(bucket_key)

    def write(self, bucket_key: int, new_keys: Iterable[DedupKey]) -> None:
        if self.fail_writes:
            raise StoreUnavailableError("write", bucket_key, "simulated outage")
        super().write(bucket_key, new_keys)


class RecordingListener:
    """Bucket listener that records callbacks."""

    def __init__(self) -> None:
        self.loaded: list[Bucket] = []
        self.discarded: list[int] = []

    def bucket_loaded(self, bucket: Bucket) -> None:
        self.loaded.append(bucket)

    def bucket_discarded(self, bucket_key: int) -> None:
        self.discarded.append(bucket_key)


# =============================================================================
# Fixtures
# =============================================================================


# Slot 10 with a 1s span; slots 9 and 10 are live under a 2-slot window.
START_MS = 10_500


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start_ms=START_MS)


@pytest.fixture
def sink() -> CollectorSink:
    return CollectorSink()


@pytest.fixture
def no_retry() -> RetryConfig:
    return RetryConfig(max_attempts=2, base_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def memory_store() -> MemoryBucketStore:
    return MemoryBucketStore()


@pytest.fixture
def gated_store():
    store = GatedBucketStore()
    yield store
    # Never leave loader threads parked on the gate.
    store.gate.set()


@pytest.fixture
def flaky_store_factory():
    return FlakyBucketStore


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def manager_factory(clock, no_retry):
    """Build started-on-demand managers with a 1s span and 2-slot window."""
    created: list[BucketManager] = []

    def factory(store, **kwargs) -> BucketManager:
        options = {
            "bucket_span_ms": 1000,
            "sliding_window_buckets": 2,
            "grace_period_ms": 0,
            "loader_threads": 2,
            "retry_config": no_retry,
            "clock": clock,
        }
        options.update(kwargs)
        manager = BucketManager(store, **options)
        created.append(manager)
        return manager

    yield factory

    for manager in created:
        manager.shutdown()
