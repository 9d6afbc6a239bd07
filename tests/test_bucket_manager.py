"""Tests for the time-based bucket manager."""

import time

import pytest

from bucketdedup.bucket import (
    BucketManager,
    BucketState,
    EventTimeClock,
    FileSystemBucketStore,
    MemoryBucketStore,
)
from bucketdedup.common.retry import RetryConfig
from bucketdedup.events import Event


# =============================================================================
# Partitioning and Expiry
# =============================================================================


class TestPartitioning:
    """Tests for bucket key assignment and expiry arithmetic."""

    def test_bucket_key_depends_only_on_timestamp(self, manager_factory, memory_store):
        manager = manager_factory(memory_store)

        assert manager.get_bucket_key_for(Event(key=("a",), timestamp=0)) == 0
        assert manager.get_bucket_key_for(Event(key=("b",), timestamp=999)) == 0
        assert manager.get_bucket_key_for(Event(key=("a",), timestamp=1000)) == 1
        assert manager.get_bucket_key_for(Event(key=("a",), timestamp=-1)) == -1

    def test_expiry_time(self):
        manager = BucketManager(
            MemoryBucketStore(),
            bucket_span_ms=1000,
            sliding_window_buckets=3,
            grace_period_ms=500,
        )

        assert manager.expiry_time_ms(10) == 13_500
        assert manager.expired_cutoff(13_499) == 9
        assert manager.expired_cutoff(13_500) == 10

    def test_is_expired(self, manager_factory, memory_store, clock):
        manager = manager_factory(memory_store)

        # now = 10_500 -> slots <= 8 have expired under a 2-slot window
        assert manager.is_expired(8)
        assert not manager.is_expired(9)
        assert not manager.is_expired(10)
        assert manager.is_expired(9, now_ms=11_000)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"bucket_span_ms": 0},
            {"sliding_window_buckets": 0},
            {"grace_period_ms": -1},
        ],
    )
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            BucketManager(MemoryBucketStore(), **kwargs)


# =============================================================================
# Loading
# =============================================================================


class TestLoading:
    """Tests for asynchronous bucket loading."""

    def test_requires_start(self, manager_factory, memory_store):
        manager = manager_factory(memory_store)

        with pytest.raises(RuntimeError, match="not started"):
            manager.load_bucket_async(10)

    def test_load_and_notify(self, manager_factory, memory_store, listener):
        memory_store.write(10, [("a",)])
        manager = manager_factory(memory_store)
        manager.start(listener)

        manager.load_bucket_async(10)

        assert manager.wait_for_loads(timeout=5)
        assert [b.bucket_key for b in listener.loaded] == [10]
        bucket = manager.get_bucket(10)
        assert bucket is not None
        assert ("a",) in bucket
        assert manager.bucket_state(10) == BucketState.FLUSHED

    def test_requests_coalesce(self, manager_factory, gated_store, listener):
        manager = manager_factory(gated_store)
        manager.start(listener)

        manager.load_bucket_async(10)
        manager.load_bucket_async(10)
        manager.load_bucket_async(10)

        assert manager.is_loading(10)
        assert manager.bucket_state(10) == BucketState.LOADING
        assert manager.drain_loaded() == 0

        gated_store.gate.set()
        assert manager.wait_for_loads(timeout=5)
        assert gated_store.load_calls == [10]
        assert manager.stats.loads_requested == 1
        assert len(listener.loaded) == 1

    def test_resident_bucket_not_reloaded(self, manager_factory, memory_store, listener):
        manager = manager_factory(memory_store)
        manager.start(listener)
        manager.load_bucket_async(10)
        manager.wait_for_loads(timeout=5)

        manager.load_bucket_async(10)

        assert manager.stats.loads_requested == 1

    def test_wait_for_loads_times_out(self, manager_factory, gated_store, listener):
        manager = manager_factory(gated_store)
        manager.start(listener)
        manager.load_bucket_async(10)

        assert manager.wait_for_loads(timeout=0.05) is False
        assert listener.loaded == []

        gated_store.gate.set()
        assert manager.wait_for_loads(timeout=5) is True

    def test_failed_load_is_reissued(self, manager_factory, flaky_store_factory, listener):
        # Two attempts per load: the first load exhausts its retries.
        store = flaky_store_factory(load_failures=3)
        manager = manager_factory(store)
        manager.start(listener)

        manager.load_bucket_async(10)

        assert manager.wait_for_loads(timeout=5)
        assert store.load_attempts == 4
        stats = manager.stats
        assert stats.load_failures == 1
        assert stats.loads_requested == 2
        assert stats.loads_completed == 1
        assert [b.bucket_key for b in listener.loaded] == [10]

    def test_reissue_waits_for_backoff(self, manager_factory, flaky_store_factory, listener):
        store = flaky_store_factory(load_failures=1)
        retry = RetryConfig(max_attempts=1, base_delay=0.05, max_delay=0.05, jitter=False)
        manager = manager_factory(store, retry_config=retry)
        manager.start(listener)

        started = time.monotonic()
        manager.load_bucket_async(10)

        assert manager.wait_for_loads(timeout=5)
        assert time.monotonic() - started >= 0.05
        assert store.load_attempts == 2
        assert [b.bucket_key for b in listener.loaded] == [10]

    def test_corrupt_bucket_is_quarantined(self, manager_factory, listener, tmp_path):
        store = FileSystemBucketStore(base_path=str(tmp_path))
        store.initialize()
        (tmp_path / "default" / "bucket_10.json").write_text("{not json")
        manager = manager_factory(store, retry_config=None)
        manager.start(listener)

        manager.load_bucket_async(10)

        assert manager.wait_for_loads(timeout=5)
        assert listener.loaded == []
        assert listener.discarded == [10]
        assert manager.is_quarantined(10)
        assert manager.bucket_state(10) == BucketState.QUARANTINED
        stats = manager.stats
        assert stats.loads_requested == 1
        assert stats.load_failures == 1
        assert stats.buckets_quarantined == 1

        manager.load_bucket_async(10)
        assert not manager.is_loading(10)

    def test_quarantine_released_when_slot_expires(self, manager_factory, listener, tmp_path):
        store = FileSystemBucketStore(base_path=str(tmp_path), namespace="q")
        store.initialize()
        (tmp_path / "q" / "bucket_10.json").write_text("{not json")
        manager = manager_factory(store)
        manager.start(listener)
        manager.load_bucket_async(10)
        manager.wait_for_loads(timeout=5)

        manager.eviction_sweep(12_000)

        assert not manager.is_quarantined(10)
        assert manager.bucket_state(10) == BucketState.EVICTED
        assert store.bucket_keys() == []

    def test_load_of_expired_slot_is_discarded(self, manager_factory, gated_store, listener, clock):
        manager = manager_factory(gated_store)
        manager.start(listener)
        manager.load_bucket_async(9)

        clock.advance(1000)  # slot 9 expires at 11_000
        gated_store.gate.set()
        manager.wait_for_loads(timeout=5)

        assert listener.loaded == []
        assert listener.discarded == [9]
        assert manager.get_bucket(9) is None
        assert manager.stats.loads_discarded == 1

    def test_shutdown_clears_memory(self, manager_factory, memory_store, listener):
        manager = manager_factory(memory_store)
        manager.start(listener)
        manager.load_bucket_async(10)
        manager.wait_for_loads(timeout=5)

        manager.shutdown()

        assert not manager.is_running
        assert manager.resident_keys() == []


# =============================================================================
# Recording and Flushing
# =============================================================================


class TestRecording:
    """Tests for new_event and flush."""

    @pytest.fixture
    def started(self, manager_factory, listener):
        def factory(store, **kwargs):
            manager = manager_factory(store, **kwargs)
            manager.start(listener)
            manager.load_bucket_async(10)
            assert manager.wait_for_loads(timeout=5)
            return manager

        return factory

    def test_new_event(self, started, memory_store):
        manager = started(memory_store)

        assert manager.new_event(10, ("a",)) is True
        assert manager.new_event(10, ("a",)) is False
        assert manager.bucket_state(10) == BucketState.DIRTY

    def test_new_event_requires_resident_bucket(self, started, memory_store):
        manager = started(memory_store)

        with pytest.raises(KeyError):
            manager.new_event(11, ("a",))

    def test_flush_writes_dirty_buckets(self, started, memory_store):
        manager = started(memory_store)
        manager.new_event(10, ("a",))
        manager.new_event(10, ("b",))

        assert manager.flush() == 1
        assert memory_store.load(10) == frozenset({("a",), ("b",)})
        assert manager.bucket_state(10) == BucketState.FLUSHED
        assert manager.flush() == 0

    def test_failed_flush_keeps_keys_dirty(self, started, flaky_store_factory):
        store = flaky_store_factory()
        manager = started(store)
        manager.new_event(10, ("a",))
        store.fail_writes = True

        assert manager.flush() == 0
        assert manager.bucket_state(10) == BucketState.DIRTY
        assert manager.stats.write_failures == 1

        store.fail_writes = False
        assert manager.flush() == 1
        assert store.load(10) == frozenset({("a",)})


# =============================================================================
# Eviction
# =============================================================================


class TestEvictionSweep:
    """Tests for BucketManager.eviction_sweep."""

    def _load(self, manager, *bucket_keys):
        for k in bucket_keys:
            manager.load_bucket_async(k)
            assert manager.wait_for_loads(timeout=5)

    def test_sweep_evicts_and_purges(self, manager_factory, memory_store, listener, clock):
        for k in (5, 6, 9):
            memory_store.write(k, [("old",)])
        manager = manager_factory(memory_store)
        manager.start(listener)
        self._load(manager, 9, 10)
        manager.new_event(9, ("a",))

        result = manager.eviction_sweep(11_000)

        assert result.expired == [9]
        assert result.expired_through == 9
        assert result.purged == 3
        assert manager.resident_keys() == [10]
        assert memory_store.bucket_keys() == []
        assert manager.bucket_state(9) == BucketState.EVICTED
        assert manager.is_expired(9, now_ms=0)

    def test_purge_continues_from_last_cutoff(self, manager_factory, memory_store, listener):
        manager = manager_factory(memory_store)
        manager.start(listener)
        memory_store.write(7, [("a",)])
        manager.eviction_sweep(10_000)  # closes through slot 8

        memory_store.write(9, [("b",)])
        memory_store.write(10, [("c",)])
        result = manager.eviction_sweep(11_000)

        assert result.purged == 1
        assert memory_store.bucket_keys() == [10]

    def test_sweep_without_purge_flushes(self, manager_factory, memory_store, listener):
        manager = manager_factory(memory_store, purge_expired=False)
        manager.start(listener)
        self._load(manager, 9)
        manager.new_event(9, ("a",))

        result = manager.eviction_sweep(11_000)

        assert result.expired == [9]
        assert result.purged == 0
        assert memory_store.load(9) == frozenset({("a",)})

    def test_watermark_never_moves_back(self, manager_factory, memory_store, listener):
        manager = manager_factory(memory_store)
        manager.start(listener)

        manager.eviction_sweep(20_000)
        result = manager.eviction_sweep(5_000)

        assert result.expired_through == 18
        assert manager.expired_through == 18

    def test_memory_cap_drops_least_recently_used(self, manager_factory, memory_store, listener):
        manager = manager_factory(memory_store, loader_threads=1, max_buckets_in_memory=2)
        manager.start(listener)
        self._load(manager, 9, 10, 11)
        manager.new_event(10, ("a",))
        manager.get_bucket(9)

        result = manager.eviction_sweep(10_500)

        assert result.expired == []
        assert result.dropped == [10]
        assert manager.resident_keys() == [9, 11]
        # Dropped buckets are flushed first and can be reloaded later.
        assert memory_store.load(10) == frozenset({("a",)})
        assert manager.bucket_state(10) == BucketState.UNLOADED


# =============================================================================
# EventTimeClock
# =============================================================================


class TestEventTimeClock:
    """Tests for EventTimeClock."""

    def test_nothing_expires_before_first_event(self):
        clock = EventTimeClock()
        manager = BucketManager(MemoryBucketStore(), bucket_span_ms=1000, clock=clock)

        assert not manager.is_expired(-1_000_000)

    def test_follows_highest_timestamp(self):
        clock = EventTimeClock()
        clock.observe(5000)
        clock.observe(3000)

        assert clock() == 5000

    def test_start_value(self):
        assert EventTimeClock(start_ms=42)() == 42
