"""Time-based bucket manager.

Owns the partitioning of events into time slots, the resident bucket
cache and the asynchronous loading of buckets from a ``BucketStore``.

Threading model:

    ingestion thread                      loader threads
    ----------------                      --------------
    load_bucket_async(k) --submit-->      store.load(k) (with retry)
                                                 |
    drain_loaded() <---- completion queue -------+
         |
         +--> resident cache updated
         +--> listener.bucket_loaded(bucket)

Only the ingestion thread touches the cache and the in-flight set. Loader
threads communicate exclusively through the completion queue, so putting
work in and polling results out never blocks event processing.

Load failures:

    StoreUnavailableError is transient: the load is re-issued after a
    backoff delay spent on the loader thread. Any other error (e.g. a
    corrupt bucket) quarantines the slot; its waiting events are released
    through ``bucket_discarded`` and later events bypass the store.

Expiry policy:

    Bucket ``k`` covers ``[k * span, (k + 1) * span)`` and expires at
    ``(k + sliding_window_buckets) * span + grace_period_ms``. Once a
    sweep has evicted slot ``k`` as expired, every slot ``<= k`` is
    permanently closed.
"""

from __future__ import annotations

import logging
import queue
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Protocol

from bucketdedup.bucket.base import (
    Bucket,
    BucketState,
    BucketStoreError,
    StoreUnavailableError,
)
from bucketdedup.bucket.store import BucketStore
from bucketdedup.common.retry import RetryConfig, RetryExhaustedError, RetryPolicy
from bucketdedup.events import DedupKey, Event

if TYPE_CHECKING:
    from bucketdedup.config import DeduperConfig

logger = logging.getLogger(__name__)


def current_millis() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


class EventTimeClock:
    """Clock that follows the highest event timestamp observed.

    Used when replaying historical data, where expiry must be measured in
    event time rather than wall-clock time.
    """

    def __init__(self, start_ms: int | None = None) -> None:
        self._watermark = start_ms

    def observe(self, timestamp_ms: int) -> None:
        if self._watermark is None or timestamp_ms > self._watermark:
            self._watermark = timestamp_ms

    def __call__(self) -> int:
        # Before the first event nothing can be expired.
        if self._watermark is None:
            return -(2**62)
        return self._watermark


class BucketListener(Protocol):
    """Receives bucket load notifications on the ingestion thread."""

    def bucket_loaded(self, bucket: Bucket) -> None: ...

    def bucket_discarded(self, bucket_key: int) -> None:
        """The slot expired, or was quarantined, before its load completed."""
        ...


@dataclass
class _LoadOutcome:
    bucket_key: int
    keys: frozenset[DedupKey] | None = None
    error: Exception | None = None


@dataclass
class SweepResult:
    """Outcome of one eviction sweep."""

    expired: list[int] = field(default_factory=list)
    dropped: list[int] = field(default_factory=list)
    purged: int = 0
    expired_through: int | None = None


@dataclass
class BucketManagerStats:
    """Counters describing bucket manager activity."""

    resident: int = 0
    loading: int = 0
    loads_requested: int = 0
    loads_completed: int = 0
    load_failures: int = 0
    loads_discarded: int = 0
    buckets_quarantined: int = 0
    buckets_expired: int = 0
    buckets_dropped: int = 0
    buckets_purged: int = 0
    writes: int = 0
    write_failures: int = 0


class BucketManager:
    """Time-based bucket manager.

    Example:
        >>> manager = BucketManager(MemoryBucketStore(), bucket_span_ms=1000)
        >>> manager.start(listener)
        >>> k = manager.get_bucket_key_for(event)
        >>> manager.load_bucket_async(k)
        >>> manager.wait_for_loads()
        True
    """

    def __init__(
        self,
        store: BucketStore[Any],
        *,
        bucket_span_ms: int = 60_000,
        sliding_window_buckets: int = 60,
        grace_period_ms: int = 60_000,
        loader_threads: int = 4,
        max_buckets_in_memory: int = 0,
        purge_expired: bool = True,
        retry_config: RetryConfig | None = None,
        clock: Callable[[], int] = current_millis,
    ) -> None:
        """Initialize the bucket manager.

        Args:
            store: Durable bucket store.
            bucket_span_ms: Duration of one bucket slot.
            sliding_window_buckets: Number of slots retained for detection.
            grace_period_ms: Extra time before an elapsed slot is evicted.
            loader_threads: Size of the loader thread pool.
            max_buckets_in_memory: Resident bucket cap (0 = unbounded).
            purge_expired: Delete expired slots from the store.
            retry_config: Backoff policy for loads.
            clock: Returns the current time in epoch milliseconds.
        """
        if bucket_span_ms <= 0:
            raise ValueError("bucket_span_ms must be positive")
        if sliding_window_buckets < 1:
            raise ValueError("sliding_window_buckets must be at least 1")
        if grace_period_ms < 0:
            raise ValueError("grace_period_ms must be non-negative")

        self._store = store
        self._span = bucket_span_ms
        self._window = sliding_window_buckets
        self._grace = grace_period_ms
        self._loader_threads = loader_threads
        self._max_in_memory = max_buckets_in_memory
        self._purge_expired = purge_expired
        self._retry = RetryPolicy(
            retry_config or RetryConfig(retryable_exceptions=(StoreUnavailableError,))
        )
        self._clock = clock

        self._buckets: OrderedDict[int, Bucket] = OrderedDict()
        self._loading: set[int] = set()
        self._quarantined: set[int] = set()
        self._reissues: dict[int, int] = {}
        self._completed: queue.SimpleQueue[_LoadOutcome] = queue.SimpleQueue()
        self._executor: ThreadPoolExecutor | None = None
        self._listener: BucketListener | None = None
        self._expired_through: int | None = None
        self._purged_through: int | None = None
        self._stats = BucketManagerStats()

    @classmethod
    def from_config(
        cls,
        config: "DeduperConfig",
        store: BucketStore[Any] | None = None,
        clock: Callable[[], int] = current_millis,
    ) -> "BucketManager":
        """Create a manager (and, unless given, its store) from config."""
        if store is None:
            from bucketdedup.bucket.factory import store_from_config

            store = store_from_config(config)

        return cls(
            store,
            bucket_span_ms=config.bucket_span_ms,
            sliding_window_buckets=config.sliding_window_buckets,
            grace_period_ms=config.grace_period_ms,
            loader_threads=config.loader_threads,
            max_buckets_in_memory=config.max_buckets_in_memory,
            purge_expired=config.purge_expired,
            retry_config=config.retry_config(),
            clock=clock,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def store(self) -> BucketStore[Any]:
        return self._store

    @property
    def bucket_span_ms(self) -> int:
        return self._span

    @property
    def sliding_window_buckets(self) -> int:
        return self._window

    @property
    def grace_period_ms(self) -> int:
        return self._grace

    @property
    def expired_through(self) -> int | None:
        """Highest slot permanently closed by a sweep."""
        return self._expired_through

    @property
    def is_running(self) -> bool:
        return self._executor is not None

    @property
    def stats(self) -> BucketManagerStats:
        self._stats.resident = len(self._buckets)
        self._stats.loading = len(self._loading)
        return BucketManagerStats(**vars(self._stats))

    def now(self) -> int:
        return self._clock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, listener: BucketListener) -> None:
        """Start the loader pool and register the load listener."""
        if self._executor is not None:
            return
        self._listener = listener
        self._store.initialize()
        self._executor = ThreadPoolExecutor(
            max_workers=self._loader_threads,
            thread_name_prefix="bucket-loader",
        )
        logger.debug(
            "Bucket manager started (span=%dms, window=%d, grace=%dms)",
            self._span,
            self._window,
            self._grace,
        )

    def shutdown(self) -> None:
        """Stop the loader pool and forget all in-memory state.

        In-flight loads run to completion and their results are discarded.
        After a restart buckets are reloaded from the store on demand.
        """
        if self._executor is None:
            return
        self._executor.shutdown(wait=True)
        self._executor = None

        while True:
            try:
                self._completed.get_nowait()
            except queue.Empty:
                break

        self._loading.clear()
        self._quarantined.clear()
        self._reissues.clear()
        self._buckets.clear()
        self._listener = None
        logger.debug("Bucket manager stopped")

    # -------------------------------------------------------------------------
    # Partitioning and expiry
    # -------------------------------------------------------------------------

    def get_bucket_key_for(self, event: Event) -> int:
        """Slot of an event. Depends only on its timestamp and the span."""
        return event.timestamp // self._span

    def expiry_time_ms(self, bucket_key: int) -> int:
        """Clock time at which a slot is permanently closed."""
        return (bucket_key + self._window) * self._span + self._grace

    def expired_cutoff(self, now_ms: int) -> int:
        """Highest slot whose expiry time is at or before ``now_ms``."""
        return (now_ms - self._grace) // self._span - self._window

    def is_expired(self, bucket_key: int, now_ms: int | None = None) -> bool:
        """Whether events for ``bucket_key`` can no longer be checked."""
        if self._expired_through is not None and bucket_key <= self._expired_through:
            return True
        if now_ms is None:
            now_ms = self._clock()
        return bucket_key <= self.expired_cutoff(now_ms)

    def bucket_state(self, bucket_key: int) -> BucketState:
        bucket = self._buckets.get(bucket_key)
        if bucket is not None:
            return bucket.state
        if bucket_key in self._loading:
            return BucketState.LOADING
        if bucket_key in self._quarantined:
            return BucketState.QUARANTINED
        if self._expired_through is not None and bucket_key <= self._expired_through:
            return BucketState.EVICTED
        return BucketState.UNLOADED

    # -------------------------------------------------------------------------
    # Resident buckets
    # -------------------------------------------------------------------------

    def get_bucket(self, bucket_key: int) -> Bucket | None:
        """Return the resident bucket for a slot, refreshing its recency."""
        bucket = self._buckets.get(bucket_key)
        if bucket is not None:
            bucket.last_access_ms = self._clock()
            self._buckets.move_to_end(bucket_key)
        return bucket

    def is_loading(self, bucket_key: int) -> bool:
        return bucket_key in self._loading

    def is_quarantined(self, bucket_key: int) -> bool:
        """Whether the slot's bucket could not be read and is bypassed."""
        return bucket_key in self._quarantined

    def resident_keys(self) -> list[int]:
        return sorted(self._buckets)

    def new_event(self, bucket_key: int, dedup_key: DedupKey) -> bool:
        """Record a dedup key as seen in a resident bucket.

        Returns:
            True if the key was new to the bucket.

        Raises:
            KeyError: If the bucket is not resident.
        """
        bucket = self._buckets[bucket_key]
        bucket.last_access_ms = self._clock()
        return bucket.add(dedup_key)

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def load_bucket_async(self, bucket_key: int) -> None:
        """Request a bucket load without blocking.

        Requests for a slot that is resident or already loading coalesce
        into the outstanding load. Quarantined slots are never reloaded.
        """
        if (
            bucket_key in self._buckets
            or bucket_key in self._loading
            or bucket_key in self._quarantined
        ):
            return
        self._submit(bucket_key)

    def _submit(self, bucket_key: int, delay: float = 0.0) -> None:
        if self._executor is None:
            raise RuntimeError("Bucket manager is not started")

        self._loading.add(bucket_key)
        self._stats.loads_requested += 1
        self._executor.submit(self._load, bucket_key, delay)

    def _load(self, bucket_key: int, delay: float) -> None:
        # Runs on a loader thread; reports back through the completion queue.
        if delay > 0:
            time.sleep(delay)
        try:
            keys = self._retry.execute(self._store.load, bucket_key)
        except Exception as e:
            self._completed.put(_LoadOutcome(bucket_key, error=e))
        else:
            self._completed.put(_LoadOutcome(bucket_key, keys=keys))

    def drain_loaded(self) -> int:
        """Apply every completed load without waiting.

        Returns:
            Number of completions processed.
        """
        processed = 0
        while True:
            try:
                outcome = self._completed.get_nowait()
            except queue.Empty:
                return processed
            self._apply(outcome)
            processed += 1

    def wait_for_loads(self, timeout: float | None = None) -> bool:
        """Block until every outstanding load has been applied.

        Failed loads are re-issued, so this keeps waiting across store
        outages until ``timeout`` (seconds) elapses.

        Returns:
            True if no load is outstanding on return.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._loading:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
            try:
                outcome = self._completed.get(timeout=remaining)
            except queue.Empty:
                break
            self._apply(outcome)
        self.drain_loaded()
        return not self._loading

    def _apply(self, outcome: _LoadOutcome) -> None:
        bucket_key = outcome.bucket_key
        self._loading.discard(bucket_key)

        if self.is_expired(bucket_key):
            self._stats.loads_discarded += 1
            self._reissues.pop(bucket_key, None)
            logger.debug("Discarding load of expired bucket %d", bucket_key)
            if self._listener is not None:
                self._listener.bucket_discarded(bucket_key)
            return

        if outcome.error is not None:
            self._stats.load_failures += 1
            cause = outcome.error
            if isinstance(cause, RetryExhaustedError) and cause.last_error is not None:
                cause = cause.last_error
            if isinstance(cause, StoreUnavailableError):
                self._reissue(bucket_key, cause)
            else:
                self._quarantine(bucket_key, cause)
            return

        self._reissues.pop(bucket_key, None)
        if bucket_key in self._buckets:
            return

        bucket = Bucket.loaded(bucket_key, outcome.keys, self._clock())
        self._buckets[bucket_key] = bucket
        self._stats.loads_completed += 1
        logger.debug("Bucket %d resident with %d keys", bucket_key, len(bucket))

        if self._listener is not None:
            self._listener.bucket_loaded(bucket)

    def _reissue(self, bucket_key: int, cause: Exception) -> None:
        attempt = self._reissues.get(bucket_key, 0)
        self._reissues[bucket_key] = attempt + 1
        delay = self._retry.get_delay(attempt)
        logger.warning(
            "Load of bucket %d failed, re-issuing in %.2fs: %s", bucket_key, delay, cause
        )
        self._submit(bucket_key, delay)

    def _quarantine(self, bucket_key: int, cause: Exception) -> None:
        self._reissues.pop(bucket_key, None)
        self._quarantined.add(bucket_key)
        self._stats.buckets_quarantined += 1
        logger.error(
            "Bucket %d cannot be loaded, bypassing it until it expires: %r",
            bucket_key,
            cause,
        )
        if self._listener is not None:
            self._listener.bucket_discarded(bucket_key)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _write(self, bucket: Bucket) -> bool:
        keys = set(bucket.unwritten_keys)
        try:
            self._store.write(bucket.bucket_key, keys)
        except BucketStoreError as e:
            self._stats.write_failures += 1
            logger.warning("Failed to flush bucket %d, keeping it dirty: %s", bucket.bucket_key, e)
            return False
        bucket.mark_flushed(keys)
        self._stats.writes += 1
        return True

    def flush(self) -> int:
        """Write every dirty resident bucket.

        Buckets whose write fails stay dirty and are retried next flush.

        Returns:
            Number of buckets written.
        """
        written = 0
        for bucket in list(self._buckets.values()):
            if bucket.is_dirty and self._write(bucket):
                written += 1
        return written

    # -------------------------------------------------------------------------
    # Eviction
    # -------------------------------------------------------------------------

    def eviction_sweep(self, now_ms: int | None = None) -> SweepResult:
        """Evict expired buckets and enforce the resident bucket cap.

        Must only be called from the ingestion thread between events.
        """
        if now_ms is None:
            now_ms = self._clock()
        result = SweepResult()
        cutoff = self.expired_cutoff(now_ms)

        if self._expired_through is None or cutoff > self._expired_through:
            self._expired_through = cutoff
        self._quarantined = {k for k in self._quarantined if k > self._expired_through}

        # Buckets kept back by a failed flush are retried on later sweeps.
        for bucket_key in [k for k in self._buckets if k <= self._expired_through]:
            bucket = self._buckets[bucket_key]
            if not self._purge_expired and bucket.is_dirty and not self._write(bucket):
                continue
            bucket.state = BucketState.EVICTED
            del self._buckets[bucket_key]
            result.expired.append(bucket_key)
        self._stats.buckets_expired += len(result.expired)

        if self._purge_expired:
            result.purged = self._purge(self._expired_through)

        result.dropped = self._enforce_memory_cap()
        result.expired_through = self._expired_through

        if result.expired or result.dropped or result.purged:
            logger.info(
                "Eviction sweep: %d expired, %d dropped, %d purged (closed through slot %s)",
                len(result.expired),
                len(result.dropped),
                result.purged,
                self._expired_through,
            )
        return result

    def _purge(self, cutoff: int) -> int:
        if self._purged_through is not None:
            if cutoff <= self._purged_through:
                return 0
            low = self._purged_through + 1
        else:
            try:
                persisted = self._store.bucket_keys()
            except BucketStoreError as e:
                logger.warning("Failed to list buckets for purge: %s", e)
                return 0
            if not persisted or persisted[0] > cutoff:
                self._purged_through = cutoff
                return 0
            low = persisted[0]

        try:
            removed = self._store.delete_range(low, cutoff)
        except BucketStoreError as e:
            logger.warning("Failed to purge buckets %d..%d: %s", low, cutoff, e)
            return 0

        self._purged_through = cutoff
        self._stats.buckets_purged += removed
        return removed

    def _enforce_memory_cap(self) -> list[int]:
        dropped: list[int] = []
        if not self._max_in_memory:
            return dropped

        excess = len(self._buckets) - self._max_in_memory
        for bucket_key in list(self._buckets):
            if excess <= 0:
                break
            bucket = self._buckets[bucket_key]
            if bucket.is_dirty and not self._write(bucket):
                continue
            del self._buckets[bucket_key]
            dropped.append(bucket_key)
            excess -= 1

        self._stats.buckets_dropped += len(dropped)
        return dropped
