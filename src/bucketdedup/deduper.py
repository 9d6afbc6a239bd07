"""Bucketed, time-windowed deduplication operator.

The deduper emits the first occurrence of every dedup key downstream and
suppresses repeats that fall into the same bucket slot. Buckets that are
not resident are loaded asynchronously; events for them wait in an
awaiting queue and are replayed in arrival order once the bucket lands.

Lifecycle (driven by the host):

    setup()
      begin_window(n) -> process(event)* -> end_window()    (repeated)
      handle_idle_time()                                    (when idle)
    teardown()

Late events, i.e. events whose slot has already been closed by the
sliding window, cannot be proven duplicates and are emitted as novel.
The same holds for slots whose bucket is quarantined as unreadable. A
bucket that is still resident keeps deciding events until a sweep evicts
it, even if its expiry time has passed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from bucketdedup.bucket.base import Bucket
from bucketdedup.bucket.eviction import EvictionScheduler
from bucketdedup.bucket.manager import BucketManager, current_millis
from bucketdedup.bucket.store import BucketStore
from bucketdedup.events import DeduperError, Event, MalformedKeyError

if TYPE_CHECKING:
    from bucketdedup.config import DeduperConfig

logger = logging.getLogger(__name__)

Sink = Callable[[Any], None]


class LifecycleError(DeduperError):
    """Raised when lifecycle calls arrive out of order."""

    pass


@dataclass
class DeduperStats:
    """Counters describing deduplication decisions."""

    received: int = 0
    emitted: int = 0
    duplicates: int = 0
    late: int = 0
    waiting: int = 0
    windows: int = 0


def _identity(event: Event) -> Any:
    return event


class Deduper:
    """Deduplicate events within a sliding window of time buckets.

    Example:
        >>> sink = CollectorSink()
        >>> manager = BucketManager(MemoryBucketStore(), bucket_span_ms=1000)
        >>> deduper = Deduper(manager, sink)
        >>> deduper.setup()
        >>> deduper.begin_window(0)
        >>> deduper.process(Event(key=("a",), timestamp=now))
        >>> deduper.process(Event(key=("a",), timestamp=now))
        >>> deduper.end_window()
        >>> len(sink.collected_tuples)
        1
    """

    def __init__(
        self,
        bucket_manager: BucketManager,
        output: Sink,
        *,
        convert: Callable[[Event], Any] | None = None,
        duplicates: Sink | None = None,
        scheduler: EvictionScheduler | None = None,
        window_load_timeout: float | None = None,
    ) -> None:
        """Initialize the deduper.

        Args:
            bucket_manager: Manager owning buckets and their store.
            output: Receives ``convert(event)`` for each novel event.
            convert: Turns a novel event into the emitted record; called
                exactly once per novel event. Defaults to the event itself.
            duplicates: Optional sink receiving suppressed events.
            scheduler: Eviction scheduler (defaults to sweeping every idle tick).
            window_load_timeout: Seconds ``end_window`` waits for
                outstanding loads (None = until serviced).
        """
        self._manager = bucket_manager
        self._output = output
        self._convert = convert or _identity
        self._duplicates = duplicates
        self._scheduler = scheduler or EvictionScheduler(bucket_manager)
        self._window_load_timeout = window_load_timeout

        self._waiting: dict[int, list[Event]] = {}
        self._stats = DeduperStats()
        self._is_setup = False
        self._current_window: int | None = None

    @classmethod
    def from_config(
        cls,
        config: "DeduperConfig",
        output: Sink,
        *,
        store: BucketStore[Any] | None = None,
        convert: Callable[[Event], Any] | None = None,
        duplicates: Sink | None = None,
        clock: Callable[[], int] = current_millis,
    ) -> "Deduper":
        """Wire a deduper, its bucket manager and store from config."""
        manager = BucketManager.from_config(config, store=store, clock=clock)
        return cls(
            manager,
            output,
            convert=convert,
            duplicates=duplicates,
            scheduler=EvictionScheduler(manager, config.sweep_interval_ms),
            window_load_timeout=config.window_load_timeout,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def bucket_manager(self) -> BucketManager:
        return self._manager

    @property
    def scheduler(self) -> EvictionScheduler:
        return self._scheduler

    @property
    def current_window(self) -> int | None:
        return self._current_window

    @property
    def waiting_events(self) -> dict[int, list[Event]]:
        """Awaiting-event queue, keyed by bucket key (read-only view)."""
        return {k: list(v) for k, v in self._waiting.items()}

    @property
    def stats(self) -> DeduperStats:
        self._stats.waiting = sum(len(v) for v in self._waiting.values())
        return DeduperStats(**vars(self._stats))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def setup(self, context: dict[str, Any] | None = None) -> None:
        """Start the bucket manager.

        State is rebuilt lazily from the bucket store; nothing from a
        previous run's awaiting queue is carried over.
        """
        if self._is_setup:
            return
        self._waiting.clear()
        self._manager.start(self)
        self._is_setup = True
        logger.info("Deduper set up%s", f" ({context})" if context else "")

    def begin_window(self, window_id: int) -> None:
        if not self._is_setup:
            raise LifecycleError("begin_window called before setup")
        if self._current_window is not None:
            raise LifecycleError(
                f"begin_window({window_id}) called while window {self._current_window} is open"
            )
        self._current_window = window_id

    def process(self, event: Event) -> None:
        """Decide a single event, or defer it until its bucket is loaded.

        Raises:
            MalformedKeyError: If ``event`` is not a keyed ``Event``.
            LifecycleError: If no window is open.
        """
        if self._current_window is None:
            raise LifecycleError("process called outside of a window")
        if not isinstance(event, Event):
            raise MalformedKeyError(f"Expected Event, got {type(event).__name__}", event)

        self._stats.received += 1
        bucket_key = self._manager.get_bucket_key_for(event)

        waiting = self._waiting.get(bucket_key)
        if waiting is not None:
            waiting.append(event)
            return

        # A resident bucket still answers until a sweep evicts it.
        if self._manager.get_bucket(bucket_key) is not None:
            self._decide(bucket_key, event)
            return

        if self._manager.is_expired(bucket_key) or self._manager.is_quarantined(bucket_key):
            self._emit_late(event, bucket_key)
            return

        self._waiting[bucket_key] = [event]
        self._manager.load_bucket_async(bucket_key)

    def end_window(self) -> None:
        """Resolve awaiting events and flush dirty buckets.

        Waits for outstanding bucket loads (bounded by
        ``window_load_timeout``). Events whose loads are still pending
        after the timeout stay queued for the next window.
        """
        if self._current_window is None:
            raise LifecycleError("end_window called outside of a window")

        if not self._manager.wait_for_loads(self._window_load_timeout):
            logger.warning(
                "Window %d ended with %d events awaiting bucket loads",
                self._current_window,
                sum(len(v) for v in self._waiting.values()),
            )
        self._resolve_expired_waiting()
        self._manager.flush()

        self._stats.windows += 1
        self._current_window = None

    def handle_idle_time(self) -> None:
        """Apply completed loads and give the eviction scheduler a tick."""
        if not self._is_setup:
            return
        self._manager.drain_loaded()
        now_ms = self._manager.now()
        self._scheduler.on_idle(now_ms)
        self._resolve_expired_waiting(now_ms)

    def checkpointed(self, window_id: int) -> None:
        """Flush dirty buckets so a checkpoint never depends on memory state."""
        written = self._manager.flush()
        logger.debug("Checkpoint %d: flushed %d buckets", window_id, written)

    def teardown(self) -> None:
        """Flush state and stop the bucket manager."""
        if not self._is_setup:
            return

        self._manager.wait_for_loads(self._window_load_timeout)
        self._resolve_expired_waiting()
        self._manager.flush()

        pending = sum(len(v) for v in self._waiting.values())
        if pending:
            logger.warning("Tearing down with %d undecided events", pending)

        self._manager.shutdown()
        self._waiting.clear()
        self._current_window = None
        self._is_setup = False
        logger.info(
            "Deduper torn down. received=%d emitted=%d duplicates=%d late=%d",
            self._stats.received,
            self._stats.emitted,
            self._stats.duplicates,
            self._stats.late,
        )

    # -------------------------------------------------------------------------
    # Bucket listener
    # -------------------------------------------------------------------------

    def bucket_loaded(self, bucket: Bucket) -> None:
        """Replay events that were waiting for ``bucket`` in arrival order."""
        events = self._waiting.pop(bucket.bucket_key, [])
        for event in events:
            self._decide(bucket.bucket_key, event)

    def bucket_discarded(self, bucket_key: int) -> None:
        """The slot expired, or its bucket proved unreadable, before loading."""
        for event in self._waiting.pop(bucket_key, []):
            self._emit_late(event, bucket_key)

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    def _decide(self, bucket_key: int, event: Event) -> None:
        if self._manager.new_event(bucket_key, event.key):
            self._emit(event)
        else:
            self._stats.duplicates += 1
            if self._duplicates is not None:
                self._duplicates(event)

    def _emit(self, event: Event) -> None:
        self._stats.emitted += 1
        self._output(self._convert(event))

    def _emit_late(self, event: Event, bucket_key: int) -> None:
        self._stats.late += 1
        logger.debug(
            "Late event for closed bucket %d (key=%r), emitting as novel",
            bucket_key,
            event.key,
        )
        self._emit(event)

    def _resolve_expired_waiting(self, now_ms: int | None = None) -> None:
        if not self._waiting:
            return
        if now_ms is None:
            now_ms = self._manager.now()
        for bucket_key in [k for k in self._waiting if self._manager.is_expired(k, now_ms)]:
            self.bucket_discarded(bucket_key)
