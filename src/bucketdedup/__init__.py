"""bucketdedup - Time-windowed event deduplication with persistent buckets."""

from bucketdedup.events import (
    DedupKey,
    DeduperError,
    Event,
    MalformedKeyError,
)
from bucketdedup.config import ConfigError, DeduperConfig, load_config
from bucketdedup.bucket import (
    Bucket,
    BucketManager,
    BucketState,
    BucketStore,
    BucketStoreError,
    EventTimeClock,
    EvictionScheduler,
    FileSystemBucketStore,
    MemoryBucketStore,
    StoreUnavailableError,
    get_bucket_store,
)
from bucketdedup.deduper import Deduper, DeduperStats, LifecycleError

__version__ = "0.1.0"

__all__ = [
    # Events
    "DedupKey",
    "Event",
    # Errors
    "DeduperError",
    "MalformedKeyError",
    "LifecycleError",
    "BucketStoreError",
    "StoreUnavailableError",
    "ConfigError",
    # Configuration
    "DeduperConfig",
    "load_config",
    # Buckets
    "Bucket",
    "BucketState",
    "BucketStore",
    "FileSystemBucketStore",
    "MemoryBucketStore",
    "get_bucket_store",
    "BucketManager",
    "EventTimeClock",
    "EvictionScheduler",
    # Core
    "Deduper",
    "DeduperStats",
]
