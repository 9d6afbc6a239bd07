"""Time-addressed buckets of seen dedup keys.

Provides the bucket data model, the bucket store interface and backends,
the time-based bucket manager and the idle-time eviction scheduler.
"""

from bucketdedup.bucket.base import (
    Bucket,
    BucketState,
    BucketStoreError,
    CorruptBucketError,
    StoreUnavailableError,
)
from bucketdedup.bucket.store import BucketStore, BucketStoreConfig
from bucketdedup.bucket.backends import (
    FileSystemBucketStore,
    MemoryBucketStore,
)
from bucketdedup.bucket.factory import (
    get_bucket_store,
    register_bucket_store,
    store_from_config,
)
from bucketdedup.bucket.manager import (
    BucketListener,
    BucketManager,
    BucketManagerStats,
    EventTimeClock,
    SweepResult,
    current_millis,
)
from bucketdedup.bucket.eviction import EvictionScheduler

__all__ = [
    # Model
    "Bucket",
    "BucketState",
    # Errors
    "BucketStoreError",
    "CorruptBucketError",
    "StoreUnavailableError",
    # Stores
    "BucketStore",
    "BucketStoreConfig",
    "FileSystemBucketStore",
    "MemoryBucketStore",
    "get_bucket_store",
    "register_bucket_store",
    "store_from_config",
    # Manager
    "BucketListener",
    "BucketManager",
    "BucketManagerStats",
    "EventTimeClock",
    "SweepResult",
    "current_millis",
    "EvictionScheduler",
]
