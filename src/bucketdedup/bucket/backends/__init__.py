"""Bucket store backends."""

from bucketdedup.bucket.backends.filesystem import (
    FileSystemBucketStore,
    FileSystemBucketStoreConfig,
)
from bucketdedup.bucket.backends.memory import (
    MemoryBucketStore,
    MemoryBucketStoreConfig,
)

__all__ = [
    "FileSystemBucketStore",
    "FileSystemBucketStoreConfig",
    "MemoryBucketStore",
    "MemoryBucketStoreConfig",
]
