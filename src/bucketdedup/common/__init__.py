"""Shared utilities for bucketdedup."""

from bucketdedup.common.retry import (
    BackoffStrategy,
    ExponentialBackoff,
    RetryConfig,
    RetryExhaustedError,
    RetryPolicy,
)

__all__ = [
    "BackoffStrategy",
    "ExponentialBackoff",
    "RetryConfig",
    "RetryExhaustedError",
    "RetryPolicy",
]
