"""Retry policy with backoff for bucket store operations.

Bucket loads hit durable storage from background workers. Transient
storage failures are retried with exponential backoff before the
failure is handed back to the ingestion thread.
"""

from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

R = TypeVar("R")


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: Exception | None = None,
    ):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry policy.

    Attributes:
        max_attempts: Maximum number of attempts (1 = no retry).
        base_delay: Base delay in seconds.
        max_delay: Maximum delay cap in seconds.
        exponential_base: Multiplier for exponential backoff.
        jitter: Whether to add random jitter to delays.
        jitter_factor: Maximum jitter as a fraction (0.0-1.0).
        retryable_exceptions: Exceptions that trigger retry.
    """

    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.5
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.exponential_base < 1:
            raise ValueError("exponential_base must be >= 1")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")

    def is_retryable(self, error: Exception) -> bool:
        """Check if the error should trigger a retry."""
        return isinstance(error, self.retryable_exceptions)


class BackoffStrategy(ABC):
    """Abstract base class for backoff strategies."""

    @abstractmethod
    def get_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt (0-indexed)."""
        ...


@dataclass
class ExponentialBackoff(BackoffStrategy):
    """Exponential backoff strategy.

    Delay = base_delay * (multiplier ^ attempt)

    Example:
        backoff = ExponentialBackoff(base_delay=0.1, multiplier=2.0)
        # Attempt 0: 0.1s
        # Attempt 1: 0.2s
        # Attempt 2: 0.4s
    """

    base_delay: float = 0.1
    multiplier: float = 2.0
    max_delay: float = 5.0

    def get_delay(self, attempt: int) -> float:
        delay = self.base_delay * (self.multiplier ** attempt)
        return min(delay, self.max_delay)


class RetryPolicy:
    """Configurable retry policy.

    Example:
        retry = RetryPolicy(RetryConfig(max_attempts=5))
        keys = retry.execute(store.load, bucket_key)
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        backoff: BackoffStrategy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize retry policy.

        Args:
            config: Retry configuration.
            backoff: Custom backoff strategy (overrides config-based backoff).
            sleep: Function used to wait between attempts.
        """
        self._config = config or RetryConfig()
        self._backoff = backoff or ExponentialBackoff(
            base_delay=self._config.base_delay,
            multiplier=self._config.exponential_base,
            max_delay=self._config.max_delay,
        )
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def get_delay(self, attempt: int) -> float:
        """Get delay before next retry."""
        delay = self._backoff.get_delay(attempt)

        if self._config.jitter:
            jitter_range = delay * self._config.jitter_factor
            delay = delay + random.uniform(-jitter_range, jitter_range)
            delay = max(0, delay)

        return delay

    def execute(self, func: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        """Execute function with retry policy."""
        last_error: Exception | None = None

        for attempt in range(self._config.max_attempts):
            try:
                return func(*args, **kwargs)

            except Exception as e:
                last_error = e

                if not self._config.is_retryable(e):
                    logger.warning(
                        "Retry policy: non-retryable error on attempt %d: %s",
                        attempt + 1,
                        e,
                    )
                    raise

                if attempt >= self._config.max_attempts - 1:
                    break

                delay = self.get_delay(attempt)
                logger.info(
                    "Retry policy: attempt %d failed, retrying in %.2fs: %s",
                    attempt + 1,
                    delay,
                    e,
                )

                self._sleep(delay)

        raise RetryExhaustedError(
            f"All {self._config.max_attempts} retry attempts exhausted",
            attempts=self._config.max_attempts,
            last_error=last_error,
        )

