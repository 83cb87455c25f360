"""
Retry logic with exponential backoff for record store calls.

Every coordinator step is idempotent, so a step that hit a transient store
failure is simply executed again after a backoff delay.
"""

import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from twophaseledger.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts
        retry_backoff_ms: Initial backoff in milliseconds
        retry_backoff_max_ms: Maximum backoff in milliseconds
        retry_jitter_ms: Random jitter to add to backoff
    """
    max_retries: int = 5
    retry_backoff_ms: int = 50
    retry_backoff_max_ms: int = 5000
    retry_jitter_ms: int = 20

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RetryConfig":
        """Create from a config section, ignoring unknown keys."""
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class RetryableError(Exception):
    """Exception that should trigger retry."""
    pass


class RetryManager:
    """
    Manages retry logic with exponential backoff.

    Only RetryableError is retried. Any other exception propagates on the
    first attempt, since it reports a decision rather than a transient fault.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize retry manager.

        Args:
            config: Retry configuration
            sleep: Sleep function (seconds), replaceable in tests
        """
        self.config = config or RetryConfig()
        self._sleep = sleep

        logger.debug(
            "Initialized retry manager",
            max_retries=self.config.max_retries,
            retry_backoff_ms=self.config.retry_backoff_ms,
        )

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        operation_name: str = "operation",
    ) -> T:
        """
        Execute operation with retry logic.

        Args:
            operation: Callable to execute
            operation_name: Name for logging

        Returns:
            Result from operation

        Raises:
            RetryableError: If all retries exhausted
        """
        last_exception: Optional[RetryableError] = None

        for attempt in range(self.config.max_retries + 1):
            try:
                result = operation()

                if attempt > 0:
                    logger.info(
                        f"{operation_name} succeeded after retry",
                        attempt=attempt,
                    )

                return result

            except RetryableError as e:
                last_exception = e

                if attempt < self.config.max_retries:
                    backoff_ms = self._calculate_backoff(attempt)

                    logger.warning(
                        f"{operation_name} failed, retrying",
                        attempt=attempt,
                        backoff_ms=backoff_ms,
                        error=str(e),
                    )

                    self._sleep(backoff_ms / 1000.0)
                else:
                    logger.error(
                        f"{operation_name} failed after all retries",
                        attempts=attempt + 1,
                        error=str(e),
                    )

        raise last_exception

    def _calculate_backoff(self, attempt: int) -> int:
        """
        Calculate backoff delay with exponential growth and jitter.

        Formula: min(base * 2^attempt, max) + jitter

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Backoff delay in milliseconds
        """
        exponential_backoff = self.config.retry_backoff_ms * (2 ** attempt)

        backoff = min(exponential_backoff, self.config.retry_backoff_max_ms)

        jitter = random.randint(0, self.config.retry_jitter_ms)

        return backoff + jitter


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if error is retryable.

    Args:
        error: Exception to check

    Returns:
        True if error should be retried
    """
    if isinstance(error, RetryableError):
        return True

    error_str = str(error).lower()

    retryable_patterns = [
        "timeout",
        "database is locked",
        "database is busy",
        "disk i/o error",
        "connection refused",
        "connection reset",
        "temporarily unavailable",
    ]

    for pattern in retryable_patterns:
        if pattern in error_str:
            return True

    return False
