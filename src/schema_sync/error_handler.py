"""
Error handling utilities for registry calls.

This module provides:
- Error categorization (transient vs permanent)
- Bounded retry with exponential backoff that reports an explicit
  attempt result instead of raising
- A reusable retry policy object shared by capture and execution
"""

import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import requests

from schema_sync.exceptions import (
    ConflictError,
    MigrationCancelledError,
    RegistryRequestError,
    TransientNetworkError,
)
from schema_sync.logging_config import create_logger

logger = create_logger(__name__)


class ErrorCategory(str, Enum):
    """Categories of errors for handling strategy."""
    TRANSIENT = "transient"  # Temporary errors that may succeed on retry
    PERMANENT = "permanent"  # Errors that will not resolve with retry
    UNKNOWN = "unknown"  # Uncategorized errors


def categorize_error(exception: BaseException) -> ErrorCategory:
    """Categorize an error as transient or permanent.

    Args:
        exception: The exception to categorize

    Returns:
        ErrorCategory indicating if error is transient or permanent
    """
    if isinstance(exception, TransientNetworkError):
        return ErrorCategory.TRANSIENT

    # Registry rejections (4xx), conflicts and cancellation never heal
    if isinstance(exception, (RegistryRequestError, ConflictError, MigrationCancelledError)):
        return ErrorCategory.PERMANENT

    if isinstance(exception, (requests.ConnectionError, requests.Timeout)):
        return ErrorCategory.TRANSIENT

    if isinstance(exception, requests.HTTPError) and exception.response is not None:
        status = exception.response.status_code
        if status >= 500 or status == 429:
            return ErrorCategory.TRANSIENT
        return ErrorCategory.PERMANENT

    # File errors - usually permanent
    if isinstance(exception, (FileNotFoundError, PermissionError)):
        return ErrorCategory.PERMANENT

    # Network/connection errors - usually transient
    if isinstance(exception, (ConnectionError, TimeoutError, OSError)):
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


@dataclass
class AttemptResult:
    """Outcome of a retried call.

    Attributes:
        value: Return value when the call succeeded
        error: Last exception when every attempt failed
        category: Category of the last error
        attempts: Number of attempts made
    """

    value: Any = None
    error: Optional[BaseException] = None
    category: Optional[ErrorCategory] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        """Return the value, or raise the recorded error."""
        if self.error is not None:
            raise self.error
        return self.value


def call_with_retry(
    operation: Callable[[], Any],
    operation_name: str = "operation",
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    jitter: bool = False,
    cancel_event: Optional[threading.Event] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> AttemptResult:
    """Call ``operation`` with bounded exponential backoff.

    Only TRANSIENT failures are retried. The loop runs at most
    ``max_attempts`` times and returns an AttemptResult; it never raises
    the operation's exception itself.

    Args:
        operation: Zero-argument callable performing one request
        operation_name: Name for logging
        max_attempts: Maximum number of attempts (>= 1)
        initial_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay
        backoff_factor: Multiplier applied per attempt
        jitter: Whether to scale delays randomly into [50%, 100%]
        cancel_event: Run-scoped cancellation signal; aborts backoff waits
        sleep: Sleep function override (tests)

    Returns:
        AttemptResult with either a value or the last error
    """
    attempts = max(1, max_attempts)
    result = AttemptResult()

    for attempt in range(1, attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            result.error = MigrationCancelledError(f"{operation_name} cancelled")
            result.category = ErrorCategory.PERMANENT
            return result

        result.attempts = attempt
        try:
            result.value = operation()
            result.error = None
            result.category = None
            return result
        except Exception as e:
            result.error = e
            result.category = categorize_error(e)

        if result.category != ErrorCategory.TRANSIENT:
            logger.error(
                f"{operation_name} failed with {result.category.value} error, "
                f"not retrying: {result.error}"
            )
            return result

        if attempt >= attempts:
            logger.error(
                f"All {attempts} attempts failed for {operation_name}: {result.error}"
            )
            return result

        current_delay = min(initial_delay * (backoff_factor ** (attempt - 1)), max_delay)
        if jitter:
            current_delay *= (0.5 + random.random() * 0.5)

        logger.warning(
            f"Attempt {attempt}/{attempts} failed for {operation_name}: {result.error}. "
            f"Retrying in {current_delay:.2f}s..."
        )

        if sleep is not None:
            sleep(current_delay)
        elif cancel_event is not None:
            if cancel_event.wait(current_delay):
                result.error = MigrationCancelledError(
                    f"{operation_name} cancelled during backoff"
                )
                result.category = ErrorCategory.PERMANENT
                return result
        else:
            time.sleep(current_delay)

    return result


@dataclass
class RetryPolicy:
    """Retry settings shared by the snapshot builder and the executor."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: bool = False
    sleep: Optional[Callable[[float], None]] = None

    def run(
        self,
        operation: Callable[[], Any],
        operation_name: str = "operation",
        cancel_event: Optional[threading.Event] = None,
    ) -> AttemptResult:
        """Execute an operation under this policy."""
        return call_with_retry(
            operation,
            operation_name=operation_name,
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            backoff_factor=self.backoff_factor,
            jitter=self.jitter,
            cancel_event=cancel_event,
            sleep=self.sleep,
        )
