"""Retry policy for transient failures (commit conflicts, integration calls)."""

import time
import random
from typing import Callable, Any, Optional, List, Type

from .exceptions import WorkflowEngineError, StorageError, ConcurrentModification
from .logging import get_logger, ErrorRecoveryLogger


logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior.

    An exception is retried only when it is an instance of one of
    ``retryable_exceptions`` and, for engine errors, is flagged recoverable.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None,
        sleep: Optional[Callable[[float], None]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [StorageError, ConcurrentModification]
        self.sleep = sleep or time.sleep

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False

        if not any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions):
            return False

        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable

        return True

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before the retry following ``attempt``."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


def execute_with_retry(func: Callable, config: RetryConfig, *args, operation: Optional[str] = None, **kwargs) -> Any:
    """Call ``func`` until it succeeds or the retry policy gives up; the last error propagates."""
    operation = operation or getattr(func, "__name__", "operation")
    recovery_logger = ErrorRecoveryLogger(operation)

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = func(*args, **kwargs)
            if attempt > 1:
                recovery_logger.log_recovery_success(operation, attempt)
            return result
        except Exception as e:
            if not config.should_retry(e, attempt):
                if attempt > 1 or config.max_attempts > 1:
                    recovery_logger.log_recovery_failure(operation, e, attempt)
                raise

            recovery_logger.log_recovery_attempt(operation, e, attempt, config.max_attempts)
            config.sleep(config.get_delay(attempt))
