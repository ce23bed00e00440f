"""
Caller-controlled retry for retryable failures.

The core never retries on its own: a retried write may repeat a side effect,
so only the caller can decide that an operation is safe to run again.
"""

import time
import logging
from typing import Callable, Optional, TypeVar

from .errors import DatabaseError
from ..config.db_config import RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar('T')


def run_with_retry(operation: Callable[[], T], attempts: int = 3, delay: float = 0.5,
                   backoff: float = 2.0,
                   on_retry: Optional[Callable[[int, DatabaseError], None]] = None,
                   sleep: Callable[[float], None] = time.sleep) -> T:
    """
    Run ``operation`` and retry it on TRANSIENT or RESOURCE_EXHAUSTED errors.

    ``operation`` must borrow its own connection so every attempt runs on a
    fresh one. Non-retryable errors propagate immediately.

    Args:
        operation: Zero-argument callable
        attempts: Total number of attempts (at least 1)
        delay: Seconds to wait before the first retry
        backoff: Multiplier applied to the delay after every retry
        on_retry: Called with (attempt number, error) before each retry
        sleep: Sleep function

    Returns:
        The operation's result
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    wait = delay
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except DatabaseError as e:
            if not e.retryable or attempt == attempts:
                if e.retryable:
                    logger.error(f"Operation failed after {attempt} attempts: {e}")
                raise
            logger.warning(f"Operation failed (attempt {attempt}/{attempts}), retrying in {wait:.2f}s: {e}")
            if on_retry is not None:
                on_retry(attempt, e)
            sleep(wait)
            wait *= backoff

    raise AssertionError("unreachable")


def retry_with_settings(operation: Callable[[], T], settings: RetrySettings, **kwargs) -> T:
    """``run_with_retry`` bounded by configured retry settings."""
    return run_with_retry(
        operation, attempts=settings.attempts, delay=settings.delay,
        backoff=settings.backoff, **kwargs
    )
