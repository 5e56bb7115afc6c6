"""Retry logic with exponential backoff.

This module provides:
- retry_with_backoff: Run a function until it succeeds or attempts run out
- backoff_delays: The sleep schedule used between attempts
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


def backoff_delays(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    max_backoff: float | None = None,
) -> Iterator[float]:
    """Yield the delay slept before each retry.

    With the defaults this yields 1, 2, 4, 8: one delay fewer than attempts.
    """
    backoff = initial_backoff
    for _ in range(max_attempts - 1):
        yield backoff if max_backoff is None else min(backoff, max_backoff)
        backoff *= backoff_multiplier


def retry_with_backoff(
    func: Callable[[], T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    max_backoff: float | None = None,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Execute a function with exponential backoff retry.

    Args:
        func: Function to execute.
        max_attempts: Total number of calls, first one included.
        initial_backoff: Delay before the second attempt, in seconds.
        backoff_multiplier: Multiplier applied to the delay after each retry.
        max_backoff: Upper bound on a single delay (None for no bound).
        retryable_exceptions: Tuple of exception types to retry on.
        sleep: Sleep function (replaced in tests).
        label: Name of the operation in log messages.

    Returns:
        Result of the function.

    Raises:
        The last exception if all attempts fail.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    delays = backoff_delays(max_attempts, initial_backoff, backoff_multiplier, max_backoff)
    attempt = 1
    while True:
        try:
            return func()
        except retryable_exceptions as e:
            delay = next(delays, None)
            if delay is None:
                logger.error("%s: all %d attempts failed: %s", label, max_attempts, e)
                raise

            logger.warning(
                "%s: attempt %d/%d failed: %s. Retrying in %.1fs...",
                label,
                attempt,
                max_attempts,
                e,
                delay,
            )
            sleep(delay)
            attempt += 1
