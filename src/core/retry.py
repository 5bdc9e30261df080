"""Bounded retry for callers of the core.

The core itself never retries; the CLI wraps each operation with this so a
flaky store is retried a few times with exponential backoff before the user
sees an error. Only errors flagged ``retryable`` are retried.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from core.config import RetryConfig
from core.errors import HelpmateError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(config: RetryConfig, attempt: int) -> float:
    """Delay before retry number ``attempt`` (1-based)."""

    return min(config.max_delay_seconds, config.base_delay_seconds * (2 ** (attempt - 1)))


def call_with_retry(
    operation: Callable[[], T],
    config: RetryConfig,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempts = max(1, config.attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except HelpmateError as exc:
            if not exc.retryable or attempt == attempts:
                raise
            delay = backoff_delay(config, attempt)
            LOGGER.warning(
                "Upstream error (attempt %s/%s): %s; retrying in %.1fs",
                attempt,
                attempts,
                exc.user_message,
                delay,
            )
            sleep(delay)
    raise AssertionError("unreachable")
