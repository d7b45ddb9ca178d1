"""Retry policy for network operations.

``with_retry`` wraps a zero-argument callable.  Only failures classified as
network/connectivity errors by the injectable predicate are retried; every
other exception propagates immediately without delay.  After the last
attempt a ``RetryExhaustedError`` is raised with the final failure as its
cause.

Attempt numbering is 1-based.  With ``max_retries=3`` the operation runs at
most four times, sleeping ``initial_delay * backoff_factor ** (n - 1)``
milliseconds after failed attempt *n*.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from upstream_sync.config_schema import RetryConfig
from upstream_sync.errors import (
    AuthenticationError,
    NetworkError,
    RetryExhaustedError,
)

T = TypeVar("T")
logger = logging.getLogger(__name__)

_NETWORK_MARKERS = (
    "network",
    "connect",
    "could not resolve host",
    "timed out",
    "connection reset",
    "early eof",
    "unable to access",
    "remote end hung up",
)


def is_network_error(exc: BaseException) -> bool:
    """Default classifier: connectivity problems are retryable.

    ``AuthenticationError`` is never retryable even if its message
    mentions the network.
    """
    if isinstance(exc, AuthenticationError):
        return False
    if isinstance(exc, RetryExhaustedError):
        return False
    if isinstance(exc, (NetworkError, ConnectionError, TimeoutError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _NETWORK_MARKERS)


def backoff_delays(config: RetryConfig) -> list[float]:
    """Seconds slept after each failed attempt, in order."""
    return [
        config.initial_delay * config.backoff_factor ** (attempt - 1) / 1000.0
        for attempt in range(1, config.max_retries + 1)
    ]


def with_retry(
    func: Callable[[], T],
    config: RetryConfig | None = None,
    *,
    description: str = "network operation",
    classify: Callable[[BaseException], bool] = is_network_error,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *func*, retrying network failures with exponential backoff.

    Args:
        func: The operation.  Called with no arguments.
        config: Retry settings (defaults: 3 retries, 2000 ms, x1.5).
        description: Used in log lines and the exhaustion message.
        classify: Returns ``True`` for retryable failures.
        sleep: Injected for tests.

    Returns:
        Whatever *func* returns on its first successful attempt.

    Raises:
        RetryExhaustedError: Every attempt failed with a network error.
        Exception: Any non-network failure, re-raised unchanged.
    """
    cfg = config or RetryConfig()
    delays = backoff_delays(cfg)
    total_attempts = cfg.max_retries + 1

    for attempt in range(1, total_attempts + 1):
        try:
            return func()
        except Exception as exc:
            if not classify(exc):
                raise
            if attempt == total_attempts:
                raise RetryExhaustedError(
                    f"{description} failed after {total_attempts} attempts",
                    cause=exc,
                    context={"attempts": total_attempts},
                    attempts=total_attempts,
                ) from exc
            delay = delays[attempt - 1]
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt,
                total_attempts,
                exc,
                delay,
            )
            sleep(delay)

    # Unreachable: the loop either returns or raises.
    raise AssertionError("retry loop exited without result")
