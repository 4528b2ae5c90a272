"""Retry policy for the core's own outbound calls."""
from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

import httpx

from paycore.utils.errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
_RETRYABLE_MARKERS = ("ECONNREFUSED", "ECONNRESET", "ETIMEDOUT", "timeout")
JITTER_RATIO = 0.1


def _status_of(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_retryable_error(error: BaseException) -> bool:
    """Transport failures and 408/429/5xx gateway statuses are retryable."""

    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    status_code = _status_of(error)
    if status_code is not None:
        return status_code in RETRYABLE_STATUS_CODES
    message = str(error)
    return any(marker in message for marker in _RETRYABLE_MARKERS)


def backoff_delay(attempt: int, initial_delay: float, jitter: Callable[[], float] = random.random) -> float:
    """Delay before retry ``attempt`` (0-based): base * 2**attempt plus up to 10%."""

    base = initial_delay * (2**attempt)
    return base + base * JITTER_RATIO * jitter()


def retry_with_backoff(
    operation: Callable[[], T],
    max_retries: int = 5,
    initial_delay: float = 1.0,
    *,
    sleep: Callable[[float], None] = time.sleep,
    jitter: Callable[[], float] = random.random,
    retryable: Callable[[BaseException], bool] = is_retryable_error,
) -> T:
    """Run ``operation``, retrying retryable failures with exponential backoff.

    Non-retryable errors propagate unchanged on first occurrence. When every
    attempt fails, ``RetryExhaustedError`` wraps the last error.
    """

    attempts = 0
    while True:
        attempts += 1
        try:
            return operation()
        except Exception as exc:  # noqa: BLE001
            if not retryable(exc):
                raise
            retry_index = attempts - 1
            if retry_index >= max_retries:
                logger.error(
                    "Retries exhausted",
                    extra={"attempts": attempts, "error": str(exc)},
                )
                raise RetryExhaustedError(attempts, exc) from exc
            delay = backoff_delay(retry_index, initial_delay, jitter)
            logger.warning(
                "Retrying after transient failure",
                extra={
                    "attempt": attempts,
                    "max_retries": max_retries,
                    "delay_seconds": round(delay, 3),
                    "error": str(exc),
                },
            )
            sleep(delay)


__all__ = [
    "RETRYABLE_STATUS_CODES",
    "backoff_delay",
    "is_retryable_error",
    "retry_with_backoff",
]
