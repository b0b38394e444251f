"""Bounded retry with jittered exponential backoff for platform calls."""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as URLLibHTTPError

logger = logging.getLogger("podplane.retry")

T = TypeVar("T")

TransientException = (TimeoutError, ConnectionError, URLLibHTTPError)


def is_transient(exc: Exception) -> bool:
    """Retry network failures, throttling and server-side errors only."""

    if isinstance(exc, ApiException):
        status = exc.status or 0
        return status == 429 or status >= 500 or status == 0
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 5.0

    def delay(self, attempt: int) -> float:
        jitter = random.uniform(0.5, 1.5)
        base = self.backoff_seconds * (2 ** (attempt - 1))
        return min(base, self.max_backoff_seconds) * jitter


NO_RETRY = RetryPolicy(max_attempts=1)


def call_with_retry(
    func: Callable[[], T],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] = is_transient,
    description: str = "platform call",
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Invoke ``func`` until it succeeds, fails permanently or attempts run out."""

    sleeper = sleep or time.sleep
    attempt = 1
    while True:
        try:
            return func()
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            delay = policy.delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            sleeper(delay)
            attempt += 1


__all__ = ["NO_RETRY", "RetryPolicy", "call_with_retry", "is_transient"]
