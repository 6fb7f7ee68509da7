"""Retry policy and upload throttle shared by the image pipeline and the orchestrator."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


def _always_retry(exc: BaseException) -> bool:
    return getattr(exc, "retryable", True)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with exponential backoff.

    ``max_attempts`` counts the first call, so 3 means one try plus two
    retries.  The delay before retry *n* (1-based) is
    ``base_delay * multiplier ** (n - 1)``, capped at ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    retryable: Callable[[BaseException], bool] = field(default=_always_retry, compare=False)

    def delay_for(self, retry_number: int) -> float:
        return min(self.base_delay * self.multiplier ** (retry_number - 1), self.max_delay)

    def call(
        self,
        fn: Callable[[], T],
        description: str = "operation",
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """Run *fn* until it succeeds, raises a non-retryable error or runs out of attempts.

        The last exception is re-raised unchanged.
        """
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as exc:
                if attempt >= self.max_attempts or not self.retryable(exc):
                    raise
                delay = self.delay_for(attempt)
                log.info(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    description, attempt, self.max_attempts, exc, delay,
                )
                if on_retry is not None:
                    on_retry(attempt, exc)
                sleep(delay)
                attempt += 1


# ---------------------------------------------------------------------------
# Upload throttle
# ---------------------------------------------------------------------------

class UploadThrottle:
    """Thread-safe minimum spacing between consecutive store operations."""

    def __init__(
        self,
        min_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_allowed = 0.0

    def wait(self) -> float:
        """Block until this caller's slot; returns seconds waited."""
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_allowed)
            self._next_allowed = slot + self.min_interval
        delay = slot - now
        if delay > 0:
            self._sleep(delay)
        return delay
