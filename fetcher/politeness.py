"""Politeness controls: token-bucket rate limiting for network calls."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator


class TokenBucket:
    """
    Classic token bucket shared by every caller of one collaborator.

    Tokens refill continuously at `rate_per_second` up to `capacity`. A call
    takes one token, sleeping until one is available.
    """

    def __init__(
        self,
        rate_per_second: float,
        capacity: int = 1,
        sleep_fn: Callable[[float], None] | None = None,
        clock_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize rate policy with optional test-time clock hooks."""
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be > 0")
        if capacity < 1:
            raise ValueError("capacity must be >= 1")

        self.rate_per_second = rate_per_second
        self.capacity = capacity

        self._sleep = sleep_fn or time.sleep
        self._clock = clock_fn or time.monotonic

        self._lock = threading.Lock()
        self._tokens = float(capacity)
        self._last_refill = self._clock()

    def _refill(self, now: float) -> None:
        elapsed = max(now - self._last_refill, 0.0)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate_per_second)
        self._last_refill = now

    def try_acquire(self) -> bool:
        """Take a token if one is available right now."""
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def acquire(self) -> float:
        """Block until a token is taken; returns total seconds waited."""
        waited = 0.0
        while True:
            with self._lock:
                self._refill(self._clock())
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return waited
                wait_seconds = (1.0 - self._tokens) / self.rate_per_second

            self._sleep(wait_seconds)
            waited += wait_seconds

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Acquire a token before the guarded block runs."""
        self.acquire()
        yield

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens
