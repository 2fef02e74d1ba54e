"""Three-state circuit breaker for network collaborators."""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, TypeVar

from core.errors import CircuitOpenError
from core.structured_logging import emit_json_event

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Fail fast after repeated failures.

    closed: calls pass; `failure_threshold` consecutive failures open it.
    open: calls are rejected with CircuitOpenError until `reset_timeout`
        seconds have passed.
    half_open: exactly one probe call is let through. Success closes the
        circuit, failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock_fn: Callable[[], float] | None = None,
        run_id: str | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")

        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.run_id = run_id

        self._clock = clock_fn or time.monotonic
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        previous = self._state
        self._state = new_state
        emit_json_event(
            "circuit_state_changed",
            run_id=self.run_id,
            level="warning" if new_state == CircuitState.OPEN else "info",
            component="breaker",
            breaker=self.name,
            from_state=previous.value,
            to_state=new_state.value,
            consecutive_failures=self._failures,
        )

    def _maybe_half_open(self) -> None:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            self._probe_in_flight = False
            self._transition(CircuitState.HALF_OPEN)

    def before_call(self) -> None:
        """Admit or reject one call."""
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                remaining = self.reset_timeout - (self._clock() - self._opened_at)
                raise CircuitOpenError(f"circuit {self.name} is open; retry in {max(remaining, 0.0):.1f}s")
            if self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpenError(f"circuit {self.name} is half-open; probe in flight")
                self._probe_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._probe_in_flight = False
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                self._opened_at = self._clock()
                self._transition(CircuitState.OPEN)

    def call(self, fn: Callable[[], T], is_failure: Callable[[BaseException], bool] | None = None) -> T:
        """
        Run `fn` under the breaker.

        Exceptions for which `is_failure` returns False (validation errors,
        say) pass through without counting against the circuit.
        """
        self.before_call()
        try:
            result = fn()
        except Exception as exc:
            if is_failure is None or is_failure(exc):
                self.record_failure()
            else:
                self.record_success()
            raise
        self.record_success()
        return result
