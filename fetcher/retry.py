"""Retry policy for network collaborator calls, plus the combined call guard."""

from __future__ import annotations

import time
from typing import Any, Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential, wait_random

from core.config import ArchiverConfig
from core.errors import CircuitOpenError, TransientIOError
from core.structured_logging import emit_json_event
from fetcher.breaker import CircuitBreaker
from fetcher.politeness import TokenBucket

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """Only transient I/O is retried; an open circuit fails fast."""
    return isinstance(exc, TransientIOError) and not isinstance(exc, CircuitOpenError)


class RetryPolicy:
    """
    Bounded exponential backoff with jitter.

    Delay before attempt n+1 is `min(base_delay * 2**(n-1), max_delay)` plus
    up to `jitter` random seconds. The final exception is re-raised
    unchanged once attempts are exhausted.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.5,
        sleep_fn: Callable[[float], None] | None = None,
        run_id: str | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.run_id = run_id
        self._sleep = sleep_fn or time.sleep

    @classmethod
    def from_config(
        cls,
        config: ArchiverConfig,
        sleep_fn: Callable[[float], None] | None = None,
        run_id: str | None = None,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            jitter=config.retry_jitter,
            sleep_fn=sleep_fn,
            run_id=run_id,
        )

    def _before_sleep(self, operation: str) -> Callable[[RetryCallState], None]:
        def _log(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            emit_json_event(
                "retry_scheduled",
                run_id=self.run_id,
                level="warning",
                component="retry",
                operation=operation,
                attempt=retry_state.attempt_number,
                max_attempts=self.max_attempts,
                delay_seconds=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
                error_type=type(exc).__name__ if exc else None,
                error=str(exc) if exc else None,
            )

        return _log

    def retrying(self, operation: str = "call") -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay) + wait_random(0, self.jitter),
            retry=retry_if_exception(is_retryable),
            before_sleep=self._before_sleep(operation),
            sleep=self._sleep,
            reraise=True,
        )

    def call(self, fn: Callable[..., T], *args: Any, operation: str = "call", **kwargs: Any) -> T:
        """Run `fn` until it succeeds, raises a non-retryable error, or attempts run out."""
        return self.retrying(operation)(fn, *args, **kwargs)


class NetworkGuard:
    """
    Shared policy objects for one network collaborator.

    Each attempt takes a rate-limit token and passes through the circuit
    breaker; the whole sequence of attempts is driven by the retry policy.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy,
        bucket: TokenBucket,
        breaker: CircuitBreaker,
    ) -> None:
        self.retry_policy = retry_policy
        self.bucket = bucket
        self.breaker = breaker

    @classmethod
    def from_config(
        cls,
        config: ArchiverConfig,
        name: str,
        sleep_fn: Callable[[float], None] | None = None,
        clock_fn: Callable[[], float] | None = None,
        run_id: str | None = None,
    ) -> "NetworkGuard":
        return cls(
            retry_policy=RetryPolicy.from_config(config, sleep_fn=sleep_fn, run_id=run_id),
            bucket=TokenBucket(
                rate_per_second=config.rate_per_second,
                capacity=config.rate_burst,
                sleep_fn=sleep_fn,
                clock_fn=clock_fn,
            ),
            breaker=CircuitBreaker(
                name=name,
                failure_threshold=config.breaker_failure_threshold,
                reset_timeout=config.breaker_reset_seconds,
                clock_fn=clock_fn,
                run_id=run_id,
            ),
        )

    def call(self, fn: Callable[[], T], operation: str = "call") -> T:
        def _attempt() -> T:
            with self.bucket.slot():
                return self.breaker.call(fn, is_failure=lambda exc: isinstance(exc, TransientIOError))

        return self.retry_policy.call(_attempt, operation=operation)
