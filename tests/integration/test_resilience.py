"""Tests for token bucket, circuit breaker, retry policy and the combined network guard."""

from __future__ import annotations

import pytest

from core.errors import CircuitOpenError, TransientIOError, ValidationError
from fetcher.breaker import CircuitBreaker, CircuitState
from fetcher.politeness import TokenBucket
from fetcher.retry import NetworkGuard, RetryPolicy, is_retryable


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FlakyCall:
    """Raise the queued errors in order, then return a value."""

    def __init__(self, errors: list[Exception], result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def _fail(exc: Exception):
    def _raise():
        raise exc

    return _raise


@pytest.mark.integration
def test_token_bucket_allows_burst_then_waits():
    clock = FakeClock()
    bucket = TokenBucket(rate_per_second=1.0, capacity=2, sleep_fn=clock.sleep, clock_fn=clock)

    assert bucket.acquire() == 0.0
    assert bucket.acquire() == 0.0
    assert bucket.acquire() == pytest.approx(1.0)
    assert clock.sleeps == [pytest.approx(1.0)]

    assert bucket.try_acquire() is False
    clock.now += 0.5
    assert bucket.available_tokens == pytest.approx(0.5)


@pytest.mark.integration
def test_token_bucket_never_exceeds_capacity():
    clock = FakeClock()
    bucket = TokenBucket(rate_per_second=5.0, capacity=3, sleep_fn=clock.sleep, clock_fn=clock)

    clock.now += 100.0
    assert bucket.available_tokens == pytest.approx(3.0)


@pytest.mark.integration
@pytest.mark.parametrize(("rate", "capacity"), [(0.0, 1), (-1.0, 1), (1.0, 0)])
def test_token_bucket_rejects_invalid_settings(rate: float, capacity: int):
    with pytest.raises(ValueError):
        TokenBucket(rate_per_second=rate, capacity=capacity)


@pytest.mark.integration
def test_breaker_walks_closed_open_half_open_cycle(capsys, json_lines):
    clock = FakeClock()
    breaker = CircuitBreaker("uploads", failure_threshold=3, reset_timeout=10.0, clock_fn=clock, run_id="run-1")

    for _ in range(3):
        with pytest.raises(TransientIOError):
            breaker.call(_fail(TransientIOError("502")))
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        breaker.call(lambda: "never runs")

    clock.now += 10.0
    assert breaker.state == CircuitState.HALF_OPEN

    # One probe at a time while half-open.
    breaker.before_call()
    with pytest.raises(CircuitOpenError):
        breaker.before_call()
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN

    clock.now += 10.0
    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.consecutive_failures == 0

    events = [e for e in json_lines(capsys.readouterr().out) if e["event_type"] == "circuit_state_changed"]
    assert [e["to_state"] for e in events] == ["open", "half_open", "open", "half_open", "closed"]
    assert events[0]["level"] == "warning"
    assert all(e["breaker"] == "uploads" and e["run_id"] == "run-1" for e in events)


@pytest.mark.integration
def test_breaker_ignores_non_failure_exceptions():
    breaker = CircuitBreaker("uploads", failure_threshold=2, clock_fn=FakeClock())

    with pytest.raises(TransientIOError):
        breaker.call(_fail(TransientIOError("timeout")), is_failure=lambda exc: isinstance(exc, TransientIOError))
    with pytest.raises(ValidationError):
        breaker.call(_fail(ValidationError("bad")), is_failure=lambda exc: isinstance(exc, TransientIOError))

    assert breaker.state == CircuitState.CLOSED
    assert breaker.consecutive_failures == 0


@pytest.mark.integration
def test_retry_policy_backs_off_and_logs(capsys, json_lines):
    clock = FakeClock()
    policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=4.0, jitter=0.0, sleep_fn=clock.sleep, run_id="r")
    flaky = FlakyCall([TransientIOError("503"), TransientIOError("503")])

    assert policy.call(flaky, operation="upload_file") == "ok"
    assert flaky.calls == 3
    assert clock.sleeps == [pytest.approx(1.0), pytest.approx(2.0)]

    events = [e for e in json_lines(capsys.readouterr().out) if e["event_type"] == "retry_scheduled"]
    assert [e["attempt"] for e in events] == [1, 2]
    assert all(e["operation"] == "upload_file" and e["error_type"] == "TransientIOError" for e in events)


@pytest.mark.integration
def test_retry_policy_caps_delay():
    clock = FakeClock()
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=2.0, jitter=0.0, sleep_fn=clock.sleep)

    with pytest.raises(TransientIOError):
        policy.call(_fail(TransientIOError("down")))
    assert clock.sleeps == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(2.0), pytest.approx(2.0)]


@pytest.mark.integration
def test_retry_policy_reraises_after_exhaustion():
    flaky = FlakyCall([TransientIOError(f"attempt {n}") for n in range(1, 4)])
    policy = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0, sleep_fn=lambda _: None)

    with pytest.raises(TransientIOError, match="attempt 3"):
        policy.call(flaky)
    assert flaky.calls == 3


@pytest.mark.integration
@pytest.mark.parametrize("error", [ValidationError("bad input"), CircuitOpenError("open"), RuntimeError("bug")])
def test_retry_policy_does_not_retry_permanent_errors(error: Exception):
    flaky = FlakyCall([error])
    policy = RetryPolicy(max_attempts=5, base_delay=0.0, max_delay=0.0, jitter=0.0, sleep_fn=lambda _: None)

    with pytest.raises(type(error)):
        policy.call(flaky)
    assert flaky.calls == 1
    assert is_retryable(error) is False


@pytest.mark.integration
def test_guard_stops_retrying_once_circuit_opens():
    clock = FakeClock()
    guard = NetworkGuard(
        retry_policy=RetryPolicy(max_attempts=5, base_delay=0.0, max_delay=0.0, jitter=0.0, sleep_fn=clock.sleep),
        bucket=TokenBucket(rate_per_second=1000.0, capacity=10, sleep_fn=clock.sleep, clock_fn=clock),
        breaker=CircuitBreaker("svc", failure_threshold=2, reset_timeout=60.0, clock_fn=clock),
    )
    flaky = FlakyCall([TransientIOError("502")] * 5)

    with pytest.raises(CircuitOpenError):
        guard.call(flaky, operation="upload_file")
    assert flaky.calls == 2
    assert guard.breaker.state == CircuitState.OPEN


@pytest.mark.integration
def test_guard_from_config_recovers_from_transient_failure(guard):
    flaky = FlakyCall([TransientIOError("429")], result="tx-1")

    assert guard.call(flaky, operation="upload_file") == "tx-1"
    assert flaky.calls == 2
    assert guard.breaker.state == CircuitState.CLOSED
