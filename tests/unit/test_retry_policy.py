from __future__ import annotations

import threading

import pytest

from triageq.infrastructure.retry import AdapterError, CircuitBreaker, RetryPolicy, run_with_timeout
from triageq.observability.telemetry import counter


class Flaky:
    """Fails ``failures`` times with ``error`` before returning ``value``."""

    def __init__(self, failures: int, error: Exception, value: str = "ok"):
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


def _policy(**kwargs) -> RetryPolicy:
    sleeps: list[float] = []
    defaults = {"stage": "test", "timeout_seconds": None, "sleep_fn": sleeps.append, "jitter": 0.0}
    defaults.update(kwargs)
    policy = RetryPolicy(**defaults)
    policy.sleeps = sleeps  # type: ignore[attr-defined]
    return policy


def test_retry_succeeds_after_transient_failures():
    func = Flaky(2, AdapterError("unavailable", status_code=503))
    policy = _policy(max_attempts=3, base_delay=0.5)

    assert policy.execute(func) == "ok"
    assert func.calls == 3
    assert policy.sleeps == [0.5, 1.0]
    assert counter("retry_count", 0) == 2


def test_retry_gives_up_after_max_attempts():
    func = Flaky(5, ConnectionError("reset"))
    policy = _policy(max_attempts=3)

    with pytest.raises(ConnectionError):
        policy.execute(func)
    assert func.calls == 3


@pytest.mark.parametrize("status_code", [400, 401, 403, 404])
def test_client_errors_are_not_retried(status_code):
    func = Flaky(1, AdapterError("bad request", status_code=status_code))
    policy = _policy(max_attempts=3)

    with pytest.raises(AdapterError):
        policy.execute(func)
    assert func.calls == 1


@pytest.mark.parametrize("status_code", [None, 429, 500, 502])
def test_rate_limits_and_server_errors_are_retried(status_code):
    func = Flaky(1, AdapterError("try again", status_code=status_code))
    assert _policy(max_attempts=2).execute(func) == "ok"
    assert func.calls == 2


def test_non_retryable_exceptions_propagate_immediately():
    func = Flaky(1, KeyError("nope"))
    policy = _policy(max_attempts=3, non_retryable=(KeyError,))

    with pytest.raises(KeyError):
        policy.execute(func)
    assert func.calls == 1


def test_backoff_is_capped_at_max_delay():
    func = Flaky(4, TimeoutError("slow"))
    policy = _policy(max_attempts=5, base_delay=1.0, max_delay=2.5)

    policy.execute(func)
    assert policy.sleeps == [1.0, 2.0, 2.5, 2.5]


def test_run_with_timeout_returns_result():
    assert run_with_timeout(lambda x: x * 2, 1.0, 21) == 42


def test_run_with_timeout_without_timeout_calls_directly():
    caller = threading.get_ident()
    assert run_with_timeout(threading.get_ident, None) == caller


def test_run_with_timeout_raises_timeout_error():
    release = threading.Event()
    try:
        with pytest.raises(TimeoutError):
            run_with_timeout(release.wait, 0.05, 5)
    finally:
        release.set()


def test_policy_times_out_each_attempt():
    release = threading.Event()
    policy = _policy(max_attempts=2, timeout_seconds=0.05)
    try:
        with pytest.raises(TimeoutError):
            policy.execute(release.wait, 5)
    finally:
        release.set()
    assert len(policy.sleeps) == 1


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_circuit_opens_at_fail_max():
    breaker = CircuitBreaker(stage="gmail.fetch", fail_max=3, reset_timeout=30.0, clock=FakeClock())
    for _ in range(2):
        breaker.record_failure()
    assert breaker.state == "closed"
    assert breaker.allow_request()

    breaker.record_failure()
    assert breaker.state == "open"
    assert not breaker.allow_request()


def test_circuit_half_opens_after_reset_timeout():
    clock = FakeClock()
    breaker = CircuitBreaker(stage="gmail.fetch", fail_max=1, reset_timeout=30.0, clock=clock)
    breaker.record_failure()
    assert not breaker.allow_request()

    clock.now += 31
    assert breaker.allow_request()
    assert breaker.state == "half_open"

    breaker.record_success()
    assert breaker.state == "closed"


def test_failure_while_half_open_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(stage="gmail.fetch", fail_max=3, reset_timeout=10.0, clock=clock)
    for _ in range(3):
        breaker.record_failure()

    clock.now += 11
    assert breaker.allow_request()
    breaker.record_failure()
    assert breaker.state == "open"
    assert not breaker.allow_request()


def test_success_resets_failure_count():
    breaker = CircuitBreaker(stage="gmail.fetch", fail_max=2, clock=FakeClock())
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.state == "closed"
