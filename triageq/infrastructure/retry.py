"""
Retry, timeout and circuit-breaker primitives shared by the provider adapters
(Gmail fetch, Expo push) and the workflow's per-stage retries.
"""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import TypeVar

from triageq.observability.telemetry import counter, log_event

T = TypeVar("T")


class AdapterError(RuntimeError):
    """Provider call failed; ``status_code`` is the HTTP status when there was one."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        # No status means the request never completed (network, timeout)
        code = self.status_code
        return code is None or code == 429 or 500 <= code < 600


def run_with_timeout(func: Callable[..., T], timeout_seconds: float | None, *args, **kwargs) -> T:
    """
    Call ``func`` on a helper thread, raising ``TimeoutError`` after ``timeout_seconds``.

    A timed-out call keeps running on its abandoned thread; only the caller
    stops waiting. ``None`` or a non-positive timeout calls inline.

    Side Effects:
        - Spawns one short-lived worker thread per call
    """
    if not timeout_seconds or timeout_seconds <= 0:
        return func(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="timeout")
    future = executor.submit(func, *args, **kwargs)
    executor.shutdown(wait=False)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as exc:
        future.cancel()
        raise TimeoutError(f"{getattr(func, '__name__', 'call')} exceeded {timeout_seconds}s") from exc


@dataclass
class RetryPolicy:
    """Bounded retries with capped exponential backoff for one named stage.

    Every attempt runs under ``timeout_seconds``. Exceptions listed in
    ``non_retryable`` and AdapterErrors with a client-error status are raised
    on the attempt that produced them.
    """

    stage: str
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    jitter: float = 0.1
    timeout_seconds: float | None = 10.0
    sleep_fn: Callable[[float], None] = time.sleep
    non_retryable: tuple[type[BaseException], ...] = ()

    def delay_for(self, attempt: int) -> float:
        """Backoff after the ``attempt``-th failure (1-based)."""
        delay = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        return delay + random.uniform(0, self.jitter) if self.jitter else delay

    def execute(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Run ``func`` until it succeeds or ``max_attempts`` is used up.

        Side Effects:
            - Sleeps between attempts via ``sleep_fn``
            - Increments the ``retry_count`` counter per retry
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return run_with_timeout(func, self.timeout_seconds, *args, **kwargs)
            except self.non_retryable:
                raise
            except Exception as exc:
                status = getattr(exc, "status_code", None)
                log_event(
                    "stage_error", stage=self.stage, error=str(exc), status=status, attempt=attempt
                )
                if isinstance(exc, AdapterError) and not exc.retryable:
                    raise
                if attempt == self.max_attempts:
                    raise

            delay = self.delay_for(attempt)
            counter("retry_count")
            log_event("retry_scheduled", stage=self.stage, attempt=attempt, delay=round(delay, 3))
            self.sleep_fn(delay)

        raise RuntimeError(f"{self.stage}: max_attempts must be at least 1")


@dataclass
class CircuitBreaker:
    """closed -> open after ``fail_max`` consecutive failures -> half_open after
    ``reset_timeout`` seconds; one failure in half_open re-opens it."""

    stage: str
    fail_max: int = 5
    reset_timeout: float = 60.0
    clock: Callable[[], float] = time.time
    _failures: int = field(default=0, init=False)
    _state: str = field(default="closed", init=False)
    _opened_at: float = field(default=0.0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def state(self) -> str:
        return self._state

    def allow_request(self) -> bool:
        with self._lock:
            if self._state != "open":
                return True
            if self.clock() - self._opened_at >= self.reset_timeout:
                self._state = "half_open"
                self._failures = 0
                return True
        counter(f"circuit.{self.stage}.rejected")
        return False

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = "closed"

    def record_failure(self) -> None:
        """
        Side Effects:
            - Opens the breaker and logs ``circuit.opened`` when the threshold is hit
        """
        with self._lock:
            self._failures += 1
            if self._state != "half_open" and self._failures < self.fail_max:
                return
            self._state = "open"
            self._opened_at = self.clock()
            failures = self._failures
        log_event("circuit.opened", stage=self.stage, failures=failures)
