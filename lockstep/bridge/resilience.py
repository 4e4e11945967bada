"""
Resilience primitives for ledger RPC.

Circuit breaker and retry policy used around every read the pipeline makes
against a ledger. Writes are not retried here: a transaction that may or may not
have landed is retried by the work queue, after the relay has re-read on-chain
state, never blindly.

    ┌────────────────────────────────────────────────────────────┐
    │  RetryPolicy.execute(fn)                                   │
    │    attempt 1 ── ChainUnavailable ──▶ sleep(backoff) ──┐    │
    │    attempt 2 ◀────────────────────────────────────────┘    │
    │    ...                                                     │
    │    attempt N ── fails ──▶ RetryExhaustedError              │
    │                                                            │
    │  CircuitBreaker                                            │
    │    CLOSED ── N consecutive failures ──▶ OPEN               │
    │    OPEN ── timeout ──▶ HALF_OPEN ── successes ──▶ CLOSED   │
    └────────────────────────────────────────────────────────────┘

Usage:

    breaker = CircuitBreaker("ethereum-rpc", failure_threshold=5)
    retry = RetryPolicy(max_attempts=3, retryable_exceptions=(ChainUnavailable,))
    head = retry.execute(lambda: breaker.call(adapter.get_block_number))

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import functools
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


# ════════════════════════════════════════════════════════════════════════════
# CIRCUIT BREAKER
# ════════════════════════════════════════════════════════════════════════════


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = auto()      # calls pass through
    OPEN = auto()        # calls fail fast
    HALF_OPEN = auto()   # probing for recovery


@dataclass
class CircuitBreakerMetrics:
    """Circuit breaker counters."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_transitions: int = 0
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_failure_time: Optional[datetime] = None


class CircuitBreakerError(Exception):
    """Raised when a call is rejected because the circuit is open."""
    def __init__(self, breaker_name: str, state: CircuitState):
        self.breaker_name = breaker_name
        self.state = state
        super().__init__(f"Circuit breaker '{breaker_name}' is {state.name}")


class CircuitBreaker:
    """
    Fails fast while a ledger endpoint keeps failing.

    Only exceptions listed in ``counted_exceptions`` trip the breaker, so a
    deterministic revert from a healthy node never opens the circuit.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout_seconds: float = 30.0,
        half_open_max_calls: int = 1,
        counted_exceptions: tuple = (Exception,),
        on_state_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout_seconds = timeout_seconds
        self.half_open_max_calls = half_open_max_calls
        self.counted_exceptions = counted_exceptions
        self._on_state_change = on_state_change
        self._state = CircuitState.CLOSED
        self._metrics = CircuitBreakerMetrics()
        self._opened_at = 0.0
        self._half_open_calls = 0
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._check_state_timeout()
            return self._state

    @property
    def metrics(self) -> CircuitBreakerMetrics:
        with self._lock:
            return CircuitBreakerMetrics(**vars(self._metrics))

    def _check_state_timeout(self) -> None:
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._opened_at >= self.timeout_seconds:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._metrics.state_transitions += 1
        if new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
            self._metrics.consecutive_successes = 0
        elif new_state == CircuitState.CLOSED:
            self._metrics.consecutive_failures = 0
        if self._on_state_change:
            self._on_state_change(old_state, new_state)

    def _acquire(self) -> bool:
        with self._lock:
            self._check_state_timeout()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN and self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                return True
            self._metrics.rejected_calls += 1
            return False

    def _record_success(self) -> None:
        with self._lock:
            self._metrics.total_calls += 1
            self._metrics.successful_calls += 1
            self._metrics.consecutive_successes += 1
            self._metrics.consecutive_failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls = max(0, self._half_open_calls - 1)
                if self._metrics.consecutive_successes >= self.success_threshold:
                    self._transition_to(CircuitState.CLOSED)

    def _record_failure(self, exc: BaseException) -> None:
        with self._lock:
            self._metrics.total_calls += 1
            if not isinstance(exc, self.counted_exceptions):
                # Not a health signal; in half-open, free the trial slot.
                if self._state == CircuitState.HALF_OPEN:
                    self._half_open_calls = max(0, self._half_open_calls - 1)
                return
            self._metrics.failed_calls += 1
            self._metrics.consecutive_failures += 1
            self._metrics.consecutive_successes = 0
            self._metrics.last_failure_time = datetime.now(timezone.utc)
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and self._metrics.consecutive_failures >= self.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Run ``func`` under breaker protection."""
        if not self._acquire():
            raise CircuitBreakerError(self.name, self._state)
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._record_failure(e)
            raise
        self._record_success()
        return result

    def __enter__(self):
        if not self._acquire():
            raise CircuitBreakerError(self.name, self._state)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self._record_failure(exc_val)
        else:
            self._record_success()
        return False

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.call(func, *args, **kwargs)
        return wrapper

    def reset(self) -> None:
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._metrics = CircuitBreakerMetrics()


# ════════════════════════════════════════════════════════════════════════════
# RETRY POLICY
# ════════════════════════════════════════════════════════════════════════════


class BackoffStrategy(Enum):
    """Retry backoff strategies."""
    FIXED = auto()
    LINEAR = auto()
    EXPONENTIAL = auto()
    EXPONENTIAL_JITTER = auto()


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


def backoff_delay(
    attempt: int,
    base_delay_seconds: float,
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL,
    max_delay_seconds: float = 3600.0,
    jitter_factor: float = 0.0,
) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    attempt = max(1, attempt)
    if strategy == BackoffStrategy.FIXED:
        delay = base_delay_seconds
    elif strategy == BackoffStrategy.LINEAR:
        delay = base_delay_seconds * attempt
    else:
        delay = base_delay_seconds * (2 ** (attempt - 1))
        if strategy == BackoffStrategy.EXPONENTIAL_JITTER and jitter_factor > 0:
            delay += random.uniform(0, jitter_factor * delay)
    return min(delay, max_delay_seconds)


class RetryPolicy:
    """
    Bounded retry with backoff.

    Exceptions outside ``retryable_exceptions`` propagate immediately.
    ``sleep`` is injectable so callers can wait on a stop event instead.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER,
        jitter_factor: float = 0.5,
        retryable_exceptions: tuple = (Exception,),
        non_retryable_exceptions: tuple = (),
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.backoff_strategy = backoff_strategy
        self.jitter_factor = jitter_factor
        self.retryable_exceptions = retryable_exceptions
        self.non_retryable_exceptions = non_retryable_exceptions
        self._on_retry = on_retry
        self._sleep = sleep

    def _calculate_delay(self, attempt: int) -> float:
        return backoff_delay(
            attempt,
            self.base_delay_seconds,
            self.backoff_strategy,
            self.max_delay_seconds,
            self.jitter_factor,
        )

    def _is_retryable(self, exc: Exception) -> bool:
        if isinstance(exc, self.non_retryable_exceptions):
            return False
        return isinstance(exc, self.retryable_exceptions)

    def execute(self, func: Callable[[], T]) -> T:
        last_exception: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func()
            except Exception as e:
                last_exception = e
                if not self._is_retryable(e):
                    raise
                if attempt < self.max_attempts:
                    delay = self._calculate_delay(attempt)
                    if self._on_retry:
                        self._on_retry(attempt, e, delay)
                    self._sleep(delay)
        raise RetryExhaustedError(self.max_attempts, last_exception)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper
