# backend/valuation_engine/services/circuit_breaker.py
"""
Per-provider circuit breaker.

Each provider in the chain owns one breaker. After enough consecutive
failures the breaker opens and the chain skips that provider without
calling it, treating the rejection as a transient failure. After the
recovery timeout a limited number of probe calls are let through.

States:
    CLOSED    - Normal operation, calls pass through
    OPEN      - Too many failures, calls rejected immediately
    HALF_OPEN - Probing recovery, limited calls allowed

State Transitions:
    CLOSED -> OPEN: failure count reaches threshold
    OPEN -> HALF_OPEN: recovery timeout expires
    HALF_OPEN -> CLOSED: a probe call succeeds
    HALF_OPEN -> OPEN: a probe call fails

Usage:
    breaker = CircuitBreaker(name="yahoo", failure_threshold=5, recovery_timeout=60)

    with breaker:
        quote = provider.quote(instrument)
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """
    Raised when a call is rejected because the breaker is open.

    Attributes:
        breaker_name: Name of the circuit breaker (the provider name)
        time_remaining: Seconds until a probe call will be allowed
    """

    def __init__(self, breaker_name: str, time_remaining: float) -> None:
        self.breaker_name = breaker_name
        self.time_remaining = time_remaining
        super().__init__(
            f"Circuit breaker '{breaker_name}' is open. "
            f"Retry in {time_remaining:.1f} seconds."
        )


@dataclass
class CircuitBreakerStats:
    """Counters exposed through the status command and health endpoint."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None


@dataclass
class CircuitBreaker:
    """
    Thread-safe circuit breaker.

    Attributes:
        name: Identifier for this breaker (used in logs and errors)
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds to wait before probing
        half_open_max_calls: Probe calls allowed while half-open
        excluded_exceptions: Exception types that say nothing about the
            provider's health (e.g. an unknown symbol) and are not counted
        clock: Time source, replaceable in tests
    """

    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    half_open_max_calls: int = 1
    excluded_exceptions: tuple[type[Exception], ...] = field(default_factory=tuple)
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _opened_at: float = field(default=0.0, init=False)
    _half_open_calls: int = field(default=0, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False)
    _stats: CircuitBreakerStats = field(default_factory=CircuitBreakerStats, init=False)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout cannot be negative")
        if self.half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be at least 1")

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._check_recovery()
            return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        """Get a copy of current statistics."""
        with self._lock:
            return CircuitBreakerStats(**vars(self._stats))

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _check_recovery(self) -> None:
        """Move OPEN -> HALF_OPEN once the timeout passed. Caller holds the lock."""
        if self._state == CircuitState.OPEN:
            if self.clock() - self._opened_at >= self.recovery_timeout:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CircuitState.OPEN:
            self._opened_at = self.clock()
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(f"CircuitBreaker '{self.name}' state change: {old_state.value} -> {new_state.value}")

    def _record_success(self) -> None:
        self._stats.successful_calls += 1
        self._stats.last_success_time = self.clock()
        self._failure_count = 0

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.CLOSED)

    def _record_failure(self) -> None:
        self._stats.failed_calls += 1
        self._stats.last_failure_time = self.clock()

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
            return

        if self._state == CircuitState.CLOSED:
            self._failure_count += 1
            if self._failure_count >= self.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def _can_execute(self) -> bool:
        self._check_recovery()

        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.HALF_OPEN:
            if self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False

        return False

    def _time_until_recovery(self) -> float:
        remaining = self.recovery_timeout - (self.clock() - self._opened_at)
        return max(0.0, remaining)

    def __enter__(self) -> "CircuitBreaker":
        """
        Admit or reject a call.

        Raises:
            CircuitBreakerOpen: If circuit is open
        """
        with self._lock:
            self._stats.total_calls += 1

            if not self._can_execute():
                self._stats.rejected_calls += 1
                raise CircuitBreakerOpen(self.name, self._time_until_recovery())

        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any) -> bool:
        with self._lock:
            if exc_val is None:
                self._record_success()
            elif self.excluded_exceptions and isinstance(exc_val, self.excluded_exceptions):
                # The provider answered; it just had nothing for this request
                self._record_success()
            else:
                self._record_failure()

        return False

    def reset(self) -> None:
        """Manually close the breaker (operator action)."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)

    def force_open(self) -> None:
        """Manually open the breaker, e.g. during a known provider outage."""
        with self._lock:
            self._transition_to(CircuitState.OPEN)

    def snapshot(self) -> dict:
        """Serializable view for status output."""
        with self._lock:
            self._check_recovery()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "total_calls": self._stats.total_calls,
                "failed_calls": self._stats.failed_calls,
                "rejected_calls": self._stats.rejected_calls,
            }
