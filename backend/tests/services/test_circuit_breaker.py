# tests/services/test_circuit_breaker.py
"""
Tests for the per-provider circuit breaker.

Time is driven by a fake clock, so recovery is tested without sleeping.
"""

import threading

import pytest

from valuation_engine.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpen,
    CircuitState,
)
from valuation_engine.services.exceptions import ProviderTransientError, SymbolNotFoundError


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def trip(breaker: CircuitBreaker, times: int) -> None:
    for i in range(times):
        with pytest.raises(ProviderTransientError):
            with breaker:
                raise ProviderTransientError(breaker.name, f"failure {i}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestCircuitBreakerInit:
    """Tests for circuit breaker initialization."""

    def test_default_values(self):
        """Should initialize closed with default values."""
        breaker = CircuitBreaker(name="yahoo")

        assert breaker.name == "yahoo"
        assert breaker.failure_threshold == 5
        assert breaker.recovery_timeout == 60.0
        assert breaker.half_open_max_calls == 1
        assert breaker.state == CircuitState.CLOSED

    def test_invalid_failure_threshold(self):
        with pytest.raises(ValueError, match="failure_threshold must be at least 1"):
            CircuitBreaker(name="test", failure_threshold=0)

    def test_invalid_recovery_timeout(self):
        with pytest.raises(ValueError, match="recovery_timeout cannot be negative"):
            CircuitBreaker(name="test", recovery_timeout=-1)

    def test_invalid_half_open_max_calls(self):
        with pytest.raises(ValueError, match="half_open_max_calls must be at least 1"):
            CircuitBreaker(name="test", half_open_max_calls=0)


class TestClosedState:
    """Tests for circuit breaker in closed state."""

    def test_allows_calls_when_closed(self):
        breaker = CircuitBreaker(name="test", failure_threshold=3)
        call_count = 0

        for _ in range(10):
            with breaker:
                call_count += 1

        assert call_count == 10
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.successful_calls == 10

    def test_opens_after_threshold_failures(self, clock):
        breaker = CircuitBreaker(name="test", failure_threshold=3, clock=clock)

        trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

        trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    def test_success_resets_consecutive_failures(self, clock):
        """Only consecutive failures count towards the threshold."""
        breaker = CircuitBreaker(name="test", failure_threshold=3, clock=clock)

        trip(breaker, 2)
        with breaker:
            pass
        trip(breaker, 2)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.failed_calls == 4

    def test_unknown_symbol_does_not_trip_circuit(self):
        """An unknown symbol says nothing about provider health."""
        breaker = CircuitBreaker(
            name="yahoo",
            failure_threshold=2,
            excluded_exceptions=(SymbolNotFoundError,),
        )

        for _ in range(5):
            with pytest.raises(SymbolNotFoundError):
                with breaker:
                    raise SymbolNotFoundError("NOPE", "yahoo")

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.successful_calls == 5
        assert breaker.stats.failed_calls == 0


class TestOpenState:
    """Tests for circuit breaker in open state."""

    def test_rejects_calls_when_open(self, clock):
        breaker = CircuitBreaker(name="yahoo", failure_threshold=2, recovery_timeout=60, clock=clock)
        trip(breaker, 2)

        with pytest.raises(CircuitBreakerOpen) as exc_info:
            with breaker:
                pytest.fail("call must not run while open")

        assert exc_info.value.breaker_name == "yahoo"
        assert exc_info.value.time_remaining == pytest.approx(60)
        assert breaker.stats.rejected_calls == 1

    def test_transitions_to_half_open_after_timeout(self, clock):
        breaker = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=30, clock=clock)
        trip(breaker, 1)

        clock.advance(29)
        assert breaker.state == CircuitState.OPEN

        clock.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN


class TestHalfOpenState:
    """Tests for circuit breaker in half-open state."""

    def test_closes_on_successful_probe(self, clock):
        breaker = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=10, clock=clock)
        trip(breaker, 1)
        clock.advance(10)

        with breaker:
            pass

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.state_changes == 3  # CLOSED->OPEN->HALF_OPEN->CLOSED

    def test_reopens_on_failed_probe(self, clock):
        breaker = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=10, clock=clock)
        trip(breaker, 1)
        clock.advance(10)

        trip(breaker, 1)

        assert breaker.state == CircuitState.OPEN

    def test_limits_probe_calls(self, clock):
        """Only half_open_max_calls probes are admitted until one finishes."""
        breaker = CircuitBreaker(
            name="test", failure_threshold=1, recovery_timeout=10, half_open_max_calls=1, clock=clock
        )
        trip(breaker, 1)
        clock.advance(10)

        probe = breaker.__enter__()
        try:
            with pytest.raises(CircuitBreakerOpen):
                with breaker:
                    pass
        finally:
            probe.__exit__(None, None, None)

        assert breaker.state == CircuitState.CLOSED


class TestManualControl:
    def test_manual_reset(self, clock):
        breaker = CircuitBreaker(name="test", failure_threshold=1, clock=clock)
        trip(breaker, 1)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED

    def test_force_open(self):
        breaker = CircuitBreaker(name="test")

        breaker.force_open()

        assert breaker.state == CircuitState.OPEN


class TestSnapshot:
    def test_snapshot_reports_state_and_counters(self, clock):
        breaker = CircuitBreaker(name="frankfurter", failure_threshold=2, clock=clock)
        with breaker:
            pass
        trip(breaker, 2)
        with pytest.raises(CircuitBreakerOpen):
            with breaker:
                pass

        snapshot = breaker.snapshot()

        assert snapshot == {
            "name": "frankfurter",
            "state": "open",
            "failure_count": 2,
            "total_calls": 4,
            "failed_calls": 2,
            "rejected_calls": 1,
        }

    def test_stats_are_a_copy(self):
        breaker = CircuitBreaker(name="test")
        with breaker:
            pass

        stats = breaker.stats
        stats.total_calls = 999

        assert breaker.stats.total_calls == 1


class TestThreadSafety:
    def test_concurrent_failures_open_once(self):
        breaker = CircuitBreaker(name="test", failure_threshold=5, recovery_timeout=60)

        def worker():
            for _ in range(10):
                try:
                    with breaker:
                        raise ProviderTransientError("test", "boom")
                except (ProviderTransientError, CircuitBreakerOpen):
                    pass

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert breaker.state == CircuitState.OPEN
        stats = breaker.stats
        assert stats.failed_calls + stats.rejected_calls == 40
        assert stats.state_changes == 1
