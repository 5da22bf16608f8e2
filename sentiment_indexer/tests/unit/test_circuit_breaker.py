"""
Unit tests for the per-source circuit breaker.
"""

import pytest

from sentiment_indexer.connectors.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from sentiment_indexer.core.types import CircuitState


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    config = CircuitBreakerConfig(failure_ratio=0.5, window_seconds=60.0, min_calls=4, cooldown_seconds=30.0)
    return CircuitBreaker(config, clock=clock, name="test")


def trip(breaker: CircuitBreaker) -> None:
    for _ in range(4):
        breaker.record_failure()


class TestClosedState:
    """Tests for transitions out of CLOSED."""

    def test_starts_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request()

    def test_does_not_open_below_min_calls(self, breaker):
        """Three failures with min_calls=4 keep the circuit closed."""
        for _ in range(3):
            breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    def test_opens_when_ratio_exceeds_threshold(self, breaker):
        trip(breaker)
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    def test_ratio_equal_to_threshold_stays_closed(self, breaker):
        """Opening needs a ratio strictly above the threshold."""
        breaker.record_success()
        breaker.record_success()
        breaker.record_failure()
        breaker.record_failure()

        assert breaker.failure_ratio == pytest.approx(0.5)
        assert breaker.state == CircuitState.CLOSED

    def test_old_outcomes_leave_the_window(self, breaker, clock):
        """Failures older than the window do not count."""
        for _ in range(3):
            breaker.record_failure()
        clock.now += 61.0
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_ratio == pytest.approx(1.0)


class TestRecovery:
    """Tests for OPEN -> HALF_OPEN -> CLOSED/OPEN."""

    def test_half_open_after_cooldown(self, breaker, clock):
        trip(breaker)
        clock.now += 29.0
        assert not breaker.allow_request()

        clock.now += 1.0
        assert breaker.allow_request()
        assert breaker.state == CircuitState.HALF_OPEN

    def test_half_open_allows_single_probe(self, breaker, clock):
        trip(breaker)
        clock.now += 30.0

        assert breaker.allow_request()
        assert not breaker.allow_request()

    def test_probe_success_closes(self, breaker, clock):
        trip(breaker)
        clock.now += 30.0
        breaker.allow_request()

        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_ratio == 0.0

    def test_probe_failure_reopens(self, breaker, clock):
        trip(breaker)
        clock.now += 30.0
        breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

        clock.now += 30.0
        assert breaker.allow_request()

    def test_released_probe_can_be_retaken(self, breaker, clock):
        """An uncounted probe outcome frees the slot without changing state."""
        trip(breaker)
        clock.now += 30.0
        breaker.allow_request()

        breaker.release_probe()

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()
