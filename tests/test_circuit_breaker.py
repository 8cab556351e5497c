"""
Unit tests for circuit breaker state transitions.

Tests cover:
1. CLOSED -> OPEN after failure_threshold failures
2. Leaky-bucket failure counting while CLOSED
3. OPEN -> HALF_OPEN after recovery_timeout (checked in allow_request)
4. HALF_OPEN -> CLOSED after success_threshold successes
5. HALF_OPEN -> OPEN on any failure
6. Notifications, reset and persisted state
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from billing_resilience.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    DatabaseCircuitStateStore,
    set_notification_callback,
)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc))


def open_breaker(clock, **kwargs) -> CircuitBreaker:
    cb = CircuitBreaker(name="test", failure_threshold=1, clock=clock, **kwargs)
    cb.record_failure()
    assert cb.state == CircuitState.OPEN
    return cb


class TestInitialState:
    """Tests for a freshly created breaker."""

    def test_starts_closed(self, clock):
        cb = CircuitBreaker(name="test", clock=clock)
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert cb.success_count == 0
        assert cb.allow_request() is True

    def test_half_open_max_calls_defaults_to_success_threshold(self):
        cb = CircuitBreaker(name="test", success_threshold=4)
        assert cb.half_open_max_calls == 4


class TestStateTransitions:
    """Tests for circuit breaker state machine transitions."""

    def test_closed_to_open_after_failure_threshold(self, clock):
        """Test CLOSED -> OPEN after failure_threshold failures."""
        cb = CircuitBreaker(name="test", failure_threshold=3, clock=clock)

        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED

        cb.record_failure()
        assert cb.state == CircuitState.OPEN
        assert cb.allow_request() is False

    def test_success_leaks_one_failure(self, clock):
        """Each success while CLOSED removes one failure from the bucket."""
        cb = CircuitBreaker(name="test", failure_threshold=3, clock=clock)

        cb.record_failure()
        cb.record_failure()
        cb.record_success()
        assert cb.failure_count == 1

        # Two more failures reach the threshold again
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_success_never_drives_failure_count_negative(self, clock):
        cb = CircuitBreaker(name="test", clock=clock)
        cb.record_success()
        cb.record_success()
        assert cb.failure_count == 0

    def test_stays_open_before_recovery_timeout(self, clock):
        cb = open_breaker(clock, recovery_timeout=60.0)

        clock.advance(59)
        assert cb.allow_request() is False
        assert cb.state == CircuitState.OPEN

    def test_open_to_half_open_at_recovery_timeout(self, clock):
        """Test OPEN -> HALF_OPEN once exactly recovery_timeout has elapsed."""
        cb = open_breaker(clock, recovery_timeout=60.0)

        clock.advance(60)
        assert cb.allow_request() is True
        assert cb.state == CircuitState.HALF_OPEN

    def test_half_open_to_closed_after_success_threshold(self, clock):
        """Test HALF_OPEN -> CLOSED after success_threshold successes."""
        cb = open_breaker(clock, success_threshold=2)
        clock.advance(61)
        cb.allow_request()

        cb.record_success()
        assert cb.state == CircuitState.HALF_OPEN
        assert cb.success_count == 1

        cb.record_success()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert cb.success_count == 0

    def test_half_open_to_open_on_failure(self, clock):
        """Test HALF_OPEN -> OPEN on any failure during recovery."""
        cb = open_breaker(clock)
        clock.advance(61)
        cb.allow_request()
        cb.record_success()

        cb.record_failure()
        assert cb.state == CircuitState.OPEN
        assert cb.success_count == 0

    def test_half_open_limits_probe_calls(self, clock):
        cb = open_breaker(clock, success_threshold=2)
        clock.advance(61)

        assert cb.allow_request() is True
        assert cb.allow_request() is True
        assert cb.allow_request() is False
        assert cb.state == CircuitState.HALF_OPEN

    def test_reopened_circuit_waits_full_timeout_again(self, clock):
        cb = open_breaker(clock, recovery_timeout=60.0)
        clock.advance(60)
        cb.allow_request()
        cb.record_failure()

        clock.advance(30)
        assert cb.allow_request() is False


class TestRetryIn:
    """Tests for retry_in()."""

    def test_none_when_closed(self, clock):
        cb = CircuitBreaker(name="test", clock=clock)
        assert cb.retry_in() is None

    def test_counts_down_while_open(self, clock):
        cb = open_breaker(clock, recovery_timeout=60.0)
        clock.advance(15)
        assert cb.retry_in() == pytest.approx(45.0)

        clock.advance(100)
        assert cb.retry_in() == 0.0


class TestStatusAndReset:
    """Tests for get_status() and reset()."""

    def test_get_status(self, clock):
        cb = CircuitBreaker(name="test", failure_threshold=5, clock=clock)
        cb.record_failure()
        clock.advance(10)

        status = cb.get_status()
        assert status["state"] == "closed"
        assert status["failure_count"] == 1
        assert status["success_count"] == 0
        assert status["is_healthy"] is True
        assert status["time_in_state"] == pytest.approx(10.0)
        assert status["last_failure_at"] == "2024-06-01T12:00:00+00:00"

    def test_open_status_is_unhealthy(self, clock):
        cb = open_breaker(clock)
        status = cb.get_status()
        assert status["state"] == "open"
        assert status["is_healthy"] is False

    def test_reset_closes_open_circuit(self, clock):
        cb = open_breaker(clock)

        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert cb.allow_request() is True
        assert cb.get_status()["last_failure_at"] is None


class TestNotifications:
    """Tests for the global state-change callback."""

    def test_callback_receives_transitions(self, clock):
        callback = MagicMock()
        set_notification_callback(callback)

        cb = open_breaker(clock)
        clock.advance(61)
        cb.allow_request()

        assert callback.call_args_list[0].args == ("test", "closed", "open")
        assert callback.call_args_list[1].args == ("test", "open", "half_open")

    def test_callback_not_called_without_transition(self, clock):
        callback = MagicMock()
        set_notification_callback(callback)

        cb = CircuitBreaker(name="test", failure_threshold=5, clock=clock)
        cb.record_failure()
        cb.record_success()

        callback.assert_not_called()

    def test_failing_callback_does_not_break_breaker(self, clock):
        set_notification_callback(MagicMock(side_effect=RuntimeError("pager down")))

        cb = open_breaker(clock)
        assert cb.state == CircuitState.OPEN


class TestRegistry:
    """Tests for CircuitBreakerRegistry."""

    def test_get_returns_same_instance(self):
        first = CircuitBreakerRegistry.get("billing", failure_threshold=3)
        second = CircuitBreakerRegistry.get("billing")
        assert first is second
        assert first.failure_threshold == 3

    def test_get_all_states(self):
        CircuitBreakerRegistry.get("a")
        b = CircuitBreakerRegistry.get("b", failure_threshold=1)
        b.record_failure()

        assert CircuitBreakerRegistry.get_all_states() == {"a": "closed", "b": "open"}


class TestPersistence:
    """Tests for breaker state shared through the database."""

    def test_state_survives_restart(self, test_engine, clock):
        store = DatabaseCircuitStateStore(test_engine)
        cb = CircuitBreaker(name="billing_data", failure_threshold=2, store=store, clock=clock)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

        restored = CircuitBreaker(name="billing_data", failure_threshold=2, store=store, clock=clock)
        assert restored.state == CircuitState.OPEN
        assert restored.failure_count == 2

        # Restored breaker still honours the recovery timeout
        clock.advance(61)
        assert restored.allow_request() is True
        assert restored.state == CircuitState.HALF_OPEN

    def test_unknown_name_starts_closed(self, test_engine):
        store = DatabaseCircuitStateStore(test_engine)
        assert store.load("missing") is None

        cb = CircuitBreaker(name="missing", store=store)
        assert cb.state == CircuitState.CLOSED

    def test_snapshot_saved_on_change(self, clock):
        store = MagicMock()
        store.load.return_value = None

        cb = CircuitBreaker(name="test", failure_threshold=1, store=store, clock=clock)
        cb.record_failure()

        assert cb.state == CircuitState.OPEN
        saved_name, snapshot = store.save.call_args.args
        assert saved_name == "test"
        assert snapshot["state"] == "open"
        assert snapshot["failure_count"] == 1
