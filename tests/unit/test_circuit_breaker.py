"""
Unit tests for the circuit breaker.
"""

import logging
import threading

import pytest

from workflow_engine.core import CircuitBreaker
from workflow_engine.domain import CircuitOpenError, CircuitState


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _boom():
    raise RuntimeError("boom")


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker("database", threshold=3, timeout=30.0, clock=clock)

    def _trip(self, breaker):
        for _ in range(breaker.threshold):
            with pytest.raises(RuntimeError):
                breaker.execute(_boom)

    def test_passes_results_through(self, breaker):
        """Test that a closed breaker returns the action's result."""
        assert breaker.execute(lambda: 42) == 42
        assert breaker.state == CircuitState.CLOSED

    def test_opens_after_threshold(self, breaker):
        """Test that consecutive failures open the breaker."""
        self._trip(breaker)

        state = breaker.get_state()
        assert state.state == CircuitState.OPEN
        assert state.failure_count == 3

    def test_failures_below_threshold_stay_closed(self, breaker):
        """Test that a success resets the failure count."""
        for _ in range(2):
            with pytest.raises(RuntimeError):
                breaker.execute(_boom)
        breaker.execute(lambda: None)

        assert breaker.get_state().failure_count == 0
        assert breaker.state == CircuitState.CLOSED

    def test_open_breaker_rejects_without_calling(self, breaker, clock):
        """Test that an open breaker fails fast."""
        self._trip(breaker)
        calls = []
        clock.now += 10

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.execute(lambda: calls.append(1))

        assert calls == []
        assert exc_info.value.breaker_name == "database"
        assert exc_info.value.retry_after == pytest.approx(20.0)

    def test_rejects_at_exact_timeout(self, breaker, clock):
        """Test that the cooldown is inclusive."""
        self._trip(breaker)
        clock.now += 30.0

        with pytest.raises(CircuitOpenError):
            breaker.execute(lambda: None)

    def test_half_open_success_closes(self, breaker, clock):
        """Test that a successful trial call closes the breaker."""
        self._trip(breaker)
        clock.now += 31.0

        assert breaker.execute(lambda: "ok") == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_state().failure_count == 0

    def test_half_open_failure_reopens(self, breaker, clock):
        """Test that a failed trial call re-opens the breaker."""
        self._trip(breaker)
        clock.now += 31.0

        with pytest.raises(RuntimeError):
            breaker.execute(_boom)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.execute(lambda: None)

    def test_reset(self, breaker):
        """Test forcing the breaker closed."""
        self._trip(breaker)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.execute(lambda: 1) == 1

    def test_state_to_dict(self, breaker):
        """Test breaker state serialization."""
        data = breaker.get_state().to_dict()

        assert data == {
            "name": "database",
            "state": "CLOSED",
            "failure_count": 0,
            "last_failure_time": None,
            "threshold": 3,
            "timeout": 30.0,
        }

    def test_invalid_threshold(self):
        """Test that a threshold below one is rejected."""
        with pytest.raises(ValueError):
            CircuitBreaker("x", threshold=0)

    def test_concurrent_failures_open_once(self, breaker, caplog):
        """Test that failures from many threads are all counted and open the breaker once."""
        workers = 20
        barrier = threading.Barrier(workers, timeout=5)
        errors = []

        def failing_action():
            # Every thread is past the closed-state check before any fails
            barrier.wait()
            raise RuntimeError("boom")

        def call():
            try:
                breaker.execute(failing_action)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=call) for _ in range(workers)]
        with caplog.at_level(logging.ERROR, logger="workflow_engine.core.circuit_breaker"):
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

        assert len(errors) == workers
        assert all(isinstance(e, RuntimeError) for e in errors)
        state = breaker.get_state()
        assert state.state == CircuitState.OPEN
        assert state.failure_count == workers
        opened = [r for r in caplog.records if "OPENED" in r.getMessage()]
        assert len(opened) == 1
