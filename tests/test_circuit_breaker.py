"""Tests for the per-endpoint circuit breaker."""

import pytest

from walletwatch.utils.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from walletwatch.utils.errors import CircuitOpenError

from .conftest import ENDPOINT_A, FALLBACK_1


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(endpoint=ENDPOINT_A, failure_threshold=3, reset_interval=180, clock=clock)


class TestCircuitBreaker:

    def test_opens_at_threshold(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.is_open

    def test_open_circuit_rejects_until_reset(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.guard()
        assert exc_info.value.endpoint == ENDPOINT_A
        assert exc_info.value.retry_after == pytest.approx(180)

        clock.advance(179)
        with pytest.raises(CircuitOpenError):
            breaker.guard()

    def test_closes_after_reset_interval_with_zero_failures(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()

        clock.advance(180)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.current_failures == 0
        breaker.guard()

    def test_success_clears_failure_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        assert breaker.current_failures == 0

        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    def test_failures_while_open_do_not_extend_reset(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        reset_at = breaker.reset_at

        clock.advance(60)
        breaker.record_failure()
        assert breaker.reset_at == reset_at

    def test_history_records_transitions(self, breaker, clock):
        breaker.force_open()
        clock.advance(180)
        assert breaker.state == CircuitState.CLOSED

        history = breaker.get_stats()["history"]
        assert [(h["from"], h["to"]) for h in history] == [("closed", "open"), ("open", "closed")]


class TestCircuitBreakerRegistry:

    def test_class_thresholds(self, clock):
        registry = CircuitBreakerRegistry(
            failure_threshold=3, class_thresholds={"fallback": 1}, clock=clock
        )
        registry.add(ENDPOINT_A, "primary")
        registry.add(FALLBACK_1, "fallback")

        registry.record_failure(FALLBACK_1)
        registry.record_failure(ENDPOINT_A)

        assert registry.is_open(FALLBACK_1)
        assert not registry.is_open(ENDPOINT_A)
        assert registry.open_endpoints() == [FALLBACK_1]

    def test_unknown_endpoint_gets_default_breaker(self, clock):
        registry = CircuitBreakerRegistry(clock=clock)
        assert ENDPOINT_A not in registry
        registry.guard(ENDPOINT_A)
        assert ENDPOINT_A in registry
        assert registry.get(ENDPOINT_A).failure_threshold == 3
