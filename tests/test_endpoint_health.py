"""Tests for endpoint health metrics, scoring and alerts."""

import pytest

from walletwatch.utils.endpoint_health import (
    AlertThresholds,
    EmaHealthScore,
    EndpointHealthTracker,
    EndpointMetrics,
    WeightedHealthScore,
    build_scoring_strategy,
)

from .conftest import ENDPOINT_A, ENDPOINT_B


@pytest.fixture
def tracker(clock):
    return EndpointHealthTracker([ENDPOINT_A, ENDPOINT_B], clock=clock)


class TestEndpointMetrics:

    def test_untested_endpoint_is_fully_successful(self):
        metrics = EndpointMetrics(endpoint=ENDPOINT_A)
        assert metrics.success_rate == 1.0
        assert metrics.total_requests == 0

    def test_latency_average_seeded_by_first_sample(self, clock):
        metrics = EndpointMetrics(endpoint=ENDPOINT_A, latency_alpha=0.5)
        metrics.record_success(100, clock())
        assert metrics.average_latency_ms == 100

        metrics.record_success(300, clock())
        assert metrics.average_latency_ms == pytest.approx(200)

    def test_failure_resets_on_success(self, clock):
        metrics = EndpointMetrics(endpoint=ENDPOINT_A)
        metrics.record_failure(clock(), error="boom")
        metrics.record_failure(clock(), rate_limited=True)
        assert metrics.consecutive_failures == 2
        assert metrics.rate_limit_hits == 1
        assert metrics.last_rate_limit_at == clock()

        metrics.record_success(50, clock())
        assert metrics.consecutive_failures == 0
        assert metrics.success_rate == pytest.approx(1 / 3)

    def test_rolling_windows(self, clock):
        metrics = EndpointMetrics(endpoint=ENDPOINT_A)
        metrics.record_success(100, clock())
        clock.advance(120)
        metrics.record_success(300, clock())

        assert metrics.window_latency("1m", clock()) == pytest.approx(300)
        assert metrics.window_latency("5m", clock()) == pytest.approx(200)

        clock.advance(1000)
        assert metrics.window_latency("15m", clock()) is None

    def test_requests_per_minute(self, clock):
        metrics = EndpointMetrics(endpoint=ENDPOINT_A)
        for _ in range(3):
            metrics.record_success(10, clock())
            clock.advance(25)
        assert metrics.requests_per_minute(clock()) == 2


class TestScoring:

    def test_weighted_score_formula(self, clock):
        metrics = EndpointMetrics(endpoint=ENDPOINT_A)
        metrics.record_success(500, clock())
        metrics.record_failure(clock(), rate_limited=True)

        # 0.4 * 0.5 + 0.3 * (1 - 0.5) + 0.3 * (1 - 0.1)
        assert WeightedHealthScore().score(metrics) == pytest.approx(0.62)

    def test_latency_term_clamped(self, clock):
        metrics = EndpointMetrics(endpoint=ENDPOINT_A)
        metrics.record_success(5000, clock())
        assert WeightedHealthScore().score(metrics) == pytest.approx(0.7)

    def test_fresh_endpoint_scores_one(self):
        assert WeightedHealthScore().score(EndpointMetrics(endpoint=ENDPOINT_A)) == pytest.approx(1.0)

    def test_ema_strategy_punishes_recent_failures(self, clock):
        metrics = EndpointMetrics(endpoint=ENDPOINT_A)
        metrics.record_success(100, clock())
        metrics.record_failure(clock())

        assert EmaHealthScore().score(metrics) < WeightedHealthScore().score(metrics)

    def test_build_scoring_strategy(self):
        assert isinstance(build_scoring_strategy("ema"), EmaHealthScore)
        with pytest.raises(ValueError):
            build_scoring_strategy("neural")


class TestEndpointHealthTracker:

    def test_metrics_created_for_every_endpoint(self, tracker):
        assert set(tracker.metrics) == {ENDPOINT_A, ENDPOINT_B}

    def test_score_reflects_failures(self, tracker):
        tracker.record_failure(ENDPOINT_A, error="timeout")
        tracker.record_success(ENDPOINT_B, 100)
        assert tracker.score(ENDPOINT_B) > tracker.score(ENDPOINT_A)

    def test_callbacks_receive_events(self, tracker):
        events = []
        tracker.register_callback(lambda event, endpoint, metrics: events.append((event, endpoint)))

        def broken(event, endpoint, metrics):
            raise RuntimeError("subscriber bug")

        tracker.register_callback(broken)
        tracker.record_failure(ENDPOINT_A, rate_limited=True)
        tracker.record_success(ENDPOINT_B, 10)

        assert events == [("rate_limited", ENDPOINT_A), ("success", ENDPOINT_B)]

    def test_check_alerts(self, clock):
        tracker = EndpointHealthTracker(
            [ENDPOINT_A, ENDPOINT_B],
            alert_thresholds=AlertThresholds(consecutive_failures=2),
            clock=clock,
        )
        tracker.record_failure(ENDPOINT_A)
        tracker.record_failure(ENDPOINT_A)
        tracker.record_success(ENDPOINT_B, 50)

        alerts = tracker.check_alerts()
        assert list(alerts) == [ENDPOINT_A]
        assert any("consecutive failures" in line for line in alerts[ENDPOINT_A])

    def test_remove_endpoint(self, tracker):
        tracker.remove_endpoint(ENDPOINT_B)
        assert ENDPOINT_B not in tracker.snapshot()
