"""
Endpoint Health Tracker - Rolling RPC Endpoint Metrics
======================================================

Keeps outcome metrics for every configured endpoint and turns them into a
health score used by the pool manager to rank providers.

Features:
- Success/failure/rate-limit counters
- Exponential running average of latency
- Rolling latency windows (1, 5 and 15 minutes)
- Pluggable scoring strategies
- Threshold-based metric alerts
"""

import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

# Rolling window lengths in seconds
LATENCY_WINDOWS = {"1m": 60, "5m": 300, "15m": 900}


@dataclass
class EndpointMetrics:
    """Outcome metrics for one endpoint."""
    endpoint: str
    latency_alpha: float = 0.5

    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    rate_limit_hits: int = 0

    average_latency_ms: float = 0.0
    latency_observations: int = 0
    failure_ema: float = 0.0

    last_rate_limit_at: Optional[float] = None
    last_error: Optional[str] = None
    last_used_at: Optional[float] = None

    # (timestamp, latency_ms) samples, trimmed to the longest window
    latency_samples: deque = field(default_factory=lambda: deque(maxlen=5000))
    # Request timestamps for the last minute
    recent_requests: deque = field(default_factory=deque)

    @property
    def total_requests(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        """Untested endpoints count as fully successful."""
        if self.total_requests == 0:
            return 1.0
        return self.success_count / self.total_requests

    @property
    def failure_rate(self) -> float:
        return 1.0 - self.success_rate

    def _observe_latency(self, latency_ms: float, now: float):
        if self.latency_observations:
            self.average_latency_ms = (
                self.latency_alpha * latency_ms
                + (1 - self.latency_alpha) * self.average_latency_ms
            )
        else:
            self.average_latency_ms = latency_ms
        self.latency_observations += 1
        self.latency_samples.append((now, latency_ms))

    def _observe_request(self, now: float):
        self.last_used_at = now
        self.recent_requests.append(now)
        self._trim(now)

    def _trim(self, now: float):
        longest = max(LATENCY_WINDOWS.values())
        while self.latency_samples and self.latency_samples[0][0] < now - longest:
            self.latency_samples.popleft()
        while self.recent_requests and self.recent_requests[0] < now - 60:
            self.recent_requests.popleft()

    def record_success(self, latency_ms: float, now: float):
        self.success_count += 1
        self.consecutive_failures = 0
        self.failure_ema = (1 - self.latency_alpha) * self.failure_ema
        self._observe_latency(latency_ms, now)
        self._observe_request(now)

    def record_failure(
        self,
        now: float,
        latency_ms: Optional[float] = None,
        rate_limited: bool = False,
        error: Optional[str] = None,
    ):
        self.failure_count += 1
        self.consecutive_failures += 1
        self.failure_ema = self.latency_alpha + (1 - self.latency_alpha) * self.failure_ema
        self.last_error = error

        if rate_limited:
            self.rate_limit_hits += 1
            self.last_rate_limit_at = now

        if latency_ms is not None:
            self._observe_latency(latency_ms, now)
        self._observe_request(now)

    def window_latency(self, window: str, now: float) -> Optional[float]:
        """Mean latency over a rolling window, or None without samples."""
        cutoff = now - LATENCY_WINDOWS[window]
        values = [latency for ts, latency in self.latency_samples if ts >= cutoff]
        if not values:
            return None
        return sum(values) / len(values)

    def requests_per_minute(self, now: float) -> int:
        self._trim(now)
        return len(self.recent_requests)

    def rate_limited_within(self, seconds: float, now: float) -> bool:
        return self.last_rate_limit_at is not None and now - self.last_rate_limit_at < seconds

    def to_dict(self, now: Optional[float] = None) -> Dict:
        now = time.time() if now is None else now
        windows = {}
        for name in LATENCY_WINDOWS:
            value = self.window_latency(name, now)
            windows[name] = round(value, 2) if value is not None else None
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": round(self.success_rate, 4),
            "consecutive_failures": self.consecutive_failures,
            "rate_limit_hits": self.rate_limit_hits,
            "last_rate_limit_at": self.last_rate_limit_at,
            "average_latency_ms": round(self.average_latency_ms, 2),
            "latency_windows_ms": windows,
            "requests_per_minute": self.requests_per_minute(now),
            "failure_ema": round(self.failure_ema, 4),
            "last_error": self.last_error,
            "last_used_at": self.last_used_at,
        }


class HealthScoringStrategy(ABC):
    """Maps endpoint metrics to a score in [0, 1]; higher is healthier."""

    name = "base"

    @abstractmethod
    def score(self, metrics: EndpointMetrics) -> float:
        ...


class WeightedHealthScore(HealthScoringStrategy):
    """
    Weighted combination of success rate, latency and rate-limit incidence.

    score = w_s * success_rate
          + w_l * (1 - min(1, avg_latency / reference_latency))
          + w_r * (1 - min(1, rate_limit_hits / reference_count))
    """

    name = "weighted"

    def __init__(
        self,
        success_weight: float = 0.4,
        latency_weight: float = 0.3,
        rate_limit_weight: float = 0.3,
        reference_latency_ms: float = 1000.0,
        reference_rate_limit_count: float = 10.0,
    ):
        self.success_weight = success_weight
        self.latency_weight = latency_weight
        self.rate_limit_weight = rate_limit_weight
        self.reference_latency_ms = reference_latency_ms
        self.reference_rate_limit_count = reference_rate_limit_count

    def score(self, metrics: EndpointMetrics) -> float:
        normalized_latency = min(1.0, metrics.average_latency_ms / self.reference_latency_ms)
        normalized_rate_limits = min(1.0, metrics.rate_limit_hits / self.reference_rate_limit_count)
        return (
            self.success_weight * metrics.success_rate
            + self.latency_weight * (1 - normalized_latency)
            + self.rate_limit_weight * (1 - normalized_rate_limits)
        )


class EmaHealthScore(WeightedHealthScore):
    """Weighted score discounted by the recent failure EMA."""

    name = "ema"

    def score(self, metrics: EndpointMetrics) -> float:
        return super().score(metrics) * (1 - metrics.failure_ema)


@dataclass
class AlertThresholds:
    rate_limit_hits: int = 3
    failure_rate: float = 0.15
    latency_ms: float = 800.0
    consecutive_failures: int = 2


class EndpointHealthTracker:
    """
    Rolling health metrics for every configured endpoint.

    Features:
    - Metrics created up front for each endpoint
    - Outcome recording from the request scheduler
    - Pluggable scoring strategy
    - Metric alerts and outcome callbacks
    """

    def __init__(
        self,
        endpoints: Optional[List[str]] = None,
        strategy: Optional[HealthScoringStrategy] = None,
        latency_alpha: float = 0.5,
        alert_thresholds: Optional[AlertThresholds] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.strategy = strategy or WeightedHealthScore()
        self.latency_alpha = latency_alpha
        self.alert_thresholds = alert_thresholds or AlertThresholds()
        self.clock = clock

        self.metrics: Dict[str, EndpointMetrics] = {}
        self._callbacks: List[Callable] = []

        for url in endpoints or []:
            self.add_endpoint(url)

    def add_endpoint(self, endpoint: str) -> EndpointMetrics:
        if endpoint not in self.metrics:
            self.metrics[endpoint] = EndpointMetrics(
                endpoint=endpoint, latency_alpha=self.latency_alpha
            )
        return self.metrics[endpoint]

    def remove_endpoint(self, endpoint: str):
        self.metrics.pop(endpoint, None)

    def get(self, endpoint: str) -> EndpointMetrics:
        return self.metrics.get(endpoint) or self.add_endpoint(endpoint)

    def register_callback(self, callback: Callable):
        """Register callback(event, endpoint, metrics) for recorded outcomes."""
        self._callbacks.append(callback)

    def _notify(self, event: str, endpoint: str, metrics: EndpointMetrics):
        for callback in self._callbacks:
            try:
                callback(event, endpoint, metrics)
            except Exception as e:
                logger.error("health_callback_error", endpoint=endpoint, error=str(e))

    def record_success(self, endpoint: str, latency_ms: float):
        metrics = self.get(endpoint)
        metrics.record_success(latency_ms, self.clock())
        self._notify("success", endpoint, metrics)

    def record_failure(
        self,
        endpoint: str,
        latency_ms: Optional[float] = None,
        rate_limited: bool = False,
        error: Optional[str] = None,
    ):
        metrics = self.get(endpoint)
        metrics.record_failure(
            self.clock(), latency_ms=latency_ms, rate_limited=rate_limited, error=error
        )
        self._notify("rate_limited" if rate_limited else "failure", endpoint, metrics)

        total = metrics.total_requests
        if total and total % 100 == 0:
            logger.info("endpoint_metrics", endpoint=endpoint, **metrics.to_dict(self.clock()))

    def score(self, endpoint: str) -> float:
        return self.strategy.score(self.get(endpoint))

    def check_alerts(self) -> Dict[str, List[str]]:
        """
        Compare every endpoint against the alert thresholds.

        Returns:
            Mapping endpoint -> human readable alert lines (only endpoints with alerts)
        """
        thresholds = self.alert_thresholds
        alerts: Dict[str, List[str]] = {}

        for endpoint, metrics in self.metrics.items():
            lines = []
            if metrics.rate_limit_hits >= thresholds.rate_limit_hits:
                lines.append(f"High rate limiting on {endpoint} ({metrics.rate_limit_hits} hits)")
            if metrics.total_requests and metrics.failure_rate >= thresholds.failure_rate:
                lines.append(f"High failure rate ({metrics.failure_rate * 100:.1f}%) on {endpoint}")
            if metrics.average_latency_ms >= thresholds.latency_ms:
                lines.append(f"High latency ({metrics.average_latency_ms:.0f}ms) on {endpoint}")
            if metrics.consecutive_failures >= thresholds.consecutive_failures:
                lines.append(
                    f"{metrics.consecutive_failures} consecutive failures on {endpoint}"
                )
            if lines:
                alerts[endpoint] = lines

        return alerts

    def snapshot(self) -> Dict[str, Dict]:
        now = self.clock()
        return {
            url: {"score": round(self.strategy.score(metrics), 4), **metrics.to_dict(now)}
            for url, metrics in self.metrics.items()
        }


def build_scoring_strategy(
    name: str = "weighted",
    success_weight: float = 0.4,
    latency_weight: float = 0.3,
    rate_limit_weight: float = 0.3,
    reference_latency_ms: float = 1000.0,
    reference_rate_limit_count: float = 10.0,
) -> HealthScoringStrategy:
    """Create a scoring strategy by name ("weighted" or "ema")."""
    strategies = {
        WeightedHealthScore.name: WeightedHealthScore,
        EmaHealthScore.name: EmaHealthScore,
    }
    if name not in strategies:
        raise ValueError(f"Unknown health score strategy: {name}")
    return strategies[name](
        success_weight=success_weight,
        latency_weight=latency_weight,
        rate_limit_weight=rate_limit_weight,
        reference_latency_ms=reference_latency_ms,
        reference_rate_limit_count=reference_rate_limit_count,
    )
