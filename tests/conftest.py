"""Shared fixtures for the walletwatch test suite."""

import asyncio

import pytest

from walletwatch.utils.access_state import AccessState
from walletwatch.utils.circuit_breaker import CircuitBreakerRegistry
from walletwatch.utils.endpoint_health import EndpointHealthTracker
from walletwatch.utils.rate_limiter import TokenBucketRateLimiter

ENDPOINT_A = "https://a.rpc.example"
ENDPOINT_B = "https://b.rpc.example"
ENDPOINT_C = "https://c.rpc.example"
FALLBACK_1 = "https://fallback-1.rpc.example"
FALLBACK_2 = "https://fallback-2.rpc.example"


class FakeClock:
    """Manually advanced clock; its sleep() advances time instead of waiting."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


def make_state(clock, failure_threshold=3, fallback_threshold=1, reset_interval=180.0):
    return AccessState(
        tracker=EndpointHealthTracker(clock=clock),
        breakers=CircuitBreakerRegistry(
            failure_threshold=failure_threshold,
            reset_interval=reset_interval,
            class_thresholds={"primary": failure_threshold, "fallback": fallback_threshold},
            clock=clock,
        ),
        limiter=TokenBucketRateLimiter(clock=clock, sleep=clock.sleep),
    )


@pytest.fixture
def state(clock):
    return make_state(clock)
