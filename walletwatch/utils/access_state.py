"""Shared state of the RPC access layer."""

from dataclasses import dataclass

from .circuit_breaker import CircuitBreakerRegistry
from .endpoint_health import EndpointHealthTracker
from .rate_limiter import TokenBucketRateLimiter


@dataclass
class AccessState:
    """
    Owned state handed by reference to the pool manager and the scheduler.

    tracker and breakers are keyed by endpoint URL; limiter is the single
    bucket shared by every consumer of the queue.
    """
    tracker: EndpointHealthTracker
    breakers: CircuitBreakerRegistry
    limiter: TokenBucketRateLimiter
