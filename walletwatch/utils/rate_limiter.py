"""
Token Bucket Rate Limiter with Failure-Driven Backoff
=====================================================

One bucket per logical consumer (the wallet poller shares a single one).

- Steady-state pacing: tokens refill continuously at ``refill_rate`` per
  second, capped at ``capacity``.
- Provider throttling: every recorded failure empties the bucket and
  doubles the wait the next caller pays, up to ``max_delay``.
- Recovery: each success walks the failure counter back by one.

acquire() never raises; the longest a single call suspends is max_delay.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class TokenBucketRateLimiter:
    """
    Token bucket with exponential backoff on recorded failures.

    Example:
        limiter = TokenBucketRateLimiter(capacity=15, refill_rate=1.0)
        await limiter.acquire()
        ...
        limiter.record_success()
    """
    capacity: float = 15.0          # Maximum tokens
    refill_rate: float = 1.0        # Tokens per second
    base_delay: float = 2.0         # Wait when empty with no failures
    max_delay: float = 30.0         # Upper bound on any single wait
    name: str = "default"

    clock: Callable[[], float] = field(default=time.time, repr=False)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    tokens: float = field(init=False)
    last_refill: float = field(init=False)
    consecutive_failures: int = field(default=0, init=False)

    # Statistics
    total_acquired: int = field(default=0, init=False)
    total_waits: int = field(default=0, init=False)
    total_wait_seconds: float = field(default=0.0, init=False)

    def __post_init__(self):
        self.tokens = float(self.capacity)
        self.last_refill = self.clock()

    def refill(self) -> float:
        """Add tokens for the time elapsed since the last refill."""
        now = self.clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now
        return self.tokens

    def backoff_delay(self) -> float:
        """Wait applied when the bucket is empty."""
        return min(self.base_delay * (2 ** self.consecutive_failures), self.max_delay)

    async def acquire(self) -> bool:
        """
        Take one token, suspending the caller when the bucket is empty.

        Returns:
            Always True
        """
        self.refill()

        if self.tokens < 1:
            wait_time = self.backoff_delay()
            self.total_waits += 1
            self.total_wait_seconds += wait_time
            logger.debug(
                "rate_limiter_waiting",
                limiter=self.name,
                wait_seconds=wait_time,
                consecutive_failures=self.consecutive_failures,
            )
            await self.sleep(wait_time)
            self.refill()

        self.tokens = max(0.0, self.tokens - 1)
        self.total_acquired += 1
        return True

    def record_success(self):
        """Decay the failure counter by one step."""
        self.consecutive_failures = max(0, self.consecutive_failures - 1)

    def record_failure(self):
        """Empty the bucket and lengthen the next wait."""
        self.consecutive_failures += 1
        self.tokens = 0.0
        self.last_refill = self.clock()
        logger.info(
            "rate_limiter_backoff",
            limiter=self.name,
            consecutive_failures=self.consecutive_failures,
            next_wait_seconds=self.backoff_delay(),
        )

    def get_statistics(self) -> Dict:
        """Get rate limiter statistics."""
        return {
            "name": self.name,
            "tokens": round(self.tokens, 3),
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
            "consecutive_failures": self.consecutive_failures,
            "next_wait_seconds": self.backoff_delay(),
            "total_acquired": self.total_acquired,
            "total_waits": self.total_waits,
            "total_wait_seconds": round(self.total_wait_seconds, 3),
        }
