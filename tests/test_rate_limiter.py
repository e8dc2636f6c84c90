"""Tests for the token bucket rate limiter."""

import pytest

from walletwatch.utils.rate_limiter import TokenBucketRateLimiter


@pytest.fixture
def limiter(clock):
    return TokenBucketRateLimiter(
        capacity=15, refill_rate=1.0, base_delay=2.0, max_delay=30.0,
        clock=clock, sleep=clock.sleep,
    )


class TestRefill:
    """Refill is elapsed time times rate, clamped to capacity."""

    def test_starts_full(self, limiter):
        assert limiter.tokens == 15

    def test_refill_adds_elapsed_times_rate(self, limiter, clock):
        limiter.tokens = 0.0
        clock.advance(3.5)
        assert limiter.refill() == pytest.approx(3.5)

    def test_refill_never_exceeds_capacity(self, limiter, clock):
        limiter.tokens = 14.0
        clock.advance(100)
        assert limiter.refill() == 15

    def test_refill_ignores_clock_going_backwards(self, limiter, clock):
        limiter.tokens = 5.0
        clock.advance(-10)
        assert limiter.refill() == 5.0


class TestAcquire:

    @pytest.mark.asyncio
    async def test_acquire_takes_a_token_without_waiting(self, limiter, clock):
        assert await limiter.acquire() is True
        assert limiter.tokens == 14
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_empty_bucket_waits_base_delay(self, limiter, clock):
        limiter.tokens = 0.0
        await limiter.acquire()

        assert clock.sleeps == [2.0]
        # 2 seconds of refill, one token spent
        assert limiter.tokens == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_tokens_never_negative(self, limiter, clock):
        limiter.refill_rate = 0.0
        limiter.tokens = 0.0
        for _ in range(3):
            await limiter.acquire()
            assert limiter.tokens >= 0
        assert limiter.total_waits == 3

    @pytest.mark.asyncio
    async def test_failure_doubles_wait(self, limiter, clock):
        limiter.record_failure()
        await limiter.acquire()

        assert clock.sleeps == [4.0]
        assert limiter.tokens == pytest.approx(3.0)


class TestBackoff:

    def test_record_failure_empties_bucket(self, limiter):
        limiter.record_failure()
        assert limiter.tokens == 0
        assert limiter.consecutive_failures == 1

    def test_backoff_is_capped(self, limiter):
        for _ in range(10):
            limiter.record_failure()
        assert limiter.backoff_delay() == 30.0

    def test_success_walks_failures_back(self, limiter):
        limiter.record_failure()
        limiter.record_failure()
        limiter.record_success()
        assert limiter.consecutive_failures == 1
        assert limiter.backoff_delay() == 4.0

        limiter.record_success()
        limiter.record_success()
        assert limiter.consecutive_failures == 0

    def test_statistics(self, limiter):
        stats = limiter.get_statistics()
        assert stats["capacity"] == 15
        assert stats["next_wait_seconds"] == 2.0
        assert stats["total_acquired"] == 0
