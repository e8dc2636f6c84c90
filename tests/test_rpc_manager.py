"""End-to-end tests for the RpcManager facade."""

import asyncio

import pytest

from walletwatch.config import Settings
from walletwatch.utils.errors import ConfigurationError, RateLimitedError, TransientNetworkError
from walletwatch.utils.request_queue import RequestPriority
from walletwatch.utils.rpc_manager import RpcManager

from .conftest import ENDPOINT_A, ENDPOINT_B, ENDPOINT_C


class FakeClient:
    """Stands in for SolanaRpcClient; ``behavior`` returns a value or raises."""

    def __init__(self, endpoint, behavior, calls):
        self.endpoint = endpoint
        self.behavior = behavior
        self.calls = calls

    async def _respond(self, method):
        # Yield like a real network call so batched requests overlap
        await asyncio.sleep(0)
        self.calls.append((self.endpoint, method))
        return self.behavior(self.endpoint, method)

    async def get_balance(self, address):
        return await self._respond("getBalance")

    async def get_slot(self):
        return await self._respond("getSlot")


class FakeClientFactory:

    def __init__(self, behavior):
        self.behavior = behavior
        self.calls = []
        self.discarded = []
        self.closed = False

    def __call__(self, endpoint):
        return FakeClient(endpoint, self.behavior, self.calls)

    def discard(self, endpoint):
        self.discarded.append(endpoint)

    async def aclose(self):
        self.closed = True

    def count(self, endpoint):
        return sum(1 for url, _ in self.calls if url == endpoint)


def make_settings(endpoints=(ENDPOINT_A, ENDPOINT_B), **scheduler_overrides):
    settings = Settings()
    settings.pool.endpoints = list(endpoints)
    settings.pool.fallback_endpoints = []
    settings.rate_limiter.base_delay = 0.5
    settings.rate_limiter.max_delay = 1.0
    for name, value in scheduler_overrides.items():
        setattr(settings.scheduler, name, value)
    return settings


def make_manager(clock, behavior, **kwargs):
    factory = FakeClientFactory(behavior)
    manager = RpcManager.from_settings(
        make_settings(**kwargs),
        client_factory=factory,
        clock=clock,
        sleep=clock.sleep,
        enable_health_checks=False,
    )
    return manager, factory


def a_rate_limited(endpoint, method):
    if endpoint == ENDPOINT_A:
        raise RateLimitedError(endpoint=endpoint)
    return 1_000_000_000


class TestRateLimitFailover:

    @pytest.mark.asyncio
    async def test_rate_limited_endpoint_is_opened_and_avoided(self, clock):
        manager, factory = make_manager(clock, a_rate_limited, batch_size=3)

        async with manager:
            results = await asyncio.gather(*(
                manager.queue_request(lambda client: client.get_balance("Wallet111"))
                for _ in range(3)
            ))
            assert results == [1_000_000_000] * 3
            assert factory.count(ENDPOINT_A) == 3

            breaker = manager.state.breakers.get(ENDPOINT_A)
            assert breaker.is_open
            snapshot = manager.get_endpoint_health_snapshot()
            assert snapshot[ENDPOINT_A]["state"] == "open"
            assert snapshot[ENDPOINT_A]["cooldown_until"] is not None
            assert snapshot[ENDPOINT_A]["metrics"]["rate_limit_hits"] == 3
            assert snapshot[ENDPOINT_B]["active"] is True
            assert manager.active_rate_limit_hits() == 0

            # Cooldown has lapsed but the circuit is still open
            assert clock.now < breaker.opened_at + 100
            clock.now = breaker.opened_at + 100
            assert not manager.pool.is_cooling(ENDPOINT_A)

            for _ in range(2):
                await manager.queue_request(
                    lambda client: client.get_balance("Wallet111"), RequestPriority.HIGH
                )

            assert factory.count(ENDPOINT_A) == 3
            assert manager.active_endpoint == ENDPOINT_B

        assert factory.closed


class TestAdministration:

    @pytest.mark.asyncio
    async def test_add_and_remove_endpoints(self, clock):
        manager, factory = make_manager(clock, lambda endpoint, method: 1)

        assert manager.add_endpoint(ENDPOINT_C) is True
        assert ENDPOINT_C in manager.get_endpoint_health_snapshot()

        assert manager.remove_endpoint(ENDPOINT_A) is True
        assert factory.discarded == [ENDPOINT_A]
        assert manager.active_endpoint == ENDPOINT_B

        manager.remove_endpoint(ENDPOINT_C)
        with pytest.raises(ConfigurationError):
            manager.remove_endpoint(ENDPOINT_B)

        await manager.close()

    @pytest.mark.asyncio
    async def test_stats(self, clock):
        manager, _ = make_manager(clock, lambda endpoint, method: 1)
        assert await manager.queue_request(lambda client: client.get_balance("w")) == 1

        stats = manager.get_stats()
        assert stats["active_endpoint"] == ENDPOINT_A
        assert stats["scheduler"]["succeeded"] == 1
        assert stats["rate_limiter"]["total_acquired"] == 1
        assert manager.active_rate_limit_hits() == 0

        await manager.close()


class TestHealthProbe:

    @pytest.mark.asyncio
    async def test_probe_records_outcomes_and_alerts(self, clock):
        def behavior(endpoint, method):
            if endpoint == ENDPOINT_B:
                raise TransientNetworkError("503", status_code=503, endpoint=endpoint)
            return 250_000_000

        manager, factory = make_manager(clock, behavior)

        assert await manager.probe_endpoints() == {ENDPOINT_A: True, ENDPOINT_B: False}
        await manager.probe_endpoints()

        tracker = manager.state.tracker
        assert tracker.get(ENDPOINT_A).success_count == 2
        assert tracker.get(ENDPOINT_B).consecutive_failures == 2

        alerts = manager.report_alerts()
        assert ENDPOINT_B in alerts
        assert ENDPOINT_A not in alerts

        await manager.close()

    @pytest.mark.asyncio
    async def test_open_circuits_are_not_probed(self, clock):
        manager, factory = make_manager(clock, lambda endpoint, method: 1)
        manager.state.breakers.get(ENDPOINT_A).force_open()

        assert await manager.probe_endpoints() == {ENDPOINT_B: True}
        assert factory.count(ENDPOINT_A) == 0

        await manager.close()
