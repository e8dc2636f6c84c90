"""Resilient multi-endpoint Solana RPC access.

RpcManager is the surface the rest of walletwatch talks to. It wires:
- the endpoint health tracker and per-endpoint circuit breakers
- the shared token bucket rate limiter
- the endpoint pool manager (rotation, cooldowns, fallbacks)
- the prioritized, batched request scheduler
- an optional background health probe (getSlot) that also checks metric alerts
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from walletwatch.config.settings import Settings

from .access_state import AccessState
from .circuit_breaker import CircuitBreakerRegistry
from .endpoint_health import AlertThresholds, EndpointHealthTracker, build_scoring_strategy
from .endpoint_pool import EndpointPoolManager
from .errors import RateLimitedError, RpcError
from .rate_limiter import TokenBucketRateLimiter
from .request_queue import Operation, RequestPriority, RequestScheduler
from .rpc_client import RpcClientFactory

logger = structlog.get_logger(__name__)


class RpcManager:
    """
    Facade over the RPC access layer.

    Example:
        async with RpcManager.from_settings(settings) as rpc:
            balance = await rpc.queue_request(
                lambda client: client.get_balance(wallet),
                RequestPriority.HIGH,
            )
    """

    def __init__(
        self,
        state: AccessState,
        pool: EndpointPoolManager,
        scheduler: RequestScheduler,
        client_factory: RpcClientFactory,
        health_check_interval: float = 30.0,
        probe_timeout: float = 5.0,
        enable_health_checks: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.state = state
        self.pool = pool
        self.scheduler = scheduler
        self.client_factory = client_factory
        self.health_check_interval = health_check_interval
        self.probe_timeout = probe_timeout
        self.enable_health_checks = enable_health_checks
        self.clock = clock

        self._health_check_task: Optional[asyncio.Task] = None
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client_factory: Optional[RpcClientFactory] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        enable_health_checks: bool = True,
    ) -> "RpcManager":
        """Build the full access layer from validated settings."""
        health = settings.health
        breaker_config = settings.circuit_breaker
        limiter_config = settings.rate_limiter
        pool_config = settings.pool
        scheduler_config = settings.scheduler

        tracker = EndpointHealthTracker(
            strategy=build_scoring_strategy(
                health.strategy,
                success_weight=health.success_weight,
                latency_weight=health.latency_weight,
                rate_limit_weight=health.rate_limit_weight,
                reference_latency_ms=health.reference_latency_ms,
                reference_rate_limit_count=health.reference_rate_limit_count,
            ),
            latency_alpha=health.latency_alpha,
            alert_thresholds=AlertThresholds(
                rate_limit_hits=health.alert_rate_limit_hits,
                failure_rate=health.alert_failure_rate,
                latency_ms=health.alert_latency_ms,
                consecutive_failures=health.alert_consecutive_failures,
            ),
            clock=clock,
        )
        breakers = CircuitBreakerRegistry(
            failure_threshold=breaker_config.failure_threshold,
            reset_interval=breaker_config.reset_interval,
            class_thresholds={
                "primary": breaker_config.failure_threshold,
                "fallback": breaker_config.fallback_failure_threshold,
            },
            clock=clock,
        )
        limiter = TokenBucketRateLimiter(
            capacity=limiter_config.capacity,
            refill_rate=limiter_config.refill_rate,
            base_delay=limiter_config.base_delay,
            max_delay=limiter_config.max_delay,
            name="rpc",
            clock=clock,
            sleep=sleep,
        )
        state = AccessState(tracker=tracker, breakers=breakers, limiter=limiter)

        pool = EndpointPoolManager(
            pool_config.endpoints,
            state,
            fallback_endpoints=pool_config.fallback_endpoints,
            cooldown_duration=pool_config.cooldown_duration,
            settle_interval=pool_config.settle_interval,
            clock=clock,
            sleep=sleep,
        )

        client_factory = client_factory or RpcClientFactory(timeout=scheduler_config.request_timeout)

        scheduler = RequestScheduler(
            pool,
            state,
            client_factory,
            batch_size=scheduler_config.batch_size,
            batch_interval=scheduler_config.batch_interval,
            tick_interval=scheduler_config.tick_interval,
            stale_after=scheduler_config.stale_after,
            request_timeout=scheduler_config.request_timeout,
            reschedule_delay=scheduler_config.reschedule_delay,
            max_attempts=scheduler_config.max_attempts,
            retry_base_delay=scheduler_config.retry_base_delay,
            retry_max_delay=scheduler_config.retry_max_delay,
            adaptive_interval=scheduler_config.adaptive_interval,
            clock=clock,
            sleep=sleep,
        )

        return cls(
            state,
            pool,
            scheduler,
            client_factory,
            health_check_interval=pool_config.health_check_interval,
            probe_timeout=pool_config.probe_timeout,
            enable_health_checks=enable_health_checks,
            clock=clock,
        )

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Start the scheduler tick and the health probe."""
        if self._started:
            return
        self._started = True
        await self.scheduler.start()

        if self.enable_health_checks and self.health_check_interval > 0:
            self._health_check_task = asyncio.create_task(self.health_check_loop())

        logger.info(
            "rpc_manager_started",
            endpoints=self.pool.endpoints,
            active=self.pool.active_endpoint,
        )

    async def close(self):
        """Stop background work and release HTTP connections."""
        if self._health_check_task:
            self._health_check_task.cancel()
            try:
                await self._health_check_task
            except asyncio.CancelledError:
                pass
            self._health_check_task = None

        await self.scheduler.stop()
        await self.client_factory.aclose()
        self._started = False

        logger.info("rpc_manager_closed")

    # ------------------------------------------------------------------
    # Exposed operations
    # ------------------------------------------------------------------

    async def queue_request(
        self,
        operation: Operation,
        priority: RequestPriority = RequestPriority.NORMAL,
        label: str = "",
    ) -> Any:
        """Run an operation through the scheduler and return its result."""
        return await self.scheduler.queue_request(operation, priority, label)

    def get_endpoint_health_snapshot(self) -> Dict[str, Dict]:
        return self.pool.snapshot()

    def add_endpoint(self, url: str) -> bool:
        return self.pool.add_endpoint(url)

    def remove_endpoint(self, url: str) -> bool:
        removed = self.pool.remove_endpoint(url)
        if removed:
            self.client_factory.discard(url)
        return removed

    @property
    def active_endpoint(self) -> str:
        return self.pool.active_endpoint

    def active_rate_limit_hits(self) -> int:
        return self.state.tracker.get(self.pool.active_endpoint).rate_limit_hits

    # ------------------------------------------------------------------
    # Health probing
    # ------------------------------------------------------------------

    async def health_check_loop(self):
        """Periodically probe every endpoint and report metric alerts."""
        logger.info("health_check_loop_started", interval=self.health_check_interval)

        while True:
            try:
                await asyncio.sleep(self.health_check_interval)
                await self.probe_endpoints()
                self.report_alerts()
            except asyncio.CancelledError:
                logger.info("health_check_loop_cancelled")
                break
            except Exception as e:
                logger.error("health_check_loop_error", error=str(e))

    async def probe_endpoints(self) -> Dict[str, bool]:
        """
        Probe every primary endpoint whose circuit is closed.

        Returns:
            Mapping endpoint -> probe succeeded
        """
        targets = [url for url in self.pool.endpoints if not self.state.breakers.is_open(url)]
        results = await asyncio.gather(*(self._probe(url) for url in targets))
        return dict(zip(targets, results))

    async def _probe(self, endpoint: str) -> bool:
        tracker = self.state.tracker
        start = self.clock()
        try:
            client = self.client_factory(endpoint)
            await asyncio.wait_for(client.get_slot(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            tracker.record_failure(endpoint, error="health probe timed out")
            logger.debug("health_probe_timeout", endpoint=endpoint)
            return False
        except RpcError as e:
            tracker.record_failure(
                endpoint,
                latency_ms=(self.clock() - start) * 1000,
                rate_limited=isinstance(e, RateLimitedError),
                error=str(e),
            )
            logger.debug("health_probe_failed", endpoint=endpoint, error=str(e))
            return False

        tracker.record_success(endpoint, (self.clock() - start) * 1000)
        return True

    def report_alerts(self) -> Dict[str, List[str]]:
        alerts = self.state.tracker.check_alerts()
        for endpoint, lines in alerts.items():
            logger.warning("endpoint_metric_alert", endpoint=endpoint, alerts=lines)
        return alerts

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_endpoint": self.pool.active_endpoint,
            "rotations": self.pool.rotations,
            "scheduler": self.scheduler.get_stats(),
            "rate_limiter": self.state.limiter.get_statistics(),
            "circuits": self.state.breakers.get_stats(),
        }
