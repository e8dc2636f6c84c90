"""
Endpoint Pool Manager - Selection, Rotation and Fallback
========================================================

Owns the configured RPC endpoints and decides which one is active.

Rules:
- An endpoint whose circuit is open, or that is inside its cooldown
  window, is never selected.
- Among eligible endpoints the highest health score wins; ties go to the
  fewest consecutive failures, then to configuration order.
- A rotation caused by a rate limit always puts the offending endpoint
  into cooldown.
- With nothing eligible, rotation waits one settle interval and tries
  again; after that the caller escalates to the fallback endpoints.

Only this class writes the active endpoint.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from walletwatch.config.settings import is_valid_endpoint_url

from .access_state import AccessState
from .errors import (
    AllEndpointsExhaustedError,
    CircuitOpenError,
    ConfigurationError,
    RpcResponseError,
)

logger = structlog.get_logger(__name__)


class EndpointTier(Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass
class Endpoint:
    """A configured RPC provider URL."""
    url: str
    tier: EndpointTier = EndpointTier.PRIMARY
    cooldown_until: float = 0.0
    added_at: float = field(default_factory=time.time)

    def is_cooling(self, now: float) -> bool:
        return now < self.cooldown_until


class EndpointPoolManager:
    """
    Endpoint selection and rotation over a shared AccessState.

    Args:
        endpoints: Primary endpoint URLs, in preference order
        state: Shared tracker / breakers / limiter
        fallback_endpoints: Public backup URLs tried when the pool is exhausted
        cooldown_duration: Seconds an endpoint is excluded after a rate limit
        settle_interval: Wait before the single retry when nothing is eligible
    """

    def __init__(
        self,
        endpoints: List[str],
        state: AccessState,
        fallback_endpoints: Optional[List[str]] = None,
        cooldown_duration: float = 60.0,
        settle_interval: float = 30.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.state = state
        self.cooldown_duration = cooldown_duration
        self.settle_interval = settle_interval
        self.clock = clock
        self.sleep = sleep

        self._endpoints: Dict[str, Endpoint] = {}
        self._fallbacks: Dict[str, Endpoint] = {}
        self._lock = asyncio.Lock()

        for url in endpoints:
            if is_valid_endpoint_url(url):
                self._register(url, EndpointTier.PRIMARY)
            else:
                logger.warning("invalid_endpoint_ignored", endpoint=url)

        if not self._endpoints:
            raise ConfigurationError("No valid RPC endpoint configured")

        for url in fallback_endpoints or []:
            if url in self._endpoints or not is_valid_endpoint_url(url):
                continue
            self._fallbacks[url] = Endpoint(url=url, tier=EndpointTier.FALLBACK, added_at=clock())
            self.state.tracker.add_endpoint(url)
            self.state.breakers.add(url, EndpointTier.FALLBACK.value)

        self._active_url: str = next(iter(self._endpoints))
        self.rotations = 0

        logger.info(
            "endpoint_pool_initialized",
            endpoints=len(self._endpoints),
            fallbacks=len(self._fallbacks),
            active=self._active_url,
        )

    def _register(self, url: str, tier: EndpointTier):
        self._endpoints[url] = Endpoint(url=url, tier=tier, added_at=self.clock())
        self.state.tracker.add_endpoint(url)
        self.state.breakers.add(url, tier.value)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def endpoints(self) -> List[str]:
        return list(self._endpoints)

    @property
    def fallback_endpoints(self) -> List[str]:
        return list(self._fallbacks)

    @property
    def active_endpoint(self) -> str:
        return self._active_url

    def get_endpoint(self, url: str) -> Optional[Endpoint]:
        return self._endpoints.get(url) or self._fallbacks.get(url)

    def is_cooling(self, url: str) -> bool:
        endpoint = self.get_endpoint(url)
        return endpoint is not None and endpoint.is_cooling(self.clock())

    def is_eligible(self, url: str) -> bool:
        if url not in self._endpoints:
            return False
        return not self.state.breakers.is_open(url) and not self.is_cooling(url)

    def eligible_endpoints(self) -> List[str]:
        return [url for url in self._endpoints if self.is_eligible(url)]

    def select_best(self) -> Optional[str]:
        """Highest-scoring eligible endpoint, or None."""
        eligible = self.eligible_endpoints()
        if not eligible:
            return None

        order = {url: index for index, url in enumerate(self._endpoints)}
        tracker = self.state.tracker

        return max(
            eligible,
            key=lambda url: (
                tracker.score(url),
                -tracker.get(url).consecutive_failures,
                -order[url],
            ),
        )

    # ------------------------------------------------------------------
    # Cooldowns
    # ------------------------------------------------------------------

    def set_cooldown(self, url: str, duration: Optional[float] = None):
        endpoint = self.get_endpoint(url)
        if endpoint is None:
            return
        duration = self.cooldown_duration if duration is None else duration
        endpoint.cooldown_until = self.clock() + duration
        logger.info("endpoint_cooling_down", endpoint=url, seconds=duration)

    # ------------------------------------------------------------------
    # Selection and rotation
    # ------------------------------------------------------------------

    def _set_active(self, url: str, reason: str):
        if url != self._active_url:
            previous = self._active_url
            self._active_url = url
            self.rotations += 1
            logger.info(
                "endpoint_rotated",
                previous=previous,
                active=url,
                reason=reason,
                position=f"{self.endpoints.index(url) + 1}/{len(self._endpoints)}",
            )

    async def acquire_endpoint(self) -> Optional[str]:
        """Active endpoint if still eligible, otherwise rotate."""
        if self.is_eligible(self._active_url):
            return self._active_url
        return await self.rotate(reason="active_ineligible")

    async def rotate(
        self,
        failed_endpoint: Optional[str] = None,
        rate_limited: bool = False,
        reason: str = "failure",
    ) -> Optional[str]:
        """
        Move the active endpoint to the best eligible one.

        Args:
            failed_endpoint: Endpoint whose failure triggered the rotation
            rate_limited: Whether that failure was a rate limit (forces cooldown)

        Returns:
            The new active endpoint, or None when nothing is eligible even
            after the settle interval
        """
        async with self._lock:
            if failed_endpoint and rate_limited:
                self.set_cooldown(failed_endpoint)

            # Another task already rotated away from the failed endpoint
            if (
                failed_endpoint is not None
                and failed_endpoint != self._active_url
                and self.is_eligible(self._active_url)
            ):
                return self._active_url

            candidate = self.select_best()
            if candidate is None:
                logger.warning(
                    "no_eligible_endpoints",
                    settle_seconds=self.settle_interval,
                    open_circuits=self.state.breakers.open_endpoints(),
                )
                await self.sleep(self.settle_interval)
                candidate = self.select_best()

            if candidate is None:
                logger.error("endpoint_pool_exhausted", endpoints=len(self._endpoints))
                return None

            self._set_active(candidate, reason)
            return candidate

    def rebalance(self) -> str:
        """Switch to a strictly better eligible endpoint, if any."""
        best = self.select_best()
        if best is None or best == self._active_url:
            return self._active_url

        tracker = self.state.tracker
        if not self.is_eligible(self._active_url) or tracker.score(best) > tracker.score(self._active_url):
            self._set_active(best, "rebalance")
        return self._active_url

    # ------------------------------------------------------------------
    # Fallback strategy
    # ------------------------------------------------------------------

    async def execute_fallback(self, runner: Callable[[str], Awaitable[Any]]) -> Any:
        """
        Try each public backup endpoint in turn.

        Args:
            runner: Coroutine function executing the operation against a URL

        Raises:
            AllEndpointsExhaustedError: every fallback failed
        """
        last_error: Optional[BaseException] = None

        for url in self._fallbacks:
            breakers = self.state.breakers
            tracker = self.state.tracker
            try:
                breakers.guard(url)
            except CircuitOpenError as e:
                last_error = e
                continue

            start = self.clock()
            try:
                result = await runner(url)
            except RpcResponseError:
                raise
            except Exception as e:
                last_error = e
                breakers.record_failure(url)
                tracker.record_failure(url, error=str(e))
                logger.error("fallback_failed", endpoint=url, error=str(e))
                continue

            breakers.record_success(url)
            tracker.record_success(url, (self.clock() - start) * 1000)
            logger.info("fallback_succeeded", endpoint=url)
            return result

        raise AllEndpointsExhaustedError("All fallback attempts failed", last_error=last_error)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def add_endpoint(self, url: str) -> bool:
        """
        Add a primary endpoint.

        Returns:
            False if it was already configured

        Raises:
            ConfigurationError: invalid URL
        """
        if not is_valid_endpoint_url(url):
            raise ConfigurationError(f"Invalid RPC endpoint URL: {url}")
        if url in self._endpoints:
            return False

        if url in self._fallbacks:
            del self._fallbacks[url]
            self.state.breakers.remove(url)

        self._register(url, EndpointTier.PRIMARY)
        logger.info("endpoint_added", endpoint=url, endpoints=len(self._endpoints))
        return True

    def remove_endpoint(self, url: str) -> bool:
        """
        Remove a primary endpoint.

        Returns:
            False if it was not configured

        Raises:
            ConfigurationError: it is the last primary endpoint
        """
        if url not in self._endpoints:
            return False
        if len(self._endpoints) == 1:
            raise ConfigurationError("Cannot remove the last RPC endpoint")

        del self._endpoints[url]
        self.state.tracker.remove_endpoint(url)
        self.state.breakers.remove(url)

        if url == self._active_url:
            self._active_url = self.select_best() or next(iter(self._endpoints))
            logger.info("endpoint_rotated", previous=url, active=self._active_url, reason="removed")

        logger.info("endpoint_removed", endpoint=url, endpoints=len(self._endpoints))
        return True

    def snapshot(self) -> Dict[str, Dict]:
        """Per-endpoint score, circuit state, cooldown and metrics."""
        now = self.clock()
        tracker = self.state.tracker
        breakers = self.state.breakers
        snapshot = {}

        for endpoint in list(self._endpoints.values()) + list(self._fallbacks.values()):
            metrics = tracker.get(endpoint.url)
            snapshot[endpoint.url] = {
                "score": round(tracker.score(endpoint.url), 4),
                "state": breakers.get(endpoint.url).state.value,
                "cooldown_until": endpoint.cooldown_until or None,
                "cooling": endpoint.is_cooling(now),
                "active": endpoint.url == self._active_url,
                "tier": endpoint.tier.value,
                "metrics": metrics.to_dict(now),
            }

        return snapshot
