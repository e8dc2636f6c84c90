"""
Request Queue / Scheduler - Prioritized, Batched RPC Dispatch
=============================================================

Accepts asynchronous RPC operations, batches them and paces them through
the endpoint pool, circuit breakers and the shared rate limiter.

Dispatch model:
- Two FIFO queues (high priority and normal). A batch takes every
  available high priority item before any normal one.
- Items older than ``stale_after`` at batch formation are dropped and
  their callers get StaleRequestError.
- A batch runs concurrently and is awaited in full, then the loop sleeps
  ``batch_interval`` before the next batch. This caps throughput to stay
  under provider rate limits.
- Only one drain loop is active at a time.

Per-item retry policy (bounded loop, ``max_attempts``):
- CircuitOpenError      -> rotate, try the next endpoint
- RateLimitedError      -> cooldown + rotate; the first one reschedules the
                           item after ``reschedule_delay``
- TransientNetworkError -> rotate, exponential backoff
- RpcResponseError      -> returned to the caller as is
When attempts run out (or no endpoint is eligible) the pool's fallback
endpoints are tried; if they fail too, AllEndpointsExhaustedError.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import structlog

from .access_state import AccessState
from .endpoint_pool import EndpointPoolManager
from .errors import (
    AllEndpointsExhaustedError,
    CircuitOpenError,
    RateLimitedError,
    RpcError,
    RpcResponseError,
    StaleRequestError,
    TransientNetworkError,
)

logger = structlog.get_logger(__name__)

# An operation receives the RPC client bound to the chosen endpoint
Operation = Callable[[Any], Awaitable[Any]]


class RequestPriority(Enum):
    """Request priority levels."""
    HIGH = "high"
    NORMAL = "normal"


@dataclass
class RequestItem:
    """A queued operation waiting for dispatch."""
    operation: Operation
    priority: RequestPriority
    enqueued_at: float
    future: asyncio.Future
    label: str = ""
    attempts: int = 0
    rescheduled: bool = False

    def age(self, now: float) -> float:
        return now - self.enqueued_at


@dataclass
class SchedulerMetrics:
    """Counters for the request scheduler."""
    enqueued: int = 0
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    dropped_stale: int = 0
    rescheduled: int = 0
    rate_limited: int = 0
    transient_errors: int = 0
    circuit_rejections: int = 0
    fallbacks: int = 0
    batches: int = 0


class RequestScheduler:
    """
    Priority request queue with a single batching drain loop.

    Args:
        pool: Endpoint pool manager (selection and rotation)
        state: Shared tracker / breakers / limiter
        client_factory: Returns the RPC client for an endpoint URL
        batch_size: Maximum operations per batch
        batch_interval: Pause after every batch (seconds)
        tick_interval: Wake-up period of the background tick
        stale_after: Queue age beyond which items are dropped
        request_timeout: Per-call timeout
        reschedule_delay: Delay before the single rescheduled retry after a rate limit
        max_attempts: Attempts per item on primary endpoints
    """

    def __init__(
        self,
        pool: EndpointPoolManager,
        state: AccessState,
        client_factory: Callable[[str], Any],
        batch_size: int = 2,
        batch_interval: float = 8.0,
        tick_interval: float = 0.1,
        stale_after: float = 60.0,
        request_timeout: float = 30.0,
        reschedule_delay: float = 10.0,
        max_attempts: int = 3,
        retry_base_delay: float = 2.0,
        retry_max_delay: float = 30.0,
        adaptive_interval: bool = True,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pool = pool
        self.state = state
        self.client_factory = client_factory
        self.batch_size = batch_size
        self.batch_interval = batch_interval
        self.tick_interval = tick_interval
        self.stale_after = stale_after
        self.request_timeout = request_timeout
        self.reschedule_delay = reschedule_delay
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.adaptive_interval = adaptive_interval
        self.clock = clock
        self.sleep = sleep

        self.priority_queue: Deque[RequestItem] = deque()
        self.normal_queue: Deque[RequestItem] = deque()
        self.metrics = SchedulerMetrics()

        self._draining = False
        self._running = False
        self._drain_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start the background tick."""
        if self._running:
            return
        self._running = True
        self._tick_task = asyncio.create_task(self._tick_loop())
        logger.info(
            "request_scheduler_started",
            batch_size=self.batch_size,
            batch_interval=self.batch_interval,
        )

    async def stop(self):
        """Stop dispatching and cancel everything still queued."""
        self._running = False

        for task in (self._tick_task, self._drain_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        # A drain task cancelled before it ever ran never reaches its finally
        self._draining = False

        cancelled = 0
        for queue in (self.priority_queue, self.normal_queue):
            while queue:
                item = queue.popleft()
                if not item.future.done():
                    item.future.cancel()
                    cancelled += 1

        logger.info("request_scheduler_stopped", cancelled=cancelled, **self._counters())

    async def _tick_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self.tick_interval)
                self._kick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scheduler_tick_error", error=str(e))

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    @property
    def queue_depth(self) -> int:
        return len(self.priority_queue) + len(self.normal_queue)

    @property
    def is_draining(self) -> bool:
        return self._draining

    def submit(
        self,
        operation: Operation,
        priority: RequestPriority = RequestPriority.NORMAL,
        label: str = "",
    ) -> asyncio.Future:
        """Enqueue an operation and return the future of its result."""
        future = asyncio.get_running_loop().create_future()
        item = RequestItem(
            operation=operation,
            priority=priority,
            enqueued_at=self.clock(),
            future=future,
            label=label,
        )

        if priority == RequestPriority.HIGH:
            self.priority_queue.append(item)
        else:
            self.normal_queue.append(item)
        self.metrics.enqueued += 1

        self._kick()
        return future

    async def queue_request(
        self,
        operation: Operation,
        priority: RequestPriority = RequestPriority.NORMAL,
        label: str = "",
    ) -> Any:
        """
        Enqueue an operation and wait for its result.

        Raises:
            AllEndpointsExhaustedError: primary and fallback endpoints all failed
            StaleRequestError: the item waited longer than stale_after
            RpcResponseError: the node rejected the request
        """
        return await self.submit(operation, priority, label)

    def _kick(self):
        """Start the drain loop unless one is already running."""
        if self._draining or not self.queue_depth:
            return
        self._draining = True
        self._drain_task = asyncio.create_task(self._drain())

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    async def _drain(self):
        try:
            while self.priority_queue or self.normal_queue:
                self.pool.rebalance()
                batch = self._form_batch()
                if not batch:
                    continue

                self.metrics.batches += 1
                await asyncio.gather(*(self._run_item(item) for item in batch))
                await self.sleep(self.next_batch_interval())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("drain_loop_error", error=str(e))
        finally:
            self._draining = False

    def _form_batch(self) -> List[RequestItem]:
        """Pull up to batch_size fresh items, high priority first."""
        now = self.clock()
        batch: List[RequestItem] = []

        while len(batch) < self.batch_size and (self.priority_queue or self.normal_queue):
            item = self.priority_queue.popleft() if self.priority_queue else self.normal_queue.popleft()

            age = item.age(now)
            if age > self.stale_after:
                self.metrics.dropped_stale += 1
                logger.debug("stale_request_dropped", label=item.label, age_seconds=round(age, 2))
                if not item.future.done():
                    item.future.set_exception(StaleRequestError(age))
                continue

            if item.future.cancelled():
                continue

            batch.append(item)

        return batch

    def next_batch_interval(self) -> float:
        """Batch pause, stretched while the active endpoint is struggling."""
        interval = self.batch_interval
        if not self.adaptive_interval:
            return interval

        metrics = self.state.tracker.get(self.pool.active_endpoint)
        if metrics.rate_limited_within(60, self.clock()):
            return interval * 2
        if metrics.total_requests and metrics.success_rate < 0.8:
            return interval * 1.5
        return interval

    async def _run_item(self, item: RequestItem):
        self.metrics.dispatched += 1
        try:
            result = await self._dispatch(item)
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as e:
            self.metrics.failed += 1
            if not item.future.done():
                item.future.set_exception(e)
        else:
            self.metrics.succeeded += 1
            if not item.future.done():
                item.future.set_result(result)

    # ------------------------------------------------------------------
    # Per-item dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, item: RequestItem) -> Any:
        last_error: Optional[BaseException] = None

        while item.attempts < self.max_attempts:
            endpoint = await self.pool.acquire_endpoint()
            if endpoint is None:
                break
            item.attempts += 1

            try:
                self.state.breakers.guard(endpoint)
            except CircuitOpenError as e:
                self.metrics.circuit_rejections += 1
                last_error = e
                if await self.pool.rotate(failed_endpoint=endpoint, reason="circuit_open") is None:
                    break
                continue

            await self.state.limiter.acquire()
            start = self.clock()

            try:
                result = await self._call(item.operation, endpoint)
            except RateLimitedError as e:
                last_error = e
                self.metrics.rate_limited += 1
                self._record_failure(endpoint, start, e, rate_limited=True)
                if await self.pool.rotate(
                    failed_endpoint=endpoint, rate_limited=True, reason="rate_limited"
                ) is None:
                    # Pool already settled once; go straight to the fallbacks
                    break
                if not item.rescheduled:
                    item.rescheduled = True
                    self.metrics.rescheduled += 1
                    logger.info(
                        "request_rescheduled",
                        label=item.label,
                        endpoint=endpoint,
                        delay_seconds=self.reschedule_delay,
                    )
                    await self.sleep(self.reschedule_delay)
                continue
            except TransientNetworkError as e:
                last_error = e
                self.metrics.transient_errors += 1
                self._record_failure(endpoint, start, e)
                if await self.pool.rotate(failed_endpoint=endpoint, reason="transient_error") is None:
                    break
                if item.attempts < self.max_attempts:
                    await self.sleep(self.retry_delay(item.attempts))
                continue
            except RpcResponseError:
                # The node answered; the request itself is at fault
                self._record_success(endpoint, start)
                raise

            self._record_success(endpoint, start)
            return result

        self.metrics.fallbacks += 1
        logger.warning(
            "escalating_to_fallback",
            label=item.label,
            attempts=item.attempts,
            last_error=str(last_error) if last_error else None,
        )
        try:
            return await self.pool.execute_fallback(
                lambda url: self._call(item.operation, url)
            )
        except AllEndpointsExhaustedError as e:
            if e.last_error is None:
                e.last_error = last_error
            logger.error("all_endpoints_exhausted", label=item.label, error=str(e.last_error))
            raise

    async def _call(self, operation: Operation, endpoint: str) -> Any:
        client = self.client_factory(endpoint)
        try:
            return await asyncio.wait_for(operation(client), timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(
                f"Request timed out after {self.request_timeout}s", endpoint=endpoint
            ) from e

    def retry_delay(self, attempt: int) -> float:
        """Exponential backoff before retrying a transient failure."""
        return min(self.retry_base_delay * (2 ** (attempt - 1)), self.retry_max_delay)

    def _record_success(self, endpoint: str, start: float):
        latency_ms = (self.clock() - start) * 1000
        self.state.tracker.record_success(endpoint, latency_ms)
        self.state.breakers.record_success(endpoint)
        self.state.limiter.record_success()

    def _record_failure(self, endpoint: str, start: float, error: RpcError, rate_limited: bool = False):
        latency_ms = (self.clock() - start) * 1000
        self.state.tracker.record_failure(
            endpoint, latency_ms=latency_ms, rate_limited=rate_limited, error=str(error)
        )
        self.state.breakers.record_failure(endpoint)
        if rate_limited:
            self.state.limiter.record_failure()
        logger.warning(
            "endpoint_rate_limited" if rate_limited else "endpoint_request_failed",
            endpoint=endpoint,
            error=str(error),
        )

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _counters(self) -> Dict[str, int]:
        return dict(vars(self.metrics))

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._counters(),
            "priority_queue_depth": len(self.priority_queue),
            "normal_queue_depth": len(self.normal_queue),
            "draining": self._draining,
            "next_batch_interval": self.next_batch_interval(),
        }
