"""
Per-Endpoint Circuit Breaker
============================

States:
- CLOSED: normal operation, counting failures
- OPEN: every dispatch is rejected with CircuitOpenError until reset_at

A breaker opens once ``failure_threshold`` failures accumulate and closes
by itself after ``reset_interval`` seconds, with its failure count zeroed.
A single success while closed clears the count.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

import structlog

from .errors import CircuitOpenError

logger = structlog.get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"   # Normal operation
    OPEN = "open"       # Fail fast


@dataclass
class CircuitBreaker:
    """Failure-threshold gate for a single endpoint."""
    endpoint: str
    failure_threshold: int = 3
    reset_interval: float = 180.0

    clock: Callable[[], float] = field(default=time.time, repr=False)

    current_failures: int = field(default=0, init=False)
    opened_at: Optional[float] = field(default=None, init=False)
    reset_at: Optional[float] = field(default=None, init=False)
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _history: deque = field(default_factory=lambda: deque(maxlen=50), init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        self._check_reset()
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _check_reset(self):
        if self._state == CircuitState.OPEN and self.reset_at is not None:
            if self.clock() >= self.reset_at:
                self._transition_to(CircuitState.CLOSED)

    def _transition_to(self, new_state: CircuitState):
        old_state = self._state
        self._state = new_state
        now = self.clock()

        if new_state == CircuitState.OPEN:
            self.opened_at = now
            self.reset_at = now + self.reset_interval
        else:
            self.current_failures = 0
            self.opened_at = None
            self.reset_at = None

        self._history.append({
            "from": old_state.value,
            "to": new_state.value,
            "time": now,
        })

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "circuit_state_changed",
            endpoint=self.endpoint,
            old_state=old_state.value,
            new_state=new_state.value,
        )

    def retry_after(self) -> float:
        """Seconds until an open circuit closes (0 when closed)."""
        if self.state != CircuitState.OPEN or self.reset_at is None:
            return 0.0
        return max(0.0, self.reset_at - self.clock())

    def guard(self):
        """
        Reject dispatch while open.

        Raises:
            CircuitOpenError: the circuit is open
        """
        if self.state == CircuitState.OPEN:
            raise CircuitOpenError(self.endpoint, self.retry_after())

    def record_success(self):
        """First success proves liveness: clear the failure count."""
        if self.state == CircuitState.CLOSED:
            self.current_failures = 0

    def record_failure(self):
        if self.state == CircuitState.OPEN:
            return
        self.current_failures += 1
        if self.current_failures >= self.failure_threshold:
            self._transition_to(CircuitState.OPEN)

    def force_open(self):
        """Manually trip the circuit."""
        if self._state != CircuitState.OPEN:
            self._transition_to(CircuitState.OPEN)

    def force_close(self):
        """Manually close the circuit."""
        if self._state != CircuitState.CLOSED:
            self._transition_to(CircuitState.CLOSED)

    def get_stats(self) -> Dict:
        state = self.state
        return {
            "state": state.value,
            "failure_threshold": self.failure_threshold,
            "current_failures": self.current_failures,
            "opened_at": self.opened_at,
            "reset_at": self.reset_at,
            "history": list(self._history)[-10:],
        }


class CircuitBreakerRegistry:
    """One breaker per endpoint URL, with thresholds chosen by endpoint class."""

    def __init__(
        self,
        failure_threshold: int = 3,
        reset_interval: float = 180.0,
        class_thresholds: Optional[Dict[str, int]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.failure_threshold = failure_threshold
        self.reset_interval = reset_interval
        self.class_thresholds = dict(class_thresholds or {})
        self.clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def add(self, endpoint: str, endpoint_class: Optional[str] = None) -> CircuitBreaker:
        """Register a breaker (idempotent)."""
        if endpoint not in self._breakers:
            threshold = self.class_thresholds.get(endpoint_class, self.failure_threshold)
            self._breakers[endpoint] = CircuitBreaker(
                endpoint=endpoint,
                failure_threshold=threshold,
                reset_interval=self.reset_interval,
                clock=self.clock,
            )
        return self._breakers[endpoint]

    def remove(self, endpoint: str):
        self._breakers.pop(endpoint, None)

    def get(self, endpoint: str) -> CircuitBreaker:
        return self._breakers.get(endpoint) or self.add(endpoint)

    def is_open(self, endpoint: str) -> bool:
        return self.get(endpoint).is_open

    def guard(self, endpoint: str):
        self.get(endpoint).guard()

    def record_success(self, endpoint: str):
        self.get(endpoint).record_success()

    def record_failure(self, endpoint: str):
        self.get(endpoint).record_failure()

    def open_endpoints(self) -> List[str]:
        return [url for url, breaker in self._breakers.items() if breaker.is_open]

    def __contains__(self, endpoint: str) -> bool:
        return endpoint in self._breakers

    def get_stats(self) -> Dict[str, Dict]:
        return {url: breaker.get_stats() for url, breaker in self._breakers.items()}
