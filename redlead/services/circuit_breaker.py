"""Circuit breaker for calls to external services (AI provider, Reddit).

State transitions:
    CLOSED -> OPEN        after ``failure_threshold`` consecutive failures
    OPEN -> HALF_OPEN     on the first call once ``timeout`` has elapsed
    HALF_OPEN -> CLOSED   after ``success_threshold`` successes
    HALF_OPEN -> OPEN     on any failure

While HALF_OPEN only one trial call is in flight at a time; concurrent
callers are rejected with CircuitOpenError until it settles.
"""

import functools
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from redlead.core.logging import get_logger
from redlead.core.metrics import circuit_breaker_state

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.OPEN: 1,
    CircuitState.HALF_OPEN: 2,
}


class CircuitOpenError(Exception):
    """Raised instead of calling a service whose breaker is open."""

    def __init__(self, service: str, retry_after: float):
        self.service = service
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker is OPEN for {service}")


@dataclass
class CircuitBreakerOptions:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: float = 30.0  # seconds


class CircuitBreaker:
    """Failure tracker for one named service."""

    def __init__(self, name: str, options: Optional[CircuitBreakerOptions] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.options = options or CircuitBreakerOptions()
        self._clock = clock
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_at = clock()
        self._trial_in_flight = False
        self._set_state(CircuitState.CLOSED)

    def _set_state(self, state: CircuitState) -> None:
        self.state = state
        circuit_breaker_state.labels(service=self.name).set(STATE_GAUGE_VALUES[state])

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` through the breaker.

        Raises CircuitOpenError without calling ``fn`` while open. Errors
        raised by ``fn`` are re-raised unchanged after bookkeeping.
        """
        if self.state == CircuitState.OPEN:
            now = self._clock()
            if now < self.next_attempt_at:
                logger.warning("Circuit breaker rejecting call",
                               service=self.name, state=self.state.value)
                raise CircuitOpenError(self.name, self.next_attempt_at - now)
            self._set_state(CircuitState.HALF_OPEN)
            self.success_count = 0
            logger.info("Circuit breaker transitioning to HALF_OPEN", service=self.name)

        if self.state != CircuitState.HALF_OPEN:
            return await self._call(fn)

        if self._trial_in_flight:
            logger.warning("Circuit breaker rejecting call - trial call in flight",
                           service=self.name, state=self.state.value)
            raise CircuitOpenError(self.name, 0.0)
        self._trial_in_flight = True
        try:
            return await self._call(fn)
        finally:
            self._trial_in_flight = False

    async def _call(self, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await fn()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.options.success_threshold:
                self._set_state(CircuitState.CLOSED)
                self.success_count = 0
                logger.info("Circuit breaker CLOSED", service=self.name)

    def _on_failure(self) -> None:
        self.success_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self._open()
            return
        self.failure_count += 1
        if self.failure_count >= self.options.failure_threshold:
            self._open()

    def _open(self) -> None:
        failures = self.failure_count
        self._set_state(CircuitState.OPEN)
        self.failure_count = 0
        self.next_attempt_at = self._clock() + self.options.timeout
        logger.error("Circuit breaker OPENED", service=self.name,
                     failure_count=failures, timeout_seconds=self.options.timeout)

    def reset(self) -> None:
        self._set_state(CircuitState.CLOSED)
        self.failure_count = 0
        self.success_count = 0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "retry_in_seconds": max(0.0, round(self.next_attempt_at - self._clock(), 3))
            if self.state == CircuitState.OPEN else 0.0,
        }


class CircuitBreakerRegistry:
    """One breaker per service name, created on first use.

    A process builds a single registry at startup and shares it, so every
    call site naming the same service sees the same breaker.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str, **options) -> CircuitBreaker:
        """Get or create the breaker for ``name``.

        Options only apply when the breaker is created.
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, CircuitBreakerOptions(**options), clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    async def execute(self, name: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await self.get(name).execute(fn)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}


def with_circuit_breaker(registry: CircuitBreakerRegistry, service: str):
    """Decorator form: wrap an async function with the named breaker."""

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs) -> T:
            return await registry.get(service).execute(lambda: fn(*args, **kwargs))
        return wrapper

    return decorator
