"""Breaker + retry composition for outbound AI and Reddit calls."""

from typing import Awaitable, Callable, Optional, TypeVar

from redlead.services.circuit_breaker import CircuitBreakerRegistry, CircuitOpenError
from redlead.services.retry import RetryOptions, is_retryable_error, retry_http

T = TypeVar("T")

AI_SERVICE = "ai-provider"
REDDIT_SERVICE = "reddit-api"


def _retryable_unless_open(error: BaseException) -> bool:
    # An open breaker will still be open a second later; fail fast instead.
    if isinstance(error, CircuitOpenError):
        return False
    return is_retryable_error(error)


class ExternalCallGuard:
    """Wraps each attempt in the service's breaker and retries transient errors.

    Every attempt counts against the breaker, so a burst of retries against
    a dead service trips it and later callers fail fast with
    CircuitOpenError.
    """

    def __init__(self, breakers: CircuitBreakerRegistry,
                 retry_options: Optional[RetryOptions] = None):
        self.breakers = breakers
        self.retry_options = retry_options or RetryOptions()

    async def call(self, service: str, fn: Callable[[], Awaitable[T]],
                   retry_options: Optional[RetryOptions] = None) -> T:
        breaker = self.breakers.get(service)
        return await retry_http(
            lambda: breaker.execute(fn),
            options=retry_options or self.retry_options,
            retry_if=_retryable_unless_open,
        )

    async def ai(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await self.call(AI_SERVICE, fn)

    async def reddit(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await self.call(REDDIT_SERVICE, fn)
