"""Tests for the breaker + retry guard around external calls."""

from __future__ import annotations

import pytest

from redlead.services.circuit_breaker import CircuitBreakerRegistry, CircuitOpenError, CircuitState
from redlead.services.guard import AI_SERVICE, REDDIT_SERVICE, ExternalCallGuard
from redlead.services.retry import RetryOptions


@pytest.fixture
def guard(clock) -> ExternalCallGuard:
    return ExternalCallGuard(CircuitBreakerRegistry(clock=clock),
                             RetryOptions(max_attempts=3, initial_delay=0, max_delay=0))


@pytest.mark.asyncio
async def test_transient_failure_is_retried(guard) -> None:
    calls = []

    async def call():
        calls.append(1)
        if len(calls) < 2:
            raise ConnectionResetError("reset")
        return {"score": 0.8}

    assert await guard.ai(call) == {"score": 0.8}
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_each_attempt_counts_against_breaker(guard) -> None:
    guard.breakers.get(REDDIT_SERVICE, failure_threshold=3)

    async def call():
        raise ConnectionRefusedError("down")

    with pytest.raises(ConnectionRefusedError):
        await guard.reddit(call)

    assert guard.breakers.get(REDDIT_SERVICE).state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_open_breaker_fails_fast(guard) -> None:
    guard.breakers.get(AI_SERVICE, failure_threshold=1)
    calls = []

    async def call():
        calls.append(1)
        raise TimeoutError()

    with pytest.raises(TimeoutError):
        await guard.call(AI_SERVICE, call, RetryOptions(max_attempts=1))

    with pytest.raises(CircuitOpenError):
        await guard.ai(call)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_permanent_error_not_retried(guard) -> None:
    calls = []

    async def call():
        calls.append(1)
        raise ValueError("bad prompt")

    with pytest.raises(ValueError):
        await guard.ai(call)
    assert len(calls) == 1
