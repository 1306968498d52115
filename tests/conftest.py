"""Shared pytest fixtures for the redlead test suite."""

from __future__ import annotations

from typing import Callable

import fakeredis
import pytest

from redlead.core.config import Settings
from redlead.core.store import RedisStore


class FakeClock:
    """Manually advanced clock for TTL and breaker timeouts."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Settings isolated from the host environment and any .env file."""

    def _make(**overrides) -> Settings:
        values = {
            "redis_url": None,
            "use_queue": True,
            "log_format": "console",
            "worker_poll_interval": 0.01,
            "cache_sweep_interval": 60.0,
            "job_handlers_module": None,
            "cron_allow_overlap": False,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def fake_redis() -> fakeredis.FakeAsyncRedis:
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def offline_store(settings: Settings) -> RedisStore:
    """A store that never connected: degraded mode."""
    return RedisStore(settings)


@pytest.fixture
def online_store(settings: Settings, fake_redis) -> RedisStore:
    store = RedisStore(settings)
    store.attach(fake_redis)
    return store
