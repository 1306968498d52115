"""Redis backing-store probe.

Redis is optional. When REDIS_URL is missing or the server cannot be
reached the process keeps running in degraded mode: the cache uses process
memory and the scheduler falls back to in-process cron timers. Absence of
Redis is a normal state here, never an error.
"""

import asyncio
from typing import Optional

import redis.asyncio as redis

from redlead.core.config import Settings
from redlead.core.logging import get_logger

logger = get_logger(__name__)


def _redact(url: str) -> str:
    """Drop credentials from a redis URL before logging it."""
    return url.split("@", 1)[1] if "@" in url else url


class RedisStore:
    """Owns the shared Redis client and tracks whether it is usable.

    redis-py exposes no connect/close events, so availability is kept
    current by a monitor task that pings on a fixed interval and flips the
    flag on every transition.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._client: Optional[redis.Redis] = None
        self._available = False
        self._monitor_task: Optional[asyncio.Task] = None

    async def initialize(self) -> bool:
        """Connect and ping. Returns the resulting availability."""
        if self._client is not None:
            return await self.ping()

        url = self.settings.redis_url
        if not url:
            logger.info("Redis URL not configured - using in-memory fallbacks")
            self._available = False
            return False

        try:
            logger.info("Initializing Redis connection", url=_redact(url))
            self._client = redis.from_url(
                url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self.settings.redis_socket_timeout,
                socket_connect_timeout=self.settings.redis_socket_timeout,
                retry_on_timeout=True,
            )
            await self._client.ping()
        except Exception as e:
            logger.warning("Redis connection failed - falling back to degraded mode",
                           error=str(e))
            await self._discard_client()
            self._available = False
            return False

        self._available = True
        logger.info("Redis connected successfully")
        self._start_monitor()
        return True

    def attach(self, client: "redis.Redis") -> None:
        """Use an already-connected client (tests, embedding)."""
        self._client = client
        self._available = True

    def is_available(self) -> bool:
        return self._available and self._client is not None

    def get_client(self) -> Optional["redis.Redis"]:
        """Live client, or None while Redis is unavailable."""
        return self._client if self.is_available() else None

    async def ping(self) -> bool:
        """On-demand connectivity check; updates availability."""
        if self._client is None:
            return False
        try:
            await self._client.ping()
        except Exception as e:
            self._mark(False, error=str(e))
            return False
        self._mark(True)
        return True

    def _mark(self, available: bool, **context) -> None:
        if available == self._available:
            return
        self._available = available
        if available:
            logger.info("Redis ready")
        else:
            logger.warning("Redis connection lost", **context)

    def _start_monitor(self) -> None:
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.create_task(self._monitor_loop(), name="redis-monitor")

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.redis_health_interval)
            await self.ping()

    async def _discard_client(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.debug("Ignoring error while discarding Redis client", error=str(e))
        self._client = None

    async def close(self) -> None:
        """Stop monitoring and close the connection pool."""
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None

        if self._client is not None:
            try:
                await self._client.aclose()
                logger.info("Redis connection closed gracefully")
            except Exception as e:
                logger.error("Error closing Redis connection", error=str(e))
        self._client = None
        self._available = False
