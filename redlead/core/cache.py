"""Cache service with Redis (shared) or in-process memory backend.

The cache is a performance optimization, never a correctness dependency:
every Redis failure is absorbed by redoing the operation against the
memory backend, so callers never see a cache error.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from redlead.core.config import Settings
from redlead.core.logging import get_logger, log_cache_operation
from redlead.core.metrics import track_cache_lookup
from redlead.core.store import RedisStore

logger = get_logger(__name__)


class CacheBackend(Protocol):
    """Operations both cache backends provide."""

    name: str

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...

    async def size(self) -> int: ...


@dataclass
class CacheEntry:
    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at < now


class MemoryCacheBackend:
    """Bounded in-process map with TTL.

    Expired entries are dropped lazily on read and by ``sweep``. When the
    map grows past ``max_entries`` the sweep clears it entirely; this is
    coarse on purpose, it only bounds memory.
    """

    name = "memory"

    def __init__(self, max_entries: int = 1000,
                 clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            log_cache_operation(logger, "expire", key, self.name)
            return None
        return entry.value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()

    async def size(self) -> int:
        return len(self._entries)

    def sweep(self) -> int:
        """Remove expired entries, then enforce the size ceiling."""
        now = self._clock()
        expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]

        if expired:
            logger.debug("Memory cache cleanup", removed_entries=len(expired))

        if len(self._entries) > self.max_entries:
            logger.warning("Memory cache size limit reached - clearing cache",
                           size=len(self._entries))
            self._entries.clear()

        return len(expired)


class RedisCacheBackend:
    """JSON-serialised values in the shared Redis database."""

    name = "redis"

    def __init__(self, store: RedisStore):
        self.store = store

    def _client(self):
        client = self.store.get_client()
        if client is None:
            raise ConnectionError("Redis is not available")
        return client

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client().get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        await self._client().setex(key, ttl, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        await self._client().delete(key)

    async def clear(self) -> None:
        await self._client().flushdb()

    async def size(self) -> int:
        return await self._client().dbsize()


class CacheService:
    """Routes cache operations to Redis when available, memory otherwise.

    The backend is picked per call from the store's availability, so a
    Redis outage mid-session degrades to memory without a restart. Entries
    written to one backend are not copied to the other on recovery.
    """

    def __init__(self, settings: Settings, store: RedisStore,
                 memory: Optional[MemoryCacheBackend] = None):
        self.settings = settings
        self.store = store
        self.memory = memory or MemoryCacheBackend(max_entries=settings.cache_max_entries)
        self.redis = RedisCacheBackend(store)
        self._sweep_task: Optional[asyncio.Task] = None

    def _backend(self) -> CacheBackend:
        return self.redis if self.store.is_available() else self.memory

    async def start(self) -> None:
        """Start the periodic memory sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="cache-sweep")
            logger.info("Cache service started", backend=self._backend().name,
                        sweep_interval=self.settings.cache_sweep_interval)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cache_sweep_interval)
            try:
                self.memory.sweep()
            except Exception as e:
                logger.error("Memory cache sweep failed", error=str(e))

    async def shutdown(self) -> None:
        """Stop the sweep and drop process-local entries."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.memory.clear()

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache. Returns None on miss or expiry."""
        backend = self._backend()
        try:
            value = await backend.get(key)
        except Exception as e:
            logger.error("Cache get failed - checking memory fallback", key=key, error=str(e))
            backend = self.memory
            value = await self.memory.get(key)
        log_cache_operation(logger, "get", key, backend.name, hit=value is not None)
        track_cache_lookup(backend.name, hit=value is not None)
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache with TTL in seconds (default CACHE_TTL)."""
        ttl = ttl if ttl is not None else self.settings.cache_ttl
        backend = self._backend()
        try:
            await backend.set(key, value, ttl)
        except Exception as e:
            logger.error("Cache set failed - using memory fallback", key=key, error=str(e))
            backend = self.memory
            await self.memory.set(key, value, ttl)
        log_cache_operation(logger, "set", key, backend.name, ttl=ttl)

    async def delete(self, key: str) -> None:
        """Delete value from cache."""
        backend = self._backend()
        try:
            await backend.delete(key)
        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            backend = self.memory
            await self.memory.delete(key)
        log_cache_operation(logger, "delete", key, backend.name)

    async def clear(self) -> None:
        """Clear all cache entries (flushes the Redis database)."""
        backend = self._backend()
        try:
            await backend.clear()
        except Exception as e:
            logger.error("Cache clear failed", error=str(e))
            backend = self.memory
            await self.memory.clear()
        logger.info("Cache cleared", backend=backend.name)

    async def get_or_set(self, key: str, factory: Callable[[], Awaitable[Any]],
                         ttl: Optional[int] = None) -> Any:
        """Return the cached value, computing and storing it on a miss.

        Errors raised by ``factory`` propagate; nothing is cached for them.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await factory()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def stats(self) -> Dict[str, Any]:
        """Backend name, whether it answered, and its size."""
        if self.store.is_available():
            try:
                return {"backend": "redis", "available": True, "size": await self.redis.size()}
            except Exception as e:
                logger.warning("Cache stats failed", error=str(e))
                return {"backend": "redis", "available": False}
        return {"backend": "memory", "available": True, "size": await self.memory.size()}

    def is_redis_available(self) -> bool:
        return self.store.is_available()
