"""Health check utilities for the readiness endpoint.

Reports whether caching works and whether the shared store is reachable.
A missing store makes the service "degraded", not unhealthy: every
component has an in-process fallback.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

import psutil

if TYPE_CHECKING:
    from redlead.core.cache import CacheService
    from redlead.core.store import RedisStore
    from redlead.services.circuit_breaker import CircuitBreakerRegistry
    from redlead.services.scheduler import JobScheduler

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the process startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


def get_memory_mb() -> float:
    """Get current process memory usage in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


async def check_cache(cache: "CacheService") -> bool:
    """Round-trip a key through whichever backend is active."""
    test_key = "_health_check"
    await cache.set(test_key, "ok", ttl=10)
    result = await cache.get(test_key)
    await cache.delete(test_key)
    return result == "ok"


async def get_health_status(
    store: "RedisStore",
    cache: "CacheService",
    scheduler: "JobScheduler",
    breakers: "CircuitBreakerRegistry",
) -> Dict[str, Any]:
    """Get comprehensive health status for the /health endpoint."""
    store_reachable = await store.ping()
    cache_healthy = await check_cache(cache)
    cache_stats = await cache.stats()

    if not cache_healthy:
        overall_status = "unhealthy"
    elif store_reachable:
        overall_status = "healthy"
    else:
        overall_status = "degraded"

    return {
        "status": overall_status,
        "uptime_seconds": round(get_uptime(), 1),
        "memory_mb": round(get_memory_mb(), 1),
        "checks": {
            "store": store_reachable,
            "cache": cache_healthy,
        },
        "cache": cache_stats,
        "scheduler": {
            "mode": scheduler.mode.value if scheduler.mode else None,
        },
        "circuit_breakers": breakers.snapshot(),
    }
