"""Readiness endpoints."""

from datetime import datetime, timezone

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends
from fastapi.responses import ORJSONResponse

from redlead.core.cache import CacheService
from redlead.core.container import Container
from redlead.core.health import get_health_status
from redlead.core.store import RedisStore
from redlead.services.circuit_breaker import CircuitBreakerRegistry
from redlead.services.scheduler import JobScheduler

router = APIRouter(tags=["health"])


@router.get("/health")
@inject
async def health_check(
    store: RedisStore = Depends(Provide[Container.store]),
    cache: CacheService = Depends(Provide[Container.cache]),
    scheduler: JobScheduler = Depends(Provide[Container.scheduler]),
    breakers: CircuitBreakerRegistry = Depends(Provide[Container.breakers]),
):
    """Cache and store readiness; 503 only when caching itself is broken."""
    status = await get_health_status(store, cache, scheduler, breakers)
    status["timestamp"] = datetime.now(timezone.utc).isoformat()
    code = 503 if status["status"] == "unhealthy" else 200
    return ORJSONResponse(status, status_code=code)


@router.get("/health/jobs")
@inject
async def scheduled_jobs(
    scheduler: JobScheduler = Depends(Provide[Container.scheduler]),
):
    """Scheduling mode and the recurring jobs installed under it."""
    return await scheduler.describe()
