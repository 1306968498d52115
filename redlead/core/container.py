"""Dependency injection container.

Every process-scoped object (store handle, cache, breaker registry, queue
manager, scheduler) is a Singleton built once per process and injected,
so tests can build isolated instances without touching module state.
"""

from dependency_injector import containers, providers

from redlead.core.config import Settings
from redlead.core.store import RedisStore
from redlead.core.cache import CacheService
from redlead.services.circuit_breaker import CircuitBreakerRegistry
from redlead.services.guard import ExternalCallGuard
from redlead.services.handlers import JobHandlerRegistry
from redlead.services.queue import JobQueueManager
from redlead.services.scheduler import JobScheduler


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    settings = providers.Singleton(
        Settings,
    )

    # Backing store probe (Redis optional)
    store = providers.Singleton(
        RedisStore,
        settings=settings
    )

    # Cache service (Redis when available, memory otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings,
        store=store
    )

    breakers = providers.Singleton(
        CircuitBreakerRegistry,
    )

    external_calls = providers.Singleton(
        ExternalCallGuard,
        breakers=breakers
    )

    handlers = providers.Singleton(
        JobHandlerRegistry,
    )

    queue_manager = providers.Singleton(
        JobQueueManager,
        settings=settings,
        store=store
    )

    scheduler = providers.Singleton(
        JobScheduler,
        settings=settings,
        store=store,
        queue_manager=queue_manager,
        handlers=handlers
    )


# Global container instance
container = Container()
