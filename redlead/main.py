"""
API process entry point.

Boots the Redis probe, the cache and the job scheduler exactly once and
serves the readiness surface. In queue mode the recurring jobs are only
enqueued here; run ``redlead-worker`` alongside to execute them.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from redlead.core.container import Container, container as default_container
from redlead.core.health import set_startup_time
from redlead.core.logging import configure_logging, get_logger
from redlead.routers import health, metrics

logger = get_logger(__name__)


def create_app(app_container: Optional[Container] = None) -> FastAPI:
    """Build the API app around ``app_container`` (the global one by default)."""
    app_container = app_container or default_container

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = app_container.settings()
        logger.info("Starting RedLead API process")
        set_startup_time()

        app_container.wire(modules=["redlead.routers.health"])

        await app_container.store().initialize()
        await app_container.cache().start()

        handlers = app_container.handlers()
        handlers.load_module(settings.job_handlers_module)

        scheduler = app_container.scheduler()
        await scheduler.initialize()

        logger.info("Services started successfully", scheduler_mode=scheduler.mode.value)
        yield

        await scheduler.shutdown()
        await app_container.cache().shutdown()
        await app_container.store().close()
        app_container.unwire()
        logger.info("Services shutdown complete")

    app = FastAPI(
        title="RedLead background services",
        version="1.0.0",
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
    )
    app.state.container = app_container
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


def run() -> None:
    """Console script: serve the API with uvicorn."""
    import uvicorn

    settings = default_container.settings()
    configure_logging(settings, service="redlead-api")
    logger.info("Starting RedLead API", host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        create_app(),
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
