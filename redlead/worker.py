"""Standalone worker process.

Runs only the queue consumers, never the API, so workers can be scaled
and restarted independently. Requires Redis: unlike the API process there
is no useful degraded mode, so a missing store is a fatal startup error.

Usage:
    redlead-worker          # console script
    python -m redlead.worker
"""

import asyncio
import signal
import sys
from typing import Optional

from redlead.constants import ALL_QUEUES
from redlead.core.container import Container, container as default_container
from redlead.core.logging import configure_logging, get_logger
from redlead.services.handlers import HandlerNotRegisteredError, JobHandlerRegistry
from redlead.services.queue import Job, UnrecoverableJobError

logger = get_logger(__name__)


def make_processor(handlers: JobHandlerRegistry, queue_name: str):
    """Queue processor that runs the queue's registered worker function."""

    async def process(job: Job) -> None:
        logger.info("Running worker from queue", queue=queue_name, job_name=job.name,
                    job_id=job.id)
        try:
            handler = handlers.get(queue_name)
        except HandlerNotRegisteredError as e:
            raise UnrecoverableJobError(str(e)) from e
        await handler()

    return process


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal support; Ctrl+C still raises.
            pass


async def run_worker_process(app_container: Optional[Container] = None,
                             stop: Optional[asyncio.Event] = None) -> int:
    """Start one worker per queue and run until ``stop`` is set.

    Returns the process exit code.
    """
    app_container = app_container or default_container
    settings = app_container.settings()
    store = app_container.store()

    logger.info("Worker process starting", queues=list(ALL_QUEUES))
    await store.initialize()

    if not store.is_available():
        logger.error("Worker cannot start - Redis not available. "
                     "Workers require Redis; set the REDIS_URL environment variable.")
        return 1

    handlers = app_container.handlers()
    handlers.load_module(settings.job_handlers_module)
    registered = [name for name in ALL_QUEUES if handlers.has(name)]
    if not registered:
        logger.error("Worker cannot start - no job handlers registered",
                     handlers_module=settings.job_handlers_module)
        await store.close()
        return 1
    for name in handlers.missing():
        logger.warning("No handler registered - queue will not be consumed", queue=name)

    queue_manager = app_container.queue_manager()
    for name in registered:
        queue_manager.create_worker(name, make_processor(handlers, name))

    logger.info("All workers started - processing jobs from Redis queues",
                workers=registered, concurrency=settings.worker_concurrency)

    stop = stop or asyncio.Event()
    _install_signal_handlers(stop)
    await stop.wait()

    logger.info("Shutdown signal received - closing workers")
    await queue_manager.close_all()
    await store.close()
    logger.info("Worker process stopped")
    return 0


def main() -> None:
    settings = default_container.settings()
    configure_logging(settings, service="redlead-worker")
    try:
        exit_code = asyncio.run(run_worker_process())
    except Exception:
        logger.exception("Failed to start worker process")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
