"""Creates and tracks queues and workers for one process."""

import asyncio
from typing import Dict, List, Optional

from redlead.constants import (
    DEFAULT_JOB_ATTEMPTS,
    DEFAULT_JOB_BACKOFF_SECONDS,
    DEFAULT_JOB_PRIORITY,
    KEEP_COMPLETED_JOBS,
    KEEP_COMPLETED_SECONDS,
    KEEP_FAILED_JOBS,
)
from redlead.core.config import Settings
from redlead.core.logging import get_logger
from redlead.core.store import RedisStore
from .models import JobOptions, RetentionPolicy
from .queue import JobQueue
from .worker import JobWorker, Processor

logger = get_logger(__name__)


def queue_job_defaults() -> JobOptions:
    return JobOptions(
        priority=DEFAULT_JOB_PRIORITY,
        attempts=DEFAULT_JOB_ATTEMPTS,
        backoff_delay=DEFAULT_JOB_BACKOFF_SECONDS,
    )


def default_retention() -> RetentionPolicy:
    return RetentionPolicy(
        keep_completed=KEEP_COMPLETED_JOBS,
        completed_max_age=KEEP_COMPLETED_SECONDS,
        keep_failed=KEEP_FAILED_JOBS,
    )


class JobQueueManager:
    """Factory for queues and workers.

    Both factories return None while Redis is unavailable. The scheduler
    treats that as the signal to fall back to in-process cron timers.
    """

    def __init__(self, settings: Settings, store: RedisStore):
        self.settings = settings
        self.store = store
        self.queues: Dict[str, JobQueue] = {}
        self.workers: List[JobWorker] = []

    def is_available(self) -> bool:
        return self.store.is_available()

    def create_queue(self, name: str,
                     default_job_options: Optional[JobOptions] = None,
                     retention: Optional[RetentionPolicy] = None) -> Optional[JobQueue]:
        """Return the queue named ``name``, or None without Redis."""
        client = self.store.get_client()
        if client is None:
            logger.info("Queue not available - Redis not connected", queue=name)
            return None

        if name in self.queues:
            return self.queues[name]

        queue = JobQueue(
            name,
            client,
            prefix=self.settings.queue_prefix,
            default_job_options=default_job_options or queue_job_defaults(),
            retention=retention or default_retention(),
            lock_duration=self.settings.job_lock_duration,
        )
        self.queues[name] = queue
        logger.info("Queue created", queue=name)
        return queue

    def create_worker(self, name: str, processor: Processor,
                      concurrency: Optional[int] = None,
                      autorun: bool = True) -> Optional[JobWorker]:
        """Attach ``processor`` to the queue ``name``, or None without Redis."""
        queue = self.create_queue(name)
        if queue is None:
            logger.info("Worker not available - Redis not connected", worker=name)
            return None

        worker = JobWorker(
            queue,
            processor,
            concurrency=concurrency or self.settings.worker_concurrency,
            poll_interval=self.settings.worker_poll_interval,
            stalled_interval=self.settings.stalled_check_interval,
        )
        worker.on("failed", lambda job, err: logger.warning(
            "Job failed event", queue=name, job_id=job.id,
            error=str(err), attempts=job.attempts_made))
        worker.on("error", lambda err: logger.error(
            "Worker error", worker=name, error=str(err)))

        self.workers.append(worker)
        if autorun:
            worker.start()
        logger.info("Worker created", worker=name)
        return worker

    async def close_all(self) -> None:
        """Close every worker, then every queue."""
        logger.info("Closing all queues and workers")

        results = await asyncio.gather(*(w.close() for w in self.workers), return_exceptions=True)
        for worker, result in zip(self.workers, results):
            if isinstance(result, Exception):
                logger.error("Error closing worker", worker=worker.name, error=str(result))

        results = await asyncio.gather(*(q.close() for q in self.queues.values()),
                                       return_exceptions=True)
        for name, result in zip(self.queues, results):
            if isinstance(result, Exception):
                logger.error("Error closing queue", queue=name, error=str(result))

        self.workers.clear()
        self.queues.clear()
        logger.info("All queues and workers closed")
