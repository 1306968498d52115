"""
Job scheduler: Redis queues when available, APScheduler cron otherwise.

The mode is decided once per process in ``initialize()``:

- QUEUE: Redis is reachable and USE_QUEUE is not false. The six recurring
  jobs are installed as repeatable queue jobs. Nothing runs them in this
  process; a separate ``redlead-worker`` process must be running.
- CRON: the same six jobs run in-process on APScheduler cron triggers.

Exactly one mode is active, otherwise every job would run twice.
"""
import asyncio
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from redlead.core.config import Settings
from redlead.core.logging import get_logger
from redlead.core.store import RedisStore
from redlead.services.handlers import JobHandlerRegistry
from redlead.services.queue import JobQueueManager, RECURRING_JOBS, RecurringJob, schedule_recurring_jobs

logger = get_logger(__name__)

# Upper bound on concurrent runs of one job when overlap is allowed
MAX_OVERLAPPING_RUNS = 10


class SchedulerMode(str, Enum):
    QUEUE = "queue"
    CRON = "cron"


class JobScheduler:
    """Installs the recurring jobs under exactly one scheduling mode."""

    def __init__(self, settings: Settings, store: RedisStore,
                 queue_manager: JobQueueManager, handlers: JobHandlerRegistry):
        self.settings = settings
        self.store = store
        self.queue_manager = queue_manager
        self.handlers = handlers
        self.mode: Optional[SchedulerMode] = None
        self._cron: Optional[AsyncIOScheduler] = None
        self._running: Set[str] = set()

    async def initialize(self) -> SchedulerMode:
        """Pick the mode and install the recurring jobs. Call once."""
        if self.mode is not None:
            logger.warning("Scheduler already initialized", mode=self.mode.value)
            return self.mode

        logger.info("Initializing job scheduler")
        use_queues = self.store.is_available() and self.settings.use_queue

        if use_queues:
            self.mode = SchedulerMode.QUEUE
            logger.info("Using Redis job queues")
            await schedule_recurring_jobs(self.queue_manager, tz=self.settings.scheduler_timezone)
            logger.warning(
                "Queue-mode scheduler initialized: jobs are only enqueued here. "
                "Start the worker process separately with: redlead-worker")
            return self.mode

        self.mode = SchedulerMode.CRON
        reason = "USE_QUEUE=false" if self.store.is_available() else "Redis not available"
        logger.info("Using cron scheduler (fallback mode)", reason=reason)
        self._start_cron()
        logger.info("Cron job scheduler initialized", jobs=len(RECURRING_JOBS),
                    allow_overlap=self.settings.cron_allow_overlap)
        return self.mode

    def _start_cron(self) -> None:
        tz = self.settings.scheduler_timezone
        self._cron = AsyncIOScheduler(timezone=tz, event_loop=asyncio.get_running_loop())

        for definition in RECURRING_JOBS:
            self._cron.add_job(
                self.run_job,
                trigger=CronTrigger.from_crontab(definition.pattern, timezone=tz),
                args=[definition],
                id=definition.queue,
                name=definition.description,
                replace_existing=True,
                coalesce=True,
                max_instances=MAX_OVERLAPPING_RUNS if self.settings.cron_allow_overlap else 1,
                misfire_grace_time=60,
            )
            logger.info("Registered cron job", job=definition.queue, pattern=definition.pattern)

        self._cron.start()

    async def run_job(self, definition: RecurringJob) -> bool:
        """One cron trigger: run the job's worker function, never raise.

        Returns True when the worker function completed.
        """
        name = definition.queue
        if name in self._running and not self.settings.cron_allow_overlap:
            logger.warning("Skipping trigger - previous run still in progress", job=name)
            return False

        logger.info(f"Triggering scheduled {definition.description} run", job=name)
        self._running.add(name)
        try:
            handler = self.handlers.get(name)
            await handler()
        except Exception as e:
            logger.error(f"A critical error occurred during the {definition.description} run",
                         job=name, error=f"{type(e).__name__}: {e}", exc_info=True)
            return False
        finally:
            self._running.discard(name)
        return True

    async def trigger(self, job: str) -> bool:
        """Run one recurring job now, outside its schedule (cron mode)."""
        for definition in RECURRING_JOBS:
            if definition.queue == job:
                return await self.run_job(definition)
        raise KeyError(f"Unknown recurring job: {job}")

    def get_cron_jobs(self) -> List[Dict[str, Any]]:
        """Armed cron triggers; empty in queue mode."""
        if self._cron is None:
            return []
        jobs = []
        for job in self._cron.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run_time": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            })
        return jobs

    async def describe(self) -> Dict[str, Any]:
        """Mode plus the jobs installed under it."""
        if self.mode == SchedulerMode.QUEUE:
            jobs: List[Dict[str, Any]] = []
            for name, queue in self.queue_manager.queues.items():
                for repeatable in await queue.get_repeatable_jobs():
                    jobs.append({"queue": name, **repeatable})
            return {"mode": self.mode.value, "jobs": jobs}
        return {
            "mode": self.mode.value if self.mode else None,
            "jobs": self.get_cron_jobs(),
        }

    async def shutdown(self) -> None:
        """Stop cron triggers and close queues."""
        if self._cron is not None and self._cron.running:
            self._cron.shutdown(wait=False)
            # AsyncIOScheduler finishes stopping on the next loop iteration
            await asyncio.sleep(0)
            logger.info("Cron scheduler shutdown")
        self._cron = None
        await self.queue_manager.close_all()
