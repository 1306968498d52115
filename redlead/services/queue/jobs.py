"""Recurring job definitions and helpers to enqueue them.

The same six definitions drive both scheduling modes: in queue mode they
become repeatable jobs, in cron mode they become APScheduler triggers.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from redlead import constants
from redlead.core.logging import get_logger
from .manager import JobQueueManager
from .models import Job, RepeatOptions
from .queue import JobQueue

logger = get_logger(__name__)


@dataclass(frozen=True)
class RecurringJob:
    queue: str
    job_name: str
    pattern: str
    priority: int
    description: str


RECURRING_JOBS = (
    RecurringJob(constants.LEAD_DISCOVERY_QUEUE, "discover-leads",
                 constants.EVERY_15_MINUTES, 1, "lead discovery"),
    RecurringJob(constants.SUBREDDIT_ANALYSIS_QUEUE, "analyze-subreddits",
                 constants.DAILY_AT_2AM, 3, "daily subreddit intelligence analysis"),
    RecurringJob(constants.REPLY_TRACKING_QUEUE, "track-pending-replies",
                 constants.EVERY_MINUTE, 2, "high-frequency reply finder"),
    RecurringJob(constants.PERFORMANCE_TRACKING_QUEUE, "track-performance",
                 constants.HOURLY, 4, "hourly reply performance tracking"),
    RecurringJob(constants.MARKET_INSIGHT_QUEUE, "discover-insights",
                 constants.HOURLY_AT_5, 3, "hourly market insight discovery"),
    RecurringJob(constants.TRIAL_EXPIRATION_QUEUE, "expire-trials",
                 constants.DAILY_AT_3AM, 4, "daily expired trial check"),
)


async def schedule_recurring_jobs(manager: JobQueueManager, tz: str = "UTC") -> int:
    """Install every recurring job as a repeatable queue job.

    Returns the number installed; zero when queues are unavailable.
    Redis errors propagate so the caller can decide how to degrade.
    """
    if not manager.is_available():
        logger.info("Queue not available - using cron scheduler fallback")
        return 0

    installed = 0
    for definition in RECURRING_JOBS:
        queue = manager.create_queue(definition.queue)
        if queue is None:
            continue
        try:
            await queue.add(
                definition.job_name,
                {},
                priority=definition.priority,
                repeat=RepeatOptions(pattern=definition.pattern, tz=tz),
            )
        except Exception as e:
            logger.error("Failed to schedule recurring jobs", queue=definition.queue, error=str(e))
            raise
        installed += 1
        logger.info("Scheduled recurring job", queue=definition.queue,
                    pattern=definition.pattern, priority=definition.priority)

    logger.info("All recurring jobs scheduled in queues", count=installed)
    return installed


async def add_job(queue: Optional[JobQueue], job_name: str,
                  data: Optional[Dict[str, Any]] = None,
                  priority: int = constants.DEFAULT_JOB_PRIORITY) -> Optional[Job]:
    """Enqueue a one-off job. Returns None when it could not be queued."""
    if queue is None:
        logger.warning("Queue not available - job not queued", job_name=job_name)
        return None

    try:
        job = await queue.add(job_name, data or {}, priority=priority)
    except Exception as e:
        logger.error("Failed to add job to queue", queue=queue.name, job_name=job_name, error=str(e))
        return None
    logger.info("Job added to queue", queue=queue.name, job_name=job_name,
                job_id=job.id, priority=priority)
    return job
