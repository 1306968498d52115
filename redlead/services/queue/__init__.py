"""Redis-backed job queues.

- Prioritized, durable jobs with exponential-backoff retries
- Cron-pattern repeatable jobs
- Bounded-concurrency workers, one per queue per process
- Job locks with stalled-job recovery
- Retention of recent completed / failed jobs for inspection
"""

from .models import (
    Job,
    JobOptions,
    JobStatus,
    RepeatOptions,
    RetentionPolicy,
    StalledJobError,
    UnrecoverableJobError,
)
from .queue import JobQueue, next_occurrence
from .worker import JobWorker
from .manager import JobQueueManager
from .jobs import RECURRING_JOBS, RecurringJob, add_job, schedule_recurring_jobs

__all__ = [
    # Models
    "Job",
    "JobOptions",
    "JobStatus",
    "RepeatOptions",
    "RetentionPolicy",
    "StalledJobError",
    "UnrecoverableJobError",
    # Queue / worker
    "JobQueue",
    "JobWorker",
    "JobQueueManager",
    "next_occurrence",
    # Recurring jobs
    "RECURRING_JOBS",
    "RecurringJob",
    "add_job",
    "schedule_recurring_jobs",
]
