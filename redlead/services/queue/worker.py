"""Queue consumer with bounded concurrency."""

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from redlead.core.logging import get_logger, log_job_event
from redlead.core.metrics import active_jobs, job_duration, jobs_processed
from .models import Job, JobStatus, UnrecoverableJobError
from .queue import JobQueue

logger = get_logger(__name__)

Processor = Callable[[Job], Awaitable[Any]]

WORKER_EVENTS = ("completed", "failed", "error")


class JobWorker:
    """Pulls jobs from one queue and runs ``processor`` on each.

    At most ``concurrency`` jobs are in flight. A processor exception is
    logged with the attempt number and handed to the queue, which retries
    with exponential backoff until the job's attempts are used up.

    Every ``stalled_interval`` seconds (capped at half the queue's lock
    duration) a maintenance pass keeps the locks of running jobs fresh and
    hands jobs whose lock expired back to the queue. The same pass re-arms
    recurring definitions.
    """

    def __init__(self, queue: JobQueue, processor: Processor,
                 concurrency: int = 5, poll_interval: float = 1.0,
                 stalled_interval: float = 15.0):
        self.queue = queue
        self.name = queue.name
        self.processor = processor
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.stalled_interval = stalled_interval
        self._slots = asyncio.Semaphore(concurrency)
        self._in_flight: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._maintenance_task: Optional[asyncio.Task] = None
        self._active_jobs: Dict[str, Job] = {}
        self._closing = False
        self._stop = asyncio.Event()
        self._maintenance_stop = asyncio.Event()
        self._listeners: Dict[str, List[Callable[..., Any]]] = {e: [] for e in WORKER_EVENTS}

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Subscribe to "completed" (job, duration), "failed" (job, error) or "error" (error)."""
        if event not in self._listeners:
            raise ValueError(f"Unknown worker event: {event}")
        self._listeners[event].append(callback)

    async def _emit(self, event: str, *args: Any) -> None:
        for callback in self._listeners[event]:
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Worker event listener failed", worker=self.name,
                             worker_event=event, error=str(e))

    def start(self) -> None:
        """Start the consume loop in the background."""
        if self.is_running:
            logger.warning("Worker already running", worker=self.name)
            return
        self._closing = False
        self._stop.clear()
        self._maintenance_stop.clear()
        self._loop_task = asyncio.create_task(self._run(), name=f"worker:{self.name}")
        self._maintenance_task = asyncio.create_task(
            self._maintain(), name=f"worker-maintenance:{self.name}")
        logger.info("Worker started", worker=self.name, concurrency=self.concurrency)

    async def _idle(self) -> None:
        """Sleep for one poll interval, waking early on close()."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    @property
    def maintenance_interval(self) -> float:
        return min(self.stalled_interval, self.queue.lock_duration / 2)

    async def maintain(self) -> None:
        """Run one maintenance pass over the queue's locks and recurring jobs."""
        await self.queue.extend_locks(list(self._active_jobs))
        await self.queue.recover_stalled()
        await self.queue.ensure_repeatables()

    async def _maintain(self) -> None:
        while not self._maintenance_stop.is_set():
            try:
                await self.maintain()
            except Exception as e:
                logger.error("Worker maintenance failed", worker=self.name, error=str(e))
                await self._emit("error", e)
            try:
                await asyncio.wait_for(self._maintenance_stop.wait(),
                                       timeout=self.maintenance_interval)
            except asyncio.TimeoutError:
                pass

    async def _run(self) -> None:
        while not self._closing:
            await self._slots.acquire()
            if self._closing:
                self._slots.release()
                break
            try:
                job = await self.queue.fetch_next()
            except Exception as e:
                self._slots.release()
                logger.error("Worker error", worker=self.name, error=str(e))
                await self._emit("error", e)
                await self._idle()
                continue

            if job is None:
                self._slots.release()
                await self._idle()
                continue

            task = asyncio.create_task(self._handle(job), name=f"job:{self.name}:{job.id}")
            self._in_flight.add(task)
            task.add_done_callback(self._job_done)

    def _job_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        self._slots.release()

    async def process_next(self) -> Optional[Job]:
        """Fetch and process a single job inline. Returns the job, if any."""
        job = await self.queue.fetch_next()
        if job is None:
            return None
        await self._handle(job)
        return job

    async def _invoke(self, job: Job) -> float:
        """Run the processor; returns the duration. Failures are re-raised."""
        log_job_event(logger, "processing", self.name, job.id, job_name=job.name,
                      attempt=job.attempts_made)
        start = time.perf_counter()
        try:
            await self.processor(job)
        except Exception as e:
            duration = round(time.perf_counter() - start, 4)
            log_job_event(logger, "failed", self.name, job.id, job_name=job.name,
                          duration_seconds=duration, attempt=job.attempts_made,
                          error=f"{type(e).__name__}: {e}")
            raise
        return round(time.perf_counter() - start, 4)

    async def _handle(self, job: Job) -> None:
        self._active_jobs[job.id] = job
        active_jobs.labels(queue=self.name).inc()
        try:
            await self._settle(job)
        finally:
            self._active_jobs.pop(job.id, None)
            active_jobs.labels(queue=self.name).dec()

    async def _settle(self, job: Job) -> None:
        try:
            duration = await self._invoke(job)
        except Exception as e:
            try:
                status = await self.queue.move_to_failed(
                    job, e, retry=not isinstance(e, UnrecoverableJobError))
            except Exception as store_error:
                logger.error("Could not record job failure", worker=self.name,
                             job_id=job.id, error=str(store_error))
                await self._emit("error", store_error)
                return
            if status is None:
                # lock expired while running; the job was already recovered
                return
            if status == JobStatus.DELAYED:
                logger.warning("Job will be retried", queue=self.name, job_id=job.id,
                               attempts=job.attempts_made, max_attempts=job.attempts,
                               error=str(e))
            jobs_processed.labels(queue=self.name, status="failed").inc()
            await self._emit("failed", job, e)
            return

        try:
            recorded = await self.queue.move_to_completed(job)
        except Exception as store_error:
            logger.error("Could not record job completion", worker=self.name,
                         job_id=job.id, error=str(store_error))
            await self._emit("error", store_error)
            return
        if not recorded:
            return
        log_job_event(logger, "completed", self.name, job.id, job_name=job.name,
                      duration_seconds=duration)
        jobs_processed.labels(queue=self.name, status="completed").inc()
        job_duration.labels(queue=self.name).observe(duration)
        await self._emit("completed", job, duration)

    async def close(self) -> None:
        """Stop dequeuing now, then wait for in-flight jobs to finish."""
        self._closing = True
        self._stop.set()
        if self._loop_task is not None:
            # The loop exits at its next check; a fetch already in progress
            # completes so a claimed job is never dropped.
            await self._loop_task
            self._loop_task = None
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        # Locks are kept fresh until the last in-flight job has settled.
        self._maintenance_stop.set()
        if self._maintenance_task is not None:
            await self._maintenance_task
            self._maintenance_task = None
        logger.debug("Worker closed", worker=self.name)
