"""Durable prioritized job queue on Redis.

Key layout under ``{prefix}:{queue}``:

    :id           INCR counter for job ids
    :seq          INCR counter for FIFO order within a priority
    :job:{id}     hash with the job fields
    :wait         zset, score = priority * 2**32 + seq (lowest served first)
    :delayed      zset, score = epoch ms when the job becomes ready
    :active       zset of claimed job ids, score = lock deadline in epoch ms
    :completed    zset, score = finished epoch ms
    :failed       zset, score = finished epoch ms
    :repeat       hash of repeat key -> JSON recurring definition

Creating a job and claiming one are Lua scripts, so a crash never leaves
a job half-enqueued or popped but unclaimed. A claimed job holds a lock
that its worker keeps extending; when the lock runs out the job is
treated as stalled and goes back through the retry path. State changes
after a claim go through ZREM on ``:active``, so only the lock holder
records the outcome.
"""

import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as redis
from apscheduler.triggers.cron import CronTrigger

from redlead.core.logging import get_logger
from .models import (
    Job,
    JobOptions,
    JobStatus,
    RepeatOptions,
    RetentionPolicy,
    StalledJobError,
)

logger = get_logger(__name__)

PRIORITY_SCALE = 2 ** 32
MAX_PROMOTIONS_PER_CLAIM = 100

# KEYS: job hash, wait, delayed, seq
# ARGV: ready_at ms, "1" if delayed, priority, priority scale, field/value pairs...
CREATE_JOB_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
for i = 5, #ARGV, 2 do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
if ARGV[2] == '1' then
  redis.call('ZADD', KEYS[3], ARGV[1], ARGV[6])
else
  local seq = redis.call('INCR', KEYS[4])
  local score = tonumber(ARGV[3]) * tonumber(ARGV[4]) + seq
  redis.call('ZADD', KEYS[2], string.format('%.0f', score), ARGV[6])
end
return 1
"""

# KEYS: wait, delayed, active, seq
# ARGV: now ms, lock deadline ms, job key prefix, priority scale,
#       default priority, max promotions
CLAIM_JOB_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[6]))
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[2], id)
  local job_key = ARGV[3] .. id
  local priority = tonumber(redis.call('HGET', job_key, 'priority') or ARGV[5])
  local seq = redis.call('INCR', KEYS[4])
  redis.call('HSET', job_key, 'status', 'waiting')
  redis.call('ZADD', KEYS[1], string.format('%.0f', priority * tonumber(ARGV[4]) + seq), id)
end
local popped = redis.call('ZPOPMIN', KEYS[1])
if #popped == 0 then
  return false
end
local id = popped[1]
local job_key = ARGV[3] .. id
redis.call('ZADD', KEYS[3], ARGV[2], id)
redis.call('HINCRBY', job_key, 'attempts_made', 1)
redis.call('HSET', job_key, 'status', 'active', 'processed_at', ARGV[1])
return id
"""


def next_occurrence(pattern: str, tz: str, after: datetime) -> datetime:
    """First fire time of ``pattern`` strictly later than ``after``."""
    trigger = CronTrigger.from_crontab(pattern, timezone=tz)
    fire_time = trigger.get_next_fire_time(None, after + timedelta(seconds=1))
    if fire_time is None:
        raise ValueError(f"Cron pattern never fires: {pattern}")
    return fire_time


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobQueue:
    """Handle on one named queue, used by producers and workers alike."""

    def __init__(self, name: str, client: "redis.Redis", prefix: str = "redlead:queue",
                 default_job_options: Optional[JobOptions] = None,
                 retention: Optional[RetentionPolicy] = None,
                 lock_duration: float = 30.0):
        self.name = name
        self.client = client
        self.prefix = f"{prefix}:{name}"
        self.default_job_options = default_job_options or JobOptions()
        self.retention = retention or RetentionPolicy()
        self.lock_duration = lock_duration
        self.closed = False
        self._create_script = client.register_script(CREATE_JOB_SCRIPT)
        self._claim_script = client.register_script(CLAIM_JOB_SCRIPT)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _lock_deadline(self) -> int:
        return _now_ms() + int(self.lock_duration * 1000)

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------

    async def add(self, name: str, data: Optional[Dict[str, Any]] = None, *,
                  priority: Optional[int] = None, attempts: Optional[int] = None,
                  backoff_delay: Optional[float] = None, delay: Optional[float] = None,
                  repeat: Optional[RepeatOptions] = None,
                  job_id: Optional[str] = None) -> Job:
        """Enqueue a job; with ``repeat`` install a recurring definition.

        A caller-supplied ``job_id`` that already exists is not enqueued
        twice; the existing job is returned.
        """
        options = self.default_job_options.merged(
            priority=priority, attempts=attempts, backoff_delay=backoff_delay, delay=delay)

        if repeat is not None:
            return await self._add_repeatable(name, data or {}, options, repeat)

        if job_id is None:
            job_id = str(await self.client.incr(self._key("id")))

        now = _now_ms()
        ready_at = now + int(options.delay * 1000)
        job = Job(id=job_id, queue_name=self.name, name=name, data=data or {},
                  options=options, created_at=now,
                  status=JobStatus.DELAYED if ready_at > now else JobStatus.WAITING)
        existing = await self._create(job, ready_at)
        return existing or job

    async def _create(self, job: Job, ready_at: int) -> Optional[Job]:
        """Store and enqueue ``job``; return the existing job on id collision."""
        mapping = job.to_hash()
        # "id" first: the script reads the job id from the first field value
        fields: List[str] = ["id", mapping.pop("id")]
        for field_name, value in mapping.items():
            fields.extend((field_name, value))

        created = await self._create_script(
            keys=[self._job_key(job.id), self._key("wait"), self._key("delayed"), self._key("seq")],
            args=[ready_at, "1" if job.status == JobStatus.DELAYED else "0",
                  job.priority, PRIORITY_SCALE, *fields],
        )
        if not created:
            return await self.get_job(job.id)
        return None

    async def _add_repeatable(self, name: str, data: Dict[str, Any],
                              options: JobOptions, repeat: RepeatOptions) -> Job:
        repeat_key = repeat.key(name)
        definition = {
            "name": name,
            "data": data,
            "pattern": repeat.pattern,
            "tz": repeat.tz,
            "priority": options.priority,
            "attempts": options.attempts,
            "backoff_delay": options.backoff_delay,
        }
        await self.client.hset(self._key("repeat"), repeat_key, json.dumps(definition))

        after = datetime.now(timezone.utc)
        job = await self._schedule_occurrence(repeat_key, definition, after)
        logger.debug("Repeatable job installed", queue=self.name, repeat_key=repeat_key,
                     next_run=job.scheduled_for)
        return job

    async def _schedule_occurrence(self, repeat_key: str, definition: Dict[str, Any],
                                   after: datetime) -> Job:
        fire_time = next_occurrence(definition["pattern"], definition["tz"], after)
        fire_ms = int(fire_time.timestamp() * 1000)
        job = Job(
            id=f"repeat:{repeat_key}:{fire_ms}",
            queue_name=self.name,
            name=definition["name"],
            data=definition.get("data") or {},
            options=JobOptions(
                priority=definition["priority"],
                attempts=definition["attempts"],
                backoff_delay=definition["backoff_delay"],
            ),
            status=JobStatus.DELAYED,
            created_at=_now_ms(),
            repeat_key=repeat_key,
            scheduled_for=fire_ms,
        )
        existing = await self._create(job, fire_ms)
        return existing or job

    async def get_repeatable_jobs(self) -> List[Dict[str, Any]]:
        raw = await self.client.hgetall(self._key("repeat"))
        return [{"key": key, **json.loads(value)} for key, value in sorted(raw.items())]

    async def remove_repeatable(self, repeat_key: str) -> bool:
        """Drop a recurring definition; a pending occurrence still runs once."""
        removed = await self.client.hdel(self._key("repeat"), repeat_key)
        return bool(removed)

    async def ensure_repeatables(self) -> int:
        """Make sure every recurring definition has its next occurrence queued.

        Occurrence ids are derived from the fire time, so an occurrence
        that is already pending is left as is. Returns how many
        definitions were checked.
        """
        raw = await self.client.hgetall(self._key("repeat"))
        now = datetime.fromtimestamp(_now_ms() / 1000, tz=timezone.utc)
        for repeat_key, value in raw.items():
            await self._schedule_occurrence(repeat_key, json.loads(value), now)
        return len(raw)

    # ------------------------------------------------------------------
    # Consuming (used by JobWorker)
    # ------------------------------------------------------------------

    async def fetch_next(self) -> Optional[Job]:
        """Claim the highest-priority ready job, or None.

        Due delayed jobs are promoted in the same script, then the job is
        popped, locked and its attempt counted in one step.
        """
        now = _now_ms()
        job_id = await self._claim_script(
            keys=[self._key("wait"), self._key("delayed"), self._key("active"), self._key("seq")],
            args=[now, self._lock_deadline(), f"{self.prefix}:job:",
                  PRIORITY_SCALE, self.default_job_options.priority, MAX_PROMOTIONS_PER_CLAIM],
        )
        if job_id is None:
            return None

        job = await self.get_job(job_id)
        if job is None:
            await self.client.zrem(self._key("active"), job_id)
            logger.warning("Dequeued job has no data", queue=self.name, job_id=job_id)
            return None

        if job.repeat_key and job.attempts_made == 1:
            try:
                await self._schedule_next_repeat(job)
            except Exception as e:
                # ensure_repeatables() re-arms the definition on the next sweep
                logger.error("Could not schedule next occurrence", queue=self.name,
                             job_id=job.id, repeat_key=job.repeat_key, error=str(e))
        return job

    async def _schedule_next_repeat(self, job: Job) -> None:
        raw = await self.client.hget(self._key("repeat"), job.repeat_key)
        if raw is None:
            return
        occurrence = datetime.fromtimestamp((job.scheduled_for or _now_ms()) / 1000, tz=timezone.utc)
        after = max(occurrence, datetime.now(timezone.utc))
        await self._schedule_occurrence(job.repeat_key, json.loads(raw), after)

    async def extend_locks(self, job_ids: Iterable[str]) -> None:
        """Push the lock deadline of jobs this worker is still running."""
        deadline = self._lock_deadline()
        mapping = {job_id: deadline for job_id in job_ids}
        if mapping:
            # XX: never resurrect a job that was already recovered or finished
            await self.client.zadd(self._key("active"), mapping, xx=True)

    async def recover_stalled(self) -> List[str]:
        """Send jobs whose lock expired back through the retry path.

        A stalled job has lost its worker (crash, kill, OOM). It is
        retried while attempts remain, otherwise it is failed. Returns the
        ids that were recovered by this call.
        """
        expired = await self.client.zrangebyscore(self._key("active"), "-inf", f"({_now_ms()}")
        recovered = []
        for job_id in expired:
            job = await self.get_job(job_id)
            if job is None:
                await self.client.zrem(self._key("active"), job_id)
                continue
            status = await self.move_to_failed(
                job, StalledJobError(f"job lock expired after attempt {job.attempts_made}"))
            if status is None:
                continue
            logger.warning("Recovered stalled job", queue=self.name, job_id=job_id,
                           attempts=job.attempts_made, status=status.value)
            recovered.append(job_id)
        return recovered

    async def _release(self, job: Job) -> bool:
        """Drop the job's lock. False when the lock was already gone."""
        if await self.client.zrem(self._key("active"), job.id):
            return True
        logger.warning("Job lock lost - outcome not recorded", queue=self.name, job_id=job.id)
        return False

    async def move_to_completed(self, job: Job) -> bool:
        """Record success. False when the job no longer held its lock."""
        if not await self._release(job):
            return False
        now = _now_ms()
        await self.client.hset(self._job_key(job.id), mapping={
            "status": JobStatus.COMPLETED.value,
            "finished_at": str(now),
        })
        await self.client.zadd(self._key("completed"), {job.id: now})
        job.status = JobStatus.COMPLETED
        job.finished_at = now
        await self._trim("completed", self.retention.keep_completed,
                         max_age=self.retention.completed_max_age)
        return True

    async def move_to_failed(self, job: Job, error: BaseException,
                             retry: bool = True) -> Optional[JobStatus]:
        """Record a failure; schedule a retry while attempts remain.

        Returns DELAYED when the job will be retried, FAILED otherwise, and
        None when the job no longer held its lock.
        """
        if not await self._release(job):
            return None
        now = _now_ms()
        key = self._job_key(job.id)
        reason = f"{type(error).__name__}: {error}"
        job.failed_reason = reason

        if retry and job.has_attempts_left:
            backoff = job.options.backoff_for(job.attempts_made)
            await self.client.hset(key, mapping={
                "status": JobStatus.DELAYED.value,
                "failed_reason": reason,
            })
            await self.client.zadd(self._key("delayed"), {job.id: now + int(backoff * 1000)})
            job.status = JobStatus.DELAYED
            return JobStatus.DELAYED

        await self.client.hset(key, mapping={
            "status": JobStatus.FAILED.value,
            "failed_reason": reason,
            "finished_at": str(now),
        })
        await self.client.zadd(self._key("failed"), {job.id: now})
        job.status = JobStatus.FAILED
        job.finished_at = now
        await self._trim("failed", self.retention.keep_failed)
        return JobStatus.FAILED

    async def _trim(self, state: str, keep: int, max_age: Optional[int] = None) -> None:
        zkey = self._key(state)
        stale: List[str] = []
        if max_age is not None:
            cutoff = _now_ms() - max_age * 1000
            stale.extend(await self.client.zrangebyscore(zkey, "-inf", f"({cutoff}"))
        overflow = await self.client.zcard(zkey) - keep
        if overflow > 0:
            stale.extend(await self.client.zrange(zkey, 0, overflow - 1))

        stale = list(dict.fromkeys(stale))
        if not stale:
            return
        await self.client.zrem(zkey, *stale)
        await self.client.delete(*(self._job_key(job_id) for job_id in stale))

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self.client.hgetall(self._job_key(job_id))
        if not raw or "name" not in raw:
            return None
        return Job.from_hash(raw)

    async def get_job_counts(self) -> Dict[str, int]:
        return {
            "waiting": await self.client.zcard(self._key("wait")),
            "delayed": await self.client.zcard(self._key("delayed")),
            "active": await self.client.zcard(self._key("active")),
            "completed": await self.client.zcard(self._key("completed")),
            "failed": await self.client.zcard(self._key("failed")),
        }

    async def _jobs_in(self, state: str, limit: int) -> List[Job]:
        ids = await self.client.zrevrange(self._key(state), 0, limit - 1)
        jobs = []
        for job_id in ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def get_failed(self, limit: int = 50) -> List[Job]:
        """Most recent failures first."""
        return await self._jobs_in("failed", limit)

    async def get_completed(self, limit: int = 50) -> List[Job]:
        return await self._jobs_in("completed", limit)

    async def close(self) -> None:
        """Mark closed. The Redis client is shared and owned by RedisStore."""
        self.closed = True
        logger.debug("Queue closed", queue=self.name)
