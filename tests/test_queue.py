"""Tests for the Redis job queue (backed by fakeredis)."""

from __future__ import annotations

import time
from datetime import datetime, timezone

import pytest

from redlead.services.queue import (
    JobOptions,
    JobQueue,
    JobStatus,
    RepeatOptions,
    RetentionPolicy,
    next_occurrence,
)
from redlead.services.queue import queue as queue_module


class MsClock:
    def __init__(self) -> None:
        self.now = int(time.time() * 1000)

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


@pytest.fixture
def ms_clock(monkeypatch) -> MsClock:
    clock = MsClock()
    monkeypatch.setattr(queue_module, "_now_ms", clock)
    return clock


@pytest.fixture
def queue(fake_redis, ms_clock) -> JobQueue:
    return JobQueue("lead-discovery", fake_redis, prefix="test:queue")


async def _drain_names(queue: JobQueue):
    names = []
    while True:
        job = await queue.fetch_next()
        if job is None:
            return names
        names.append(job.name)
        await queue.move_to_completed(job)


# ============================================================================
# Ordering
# ============================================================================


class TestOrdering:
    @pytest.mark.asyncio
    async def test_lower_priority_value_served_first(self, queue) -> None:
        await queue.add("low", priority=4)
        await queue.add("urgent", priority=1)
        await queue.add("normal", priority=3)

        assert await _drain_names(queue) == ["urgent", "normal", "low"]

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, queue) -> None:
        for name in ("a", "b", "c"):
            await queue.add(name, priority=2)

        assert await _drain_names(queue) == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_default_options_apply(self, queue) -> None:
        job = await queue.add("discover-leads", {"campaign": "c-1"})

        assert job.status == JobStatus.WAITING
        assert job.priority == 3
        assert job.attempts == 3
        stored = await queue.get_job(job.id)
        assert stored.data == {"campaign": "c-1"}


class TestAdd:
    @pytest.mark.asyncio
    async def test_duplicate_job_id_not_enqueued_twice(self, queue) -> None:
        first = await queue.add("expire-trials", job_id="trial-check")
        second = await queue.add("expire-trials", {"other": True}, job_id="trial-check")

        assert second.id == first.id
        assert second.data == {}
        assert (await queue.get_job_counts())["waiting"] == 1

    @pytest.mark.asyncio
    async def test_delayed_job_waits_until_due(self, queue, ms_clock) -> None:
        job = await queue.add("later", delay=5)

        assert job.status == JobStatus.DELAYED
        assert await queue.fetch_next() is None

        ms_clock.advance(5)
        fetched = await queue.fetch_next()
        assert fetched.id == job.id
        assert fetched.status == JobStatus.ACTIVE
        assert fetched.attempts_made == 1


# ============================================================================
# Failures
# ============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_retry_with_exponential_backoff(self, fake_redis, queue, ms_clock) -> None:
        job = await queue.add("flaky", attempts=3, backoff_delay=1.0)

        job = await queue.fetch_next()
        status = await queue.move_to_failed(job, RuntimeError("reddit 503"))
        assert status == JobStatus.DELAYED
        assert await fake_redis.zscore("test:queue:lead-discovery:delayed", job.id) == ms_clock() + 1000

        assert await queue.fetch_next() is None
        ms_clock.advance(1)
        job = await queue.fetch_next()
        assert job.attempts_made == 2
        await queue.move_to_failed(job, RuntimeError("reddit 503"))
        assert await fake_redis.zscore("test:queue:lead-discovery:delayed", job.id) == ms_clock() + 2000

        ms_clock.advance(2)
        job = await queue.fetch_next()
        assert job.attempts_made == 3
        status = await queue.move_to_failed(job, RuntimeError("reddit 503"))

        assert status == JobStatus.FAILED
        stored = await queue.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.failed_reason == "RuntimeError: reddit 503"
        assert await queue.get_job_counts() == {
            "waiting": 0, "delayed": 0, "active": 0, "completed": 0, "failed": 1,
        }

    @pytest.mark.asyncio
    async def test_no_retry_when_disabled(self, queue) -> None:
        await queue.add("broken")
        job = await queue.fetch_next()

        status = await queue.move_to_failed(job, ValueError("bad payload"), retry=False)

        assert status == JobStatus.FAILED
        assert [j.id for j in await queue.get_failed()] == [job.id]

    @pytest.mark.asyncio
    async def test_active_set_tracks_claimed_jobs(self, queue) -> None:
        await queue.add("x")
        job = await queue.fetch_next()
        assert (await queue.get_job_counts())["active"] == 1

        await queue.move_to_completed(job)
        counts = await queue.get_job_counts()
        assert counts["active"] == 0
        assert counts["completed"] == 1


# ============================================================================
# Locks and stalled jobs
# ============================================================================


class TestStalledJobs:
    @pytest.mark.asyncio
    async def test_expired_lock_is_retried(self, queue, ms_clock) -> None:
        job = await queue.add("discover-leads", backoff_delay=0)
        claimed = await queue.fetch_next()

        ms_clock.advance(29)
        assert await queue.recover_stalled() == []

        ms_clock.advance(2)
        assert await queue.recover_stalled() == [job.id]

        stored = await queue.get_job(job.id)
        assert stored.status == JobStatus.DELAYED
        assert stored.failed_reason.startswith("StalledJobError: ")
        assert (await queue.get_job_counts())["active"] == 0

        redelivered = await queue.fetch_next()
        assert redelivered.id == claimed.id
        assert redelivered.attempts_made == 2

    @pytest.mark.asyncio
    async def test_last_attempt_stalled_fails(self, queue, ms_clock) -> None:
        job = await queue.add("expire-trials", attempts=1)
        await queue.fetch_next()

        ms_clock.advance(31)
        await queue.recover_stalled()

        assert (await queue.get_job(job.id)).status == JobStatus.FAILED
        assert [j.id for j in await queue.get_failed()] == [job.id]
        assert await queue.fetch_next() is None

    @pytest.mark.asyncio
    async def test_extended_lock_is_not_recovered(self, queue, ms_clock) -> None:
        job = await queue.add("analyze-subreddits")
        await queue.fetch_next()

        ms_clock.advance(20)
        await queue.extend_locks([job.id])
        ms_clock.advance(20)
        assert await queue.recover_stalled() == []

        ms_clock.advance(11)
        assert await queue.recover_stalled() == [job.id]

    @pytest.mark.asyncio
    async def test_extend_does_not_claim_unknown_jobs(self, queue) -> None:
        await queue.extend_locks(["finished-elsewhere"])

        assert (await queue.get_job_counts())["active"] == 0

    @pytest.mark.asyncio
    async def test_late_outcome_after_recovery_is_ignored(self, queue, ms_clock) -> None:
        await queue.add("track-pending-replies", backoff_delay=0)
        claimed = await queue.fetch_next()
        ms_clock.advance(31)
        await queue.recover_stalled()

        assert await queue.move_to_completed(claimed) is False
        assert await queue.move_to_failed(claimed, RuntimeError("late")) is None

        stored = await queue.get_job(claimed.id)
        assert stored.status == JobStatus.DELAYED
        assert stored.failed_reason.startswith("StalledJobError: ")
        assert (await queue.get_job_counts())["completed"] == 0

    @pytest.mark.asyncio
    async def test_lock_duration_is_configurable(self, fake_redis, ms_clock) -> None:
        queue = JobQueue("reply-tracking", fake_redis, prefix="test:queue", lock_duration=5)
        job = await queue.add("x")
        await queue.fetch_next()

        assert await fake_redis.zscore("test:queue:reply-tracking:active", job.id) == ms_clock() + 5000


# ============================================================================
# Retention
# ============================================================================


class TestRetention:
    @pytest.mark.asyncio
    async def test_keeps_most_recent_completed(self, fake_redis, ms_clock) -> None:
        queue = JobQueue("reply-tracking", fake_redis, prefix="test:queue",
                         retention=RetentionPolicy(keep_completed=2))
        ids = []
        for i in range(3):
            await queue.add(f"job-{i}")
            job = await queue.fetch_next()
            ms_clock.advance(1)
            await queue.move_to_completed(job)
            ids.append(job.id)

        assert [j.id for j in await queue.get_completed()] == [ids[2], ids[1]]
        assert await queue.get_job(ids[0]) is None

    @pytest.mark.asyncio
    async def test_completed_jobs_expire_after_max_age(self, fake_redis, ms_clock) -> None:
        queue = JobQueue("reply-tracking", fake_redis, prefix="test:queue")
        await queue.add("old")
        old = await queue.fetch_next()
        await queue.move_to_completed(old)

        ms_clock.advance(24 * 3600 + 1)
        await queue.add("new")
        new = await queue.fetch_next()
        await queue.move_to_completed(new)

        assert [j.id for j in await queue.get_completed()] == [new.id]

    @pytest.mark.asyncio
    async def test_keeps_most_recent_failed(self, fake_redis, ms_clock) -> None:
        queue = JobQueue("market-insight", fake_redis, prefix="test:queue",
                         retention=RetentionPolicy(keep_failed=1))
        for i in range(2):
            await queue.add(f"job-{i}")
            job = await queue.fetch_next()
            ms_clock.advance(1)
            await queue.move_to_failed(job, RuntimeError("x"), retry=False)

        failed = await queue.get_failed()
        assert [j.name for j in failed] == ["job-1"]


# ============================================================================
# Repeatable jobs
# ============================================================================


class TestRepeatable:
    @pytest.mark.asyncio
    async def test_install_schedules_next_occurrence(self, queue) -> None:
        job = await queue.add("track-pending-replies", priority=2,
                              repeat=RepeatOptions(pattern="* * * * *"))

        assert job.status == JobStatus.DELAYED
        assert job.id.startswith("repeat:track-pending-replies:* * * * *:UTC:")
        assert job.scheduled_for % 60000 == 0
        assert job.scheduled_for > int(time.time() * 1000) - 1000

        repeatables = await queue.get_repeatable_jobs()
        assert len(repeatables) == 1
        assert repeatables[0]["pattern"] == "* * * * *"
        assert repeatables[0]["priority"] == 2

    @pytest.mark.asyncio
    async def test_reinstall_is_idempotent(self, queue) -> None:
        repeat = RepeatOptions(pattern="0 3 * * *")
        first = await queue.add("expire-trials", repeat=repeat)
        second = await queue.add("expire-trials", repeat=repeat)

        assert first.id == second.id
        assert (await queue.get_job_counts())["delayed"] == 1
        assert len(await queue.get_repeatable_jobs()) == 1

    @pytest.mark.asyncio
    async def test_pickup_schedules_following_occurrence(self, queue, ms_clock) -> None:
        first = await queue.add("track-pending-replies",
                                repeat=RepeatOptions(pattern="* * * * *"))
        ms_clock.now = first.scheduled_for

        job = await queue.fetch_next()

        assert job.id == first.id
        assert job.repeat_key == "track-pending-replies:* * * * *:UTC"
        pending = await queue.client.zrange("test:queue:lead-discovery:delayed", 0, -1,
                                            withscores=True)
        assert len(pending) == 1
        assert int(pending[0][1]) >= first.scheduled_for + 60000

    @pytest.mark.asyncio
    async def test_retry_does_not_schedule_extra_occurrence(self, queue, ms_clock) -> None:
        first = await queue.add("track-pending-replies", backoff_delay=0,
                                repeat=RepeatOptions(pattern="* * * * *"))
        ms_clock.now = first.scheduled_for

        job = await queue.fetch_next()
        await queue.move_to_failed(job, RuntimeError("x"))
        retried = await queue.fetch_next()

        assert retried.id == first.id
        assert retried.attempts_made == 2
        assert (await queue.get_job_counts())["delayed"] == 1

    @pytest.mark.asyncio
    async def test_removed_definition_stops_recurring(self, queue, ms_clock) -> None:
        first = await queue.add("discover-insights", repeat=RepeatOptions(pattern="5 * * * *"))

        assert await queue.remove_repeatable(first.repeat_key) is True
        assert await queue.remove_repeatable(first.repeat_key) is False

        ms_clock.now = first.scheduled_for
        job = await queue.fetch_next()
        assert job.id == first.id
        assert (await queue.get_job_counts())["delayed"] == 0


    @pytest.mark.asyncio
    async def test_failed_follow_up_is_rearmed(self, queue, ms_clock, monkeypatch) -> None:
        first = await queue.add("track-pending-replies",
                                repeat=RepeatOptions(pattern="* * * * *"))
        ms_clock.now = first.scheduled_for

        async def redis_blip(job):
            raise ConnectionError("connection reset")

        monkeypatch.setattr(queue, "_schedule_next_repeat", redis_blip)
        job = await queue.fetch_next()

        assert job.id == first.id
        assert (await queue.get_job_counts())["delayed"] == 0

        assert await queue.ensure_repeatables() == 1
        pending = await queue.client.zrange("test:queue:lead-discovery:delayed", 0, -1,
                                            withscores=True)
        assert [int(score) for _, score in pending] == [first.scheduled_for + 60000]

    @pytest.mark.asyncio
    async def test_ensure_repeatables_is_idempotent(self, queue) -> None:
        first = await queue.add("expire-trials", repeat=RepeatOptions(pattern="0 3 * * *"))

        await queue.ensure_repeatables()
        await queue.ensure_repeatables()

        assert (await queue.get_job_counts())["delayed"] == 1
        assert await queue.get_job(first.id) is not None


class TestNextOccurrence:
    @pytest.mark.parametrize("pattern, expected", [
        ("*/15 * * * *", datetime(2024, 1, 1, 0, 15, tzinfo=timezone.utc)),
        ("0 2 * * *", datetime(2024, 1, 1, 2, 0, tzinfo=timezone.utc)),
        ("* * * * *", datetime(2024, 1, 1, 0, 1, tzinfo=timezone.utc)),
        ("0 * * * *", datetime(2024, 1, 1, 1, 0, tzinfo=timezone.utc)),
        ("5 * * * *", datetime(2024, 1, 1, 0, 5, tzinfo=timezone.utc)),
        ("0 3 * * *", datetime(2024, 1, 1, 3, 0, tzinfo=timezone.utc)),
    ])
    def test_patterns(self, pattern, expected) -> None:
        after = datetime(2024, 1, 1, 0, 0, 30, tzinfo=timezone.utc)

        assert next_occurrence(pattern, "UTC", after) == expected

    def test_strictly_after(self) -> None:
        after = datetime(2024, 1, 1, 0, 15, tzinfo=timezone.utc)

        assert next_occurrence("*/15 * * * *", "UTC", after) == datetime(
            2024, 1, 1, 0, 30, tzinfo=timezone.utc)


class TestJobOptions:
    def test_backoff_doubles(self) -> None:
        opts = JobOptions(backoff_delay=1.0)

        assert [opts.backoff_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_merged_ignores_unset(self) -> None:
        opts = JobOptions(priority=2, attempts=5).merged(priority=1, attempts=None)

        assert opts.priority == 1
        assert opts.attempts == 5
