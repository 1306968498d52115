"""Tests for the queue manager and recurring-job helpers."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from redlead import constants
from redlead.services.queue import (
    RECURRING_JOBS,
    JobQueueManager,
    JobStatus,
    add_job,
    schedule_recurring_jobs,
)


@pytest.fixture
def online_manager(settings, online_store) -> JobQueueManager:
    return JobQueueManager(settings, online_store)


@pytest.fixture
def offline_manager(settings, offline_store) -> JobQueueManager:
    return JobQueueManager(settings, offline_store)


class TestManagerWithoutRedis:
    def test_factories_return_none(self, offline_manager) -> None:
        assert offline_manager.is_available() is False
        assert offline_manager.create_queue(constants.LEAD_DISCOVERY_QUEUE) is None
        assert offline_manager.create_worker(constants.LEAD_DISCOVERY_QUEUE,
                                             AsyncMock()) is None
        assert offline_manager.workers == []

    @pytest.mark.asyncio
    async def test_schedule_recurring_jobs_is_noop(self, offline_manager) -> None:
        assert await schedule_recurring_jobs(offline_manager) == 0

    @pytest.mark.asyncio
    async def test_add_job_without_queue(self) -> None:
        assert await add_job(None, "discover-leads") is None


class TestManagerWithRedis:
    def test_queue_is_cached_by_name(self, online_manager) -> None:
        first = online_manager.create_queue(constants.REPLY_TRACKING_QUEUE)

        assert online_manager.create_queue(constants.REPLY_TRACKING_QUEUE) is first
        assert first.prefix == "redlead:queue:reply-tracking"
        assert first.default_job_options.attempts == constants.DEFAULT_JOB_ATTEMPTS
        assert first.retention.keep_completed == constants.KEEP_COMPLETED_JOBS
        assert first.retention.keep_failed == constants.KEEP_FAILED_JOBS

    @pytest.mark.asyncio
    async def test_worker_uses_settings(self, make_settings, online_store) -> None:
        manager = JobQueueManager(make_settings(worker_concurrency=7, job_lock_duration=12.0,
                                                stalled_check_interval=4.0), online_store)

        worker = manager.create_worker(constants.MARKET_INSIGHT_QUEUE, AsyncMock(),
                                       autorun=False)

        assert worker.concurrency == 7
        assert worker.queue.lock_duration == 12.0
        assert worker.maintenance_interval == 4.0
        assert not worker.is_running
        assert manager.workers == [worker]

    @pytest.mark.asyncio
    async def test_close_all(self, online_manager) -> None:
        processed = asyncio.Event()

        async def processor(job):
            processed.set()

        worker = online_manager.create_worker(constants.TRIAL_EXPIRATION_QUEUE, processor)
        assert worker.is_running
        await add_job(online_manager.queues[constants.TRIAL_EXPIRATION_QUEUE], "expire-trials")
        await asyncio.wait_for(processed.wait(), timeout=2)

        queue = online_manager.queues[constants.TRIAL_EXPIRATION_QUEUE]
        await online_manager.close_all()

        assert not worker.is_running
        assert queue.closed
        assert online_manager.workers == []
        assert online_manager.queues == {}


class TestRecurringJobs:
    def test_definitions(self) -> None:
        table = {(job.queue, job.job_name, job.pattern, job.priority) for job in RECURRING_JOBS}

        assert table == {
            ("lead-discovery", "discover-leads", "*/15 * * * *", 1),
            ("subreddit-analysis", "analyze-subreddits", "0 2 * * *", 3),
            ("reply-tracking", "track-pending-replies", "* * * * *", 2),
            ("performance-tracking", "track-performance", "0 * * * *", 4),
            ("market-insight", "discover-insights", "5 * * * *", 3),
            ("trial-expiration", "expire-trials", "0 3 * * *", 4),
        }

    @pytest.mark.asyncio
    async def test_schedule_installs_every_job(self, online_manager) -> None:
        assert await schedule_recurring_jobs(online_manager) == 6

        assert set(online_manager.queues) == set(constants.ALL_QUEUES)
        for definition in RECURRING_JOBS:
            queue = online_manager.queues[definition.queue]
            repeatables = await queue.get_repeatable_jobs()
            assert len(repeatables) == 1
            assert repeatables[0]["name"] == definition.job_name
            assert repeatables[0]["pattern"] == definition.pattern
            assert repeatables[0]["priority"] == definition.priority
            assert repeatables[0]["tz"] == "UTC"

    @pytest.mark.asyncio
    async def test_schedule_twice_keeps_one_definition(self, online_manager) -> None:
        await schedule_recurring_jobs(online_manager)
        await schedule_recurring_jobs(online_manager)

        for queue in online_manager.queues.values():
            assert len(await queue.get_repeatable_jobs()) == 1

    @pytest.mark.asyncio
    async def test_schedule_error_propagates(self, online_manager, monkeypatch) -> None:
        queue = online_manager.create_queue(constants.LEAD_DISCOVERY_QUEUE)
        monkeypatch.setattr(queue, "add", AsyncMock(side_effect=ConnectionError("redis down")))

        with pytest.raises(ConnectionError):
            await schedule_recurring_jobs(online_manager)


class TestAddJob:
    @pytest.mark.asyncio
    async def test_enqueues_with_priority(self, online_manager) -> None:
        queue = online_manager.create_queue(constants.LEAD_DISCOVERY_QUEUE)

        job = await add_job(queue, "discover-leads", {"campaign_id": "c-42"}, priority=1)

        assert job.status == JobStatus.WAITING
        stored = await queue.get_job(job.id)
        assert stored.priority == 1
        assert stored.data == {"campaign_id": "c-42"}

    @pytest.mark.asyncio
    async def test_queue_error_returns_none(self, online_manager, monkeypatch) -> None:
        queue = online_manager.create_queue(constants.LEAD_DISCOVERY_QUEUE)
        monkeypatch.setattr(queue, "add", AsyncMock(side_effect=ConnectionError("redis down")))

        assert await add_job(queue, "discover-leads") is None
