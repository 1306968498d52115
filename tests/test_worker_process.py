"""Tests for the standalone worker process."""

from __future__ import annotations

import asyncio

import pytest
from dependency_injector import providers

from redlead import constants
from redlead.core.container import Container
from redlead.services.handlers import JobHandlerRegistry
from redlead.services.queue import Job, JobQueue, JobStatus, UnrecoverableJobError
from redlead.worker import make_processor, run_worker_process


def build_container(settings, store) -> Container:
    app_container = Container()
    app_container.settings.override(providers.Object(settings))
    app_container.store.override(providers.Object(store))
    return app_container


@pytest.mark.asyncio
async def test_exits_without_redis(settings, offline_store) -> None:
    app_container = build_container(settings, offline_store)

    assert await run_worker_process(app_container, stop=asyncio.Event()) == 1


@pytest.mark.asyncio
async def test_exits_without_handlers(settings, online_store) -> None:
    app_container = build_container(settings, online_store)

    assert await run_worker_process(app_container, stop=asyncio.Event()) == 1


@pytest.mark.asyncio
async def test_processes_jobs_until_stopped(settings, online_store, fake_redis) -> None:
    app_container = build_container(settings, online_store)
    ran = asyncio.Event()

    async def run_lead_discovery():
        ran.set()

    app_container.handlers().register(constants.LEAD_DISCOVERY_QUEUE, run_lead_discovery)
    producer = JobQueue(constants.LEAD_DISCOVERY_QUEUE, fake_redis, prefix=settings.queue_prefix)
    job = await producer.add("discover-leads")

    stop = asyncio.Event()
    process = asyncio.create_task(run_worker_process(app_container, stop=stop))
    await asyncio.wait_for(ran.wait(), timeout=2)
    status = None
    for _ in range(100):
        status = (await producer.get_job(job.id)).status
        if status == JobStatus.COMPLETED:
            break
        await asyncio.sleep(0.01)
    stop.set()

    assert await asyncio.wait_for(process, timeout=2) == 0
    assert status == JobStatus.COMPLETED
    assert online_store.is_available() is False
    assert app_container.queue_manager().workers == []


@pytest.mark.asyncio
async def test_processor_without_handler_is_unrecoverable() -> None:
    process = make_processor(JobHandlerRegistry(), constants.MARKET_INSIGHT_QUEUE)
    job = Job(id="1", queue_name=constants.MARKET_INSIGHT_QUEUE, name="discover-insights",
              status=JobStatus.ACTIVE)

    with pytest.raises(UnrecoverableJobError):
        await process(job)


@pytest.mark.asyncio
async def test_processor_runs_handler() -> None:
    registry = JobHandlerRegistry()
    calls = []

    async def expire_trials():
        calls.append("expire")

    registry.register(constants.TRIAL_EXPIRATION_QUEUE, expire_trials)
    process = make_processor(registry, constants.TRIAL_EXPIRATION_QUEUE)

    await process(Job(id="1", queue_name=constants.TRIAL_EXPIRATION_QUEUE, name="expire-trials"))

    assert calls == ["expire"]
