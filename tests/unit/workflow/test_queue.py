"""Tests for the admission queue."""

from __future__ import annotations

import asyncio

import pytest

from conftest import StubVideoClient, raw_segments
from reelsmith.exceptions import JobNotFoundError, QueueFullError
from reelsmith.workflow.engine import ExecutionEngine
from reelsmith.workflow.models import JobStatus
from reelsmith.workflow.queue import AdmissionQueue


class GatedVideoClient(StubVideoClient):
    def __init__(self, segments) -> None:
        super().__init__(segments)
        self.gate: asyncio.Event | None = None

    async def analyze_video(self, uris, prompt, platform):
        assert self.gate is not None
        await self.gate.wait()
        return await super().analyze_video(uris, prompt, platform)


def test_rejects_invalid_capacity(database, make_services) -> None:
    with pytest.raises(ValueError):
        AdmissionQueue(ExecutionEngine(database, make_services()), max_concurrent=0)


def test_second_job_is_rejected_while_one_runs(database, make_job, make_services) -> None:
    make_job("job-1")
    make_job("job-2")
    client = GatedVideoClient(raw_segments(2))
    queue = AdmissionQueue(ExecutionEngine(database, make_services(video_client=client)))

    async def scenario() -> JobStatus:
        client.gate = asyncio.Event()
        task = queue.enqueue("job-1")
        assert queue.is_full()
        with pytest.raises(QueueFullError):
            queue.enqueue("job-2")
        with pytest.raises(QueueFullError):
            queue.enqueue("job-1")
        status = queue.status()
        assert status.running == ("job-1",)
        assert status.available == 0
        client.gate.set()
        return await task

    assert asyncio.run(scenario()) is JobStatus.COMPLETED
    assert queue.status().running == ()


def test_slot_is_freed_after_completion(database, make_job, make_services) -> None:
    make_job("job-1")
    make_job("job-2")
    queue = AdmissionQueue(ExecutionEngine(database, make_services()))

    async def scenario() -> list[JobStatus]:
        first = await queue.enqueue("job-1")
        second = await queue.enqueue("job-2")
        return [first, second]

    assert asyncio.run(scenario()) == [JobStatus.COMPLETED, JobStatus.COMPLETED]


def test_drain_returns_precondition_errors(database, make_job, make_services) -> None:
    make_job("job-1")
    queue = AdmissionQueue(ExecutionEngine(database, make_services()), max_concurrent=2)

    async def scenario():
        queue.enqueue("job-1")
        queue.enqueue("ghost")
        return await queue.drain()

    results = asyncio.run(scenario())

    assert results["job-1"] is JobStatus.COMPLETED
    assert isinstance(results["ghost"], JobNotFoundError)


def test_shutdown_aborts_running_jobs(database, make_job, make_services, jobs) -> None:
    make_job("job-1")
    client = GatedVideoClient(raw_segments(2))
    engine = ExecutionEngine(database, make_services(video_client=client))
    queue = AdmissionQueue(engine)

    async def scenario():
        client.gate = asyncio.Event()
        queue.enqueue("job-1")
        while not engine.is_running("job-1"):
            await asyncio.sleep(0)
        client.gate.set()
        return await queue.shutdown("service stopping")

    results = asyncio.run(scenario())

    assert results == {"job-1": JobStatus.FAILED}
    assert jobs.get_job("job-1").error_category == "aborted"
