"""Admission queue: caps how many jobs the engine runs at once in this process."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from ..exceptions import QueueFullError
from ..utils.logging import get_logger
from .definitions import WorkflowDefinition
from .engine import ExecutionEngine
from .models import JobStatus

__all__ = ["AdmissionQueue", "QueueStatus"]

LOGGER = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class QueueStatus:
    running: tuple[str, ...]
    max_concurrent: int

    @property
    def available(self) -> int:
        return max(0, self.max_concurrent - len(self.running))


class AdmissionQueue:
    """Accept a job when a slot is free, reject it immediately otherwise.

    Rejection is synchronous (:class:`QueueFullError`); nothing is buffered. An accepted
    job runs as an asyncio task and frees its slot when the engine returns, whatever the
    outcome.
    """

    def __init__(self, engine: ExecutionEngine, *, max_concurrent: int = 1) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1.")
        self._engine = engine
        self._max_concurrent = max_concurrent
        self._tasks: dict[str, asyncio.Task[JobStatus]] = {}

    def enqueue(
        self,
        job_id: str,
        workflow: WorkflowDefinition | None = None,
        *,
        resume: bool = False,
    ) -> asyncio.Task[JobStatus]:
        """Schedule ``job_id`` on the running loop and return its task."""
        if job_id in self._tasks:
            raise QueueFullError(f"Job {job_id} is already queued.")
        if len(self._tasks) >= self._max_concurrent:
            raise QueueFullError(
                f"{len(self._tasks)} job(s) already running; limit is {self._max_concurrent}."
            )
        task = asyncio.get_running_loop().create_task(
            self._run(job_id, workflow, resume=resume),
            name=f"reelsmith-job-{job_id}",
        )
        self._tasks[job_id] = task
        LOGGER.info("Job %s admitted (%s)", job_id, "resume" if resume else "execute")
        return task

    async def _run(self, job_id: str, workflow: WorkflowDefinition | None, *, resume: bool) -> JobStatus:
        try:
            if resume:
                return await self._engine.resume(job_id, workflow)
            return await self._engine.execute(job_id, workflow)
        finally:
            self._tasks.pop(job_id, None)

    def status(self) -> QueueStatus:
        return QueueStatus(running=tuple(self._tasks), max_concurrent=self._max_concurrent)

    def is_full(self) -> bool:
        return len(self._tasks) >= self._max_concurrent

    async def drain(self) -> dict[str, JobStatus | BaseException]:
        """Wait for every admitted job; engine precondition errors are returned, not raised."""
        if not self._tasks:
            return {}
        job_ids = list(self._tasks)
        results = await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        return dict(zip(job_ids, results, strict=True))

    async def shutdown(self, reason: str = "shutting down") -> dict[str, JobStatus | BaseException]:
        """Abort running jobs and wait for them to record their final status."""
        aborted = self._engine.abort_all(reason)
        if aborted:
            LOGGER.warning("Aborting %d running job(s): %s", aborted, reason)
        return await self.drain()

    def clear(self) -> int:
        """Forget finished tasks; running tasks keep their slot."""
        finished = [job_id for job_id, task in self._tasks.items() if task.done()]
        for job_id in finished:
            self._tasks.pop(job_id, None)
        return len(finished)
