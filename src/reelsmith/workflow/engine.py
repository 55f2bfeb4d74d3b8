"""Execution engine: runs a job through the stages of its workflow with checkpointed resume."""

from __future__ import annotations

from datetime import datetime, timedelta

from ..exceptions import (
    InvalidTransitionError,
    JobAlreadyRunningError,
    JobFatalError,
    classify_failure,
)
from ..storage.checkpoints import CheckpointStore
from ..storage.db import SQLiteDatabase
from ..storage.jobs import JobRepository
from ..storage.step_history import StepHistoryLedger
from ..utils.logging import get_logger
from .definitions import StageDefinition, StepDefinition, WorkflowDefinition, select_workflow
from .models import Job, JobStatus, utcnow
from .payloads import encode_payload
from .registry import StepFactory, create_step
from .retry import ErrorDisposition, classify_error, run_with_retry
from .services import AbortSignal, Services
from .steps.base import StepContext

__all__ = ["DEFAULT_ZOMBIE_WINDOW", "ExecutionEngine"]

LOGGER = get_logger(__name__)

DEFAULT_ZOMBIE_WINDOW = timedelta(minutes=30)


class ExecutionEngine:
    """Drive jobs through their workflow stages.

    The engine owns every job status transition. ``execute`` and ``resume`` never raise
    for failures that happen while the job runs: the job is marked ``failed`` with a
    classified error and the terminal status is returned. Precondition violations
    (unknown job, wrong status, job already running here) are raised to the caller.
    """

    def __init__(
        self,
        database: SQLiteDatabase,
        services: Services,
        *,
        step_factory: StepFactory = create_step,
    ) -> None:
        self._db = database
        self._services = services
        self._step_factory = step_factory
        self.jobs = JobRepository(database)
        self.checkpoints = CheckpointStore(database)
        self.history = StepHistoryLedger(database)
        self._running: dict[str, AbortSignal] = {}
        self._heartbeats: dict[str, datetime] = {}

    # ------------------------------------------------------------------ #
    # Entry points
    # ------------------------------------------------------------------ #
    async def execute(self, job_id: str, workflow: WorkflowDefinition | None = None) -> JobStatus:
        """Run a ``pending`` job from the first stage."""
        job = self._claim(job_id, JobStatus.PENDING)
        try:
            definition = workflow or select_workflow(job)
            context = self._build_context(job)
            try:
                self.checkpoints.init_state(job_id)
                self.jobs.mark_processing(job_id)
                context.refresh_job()
            except Exception as exc:
                self._fail_job(job_id, exc)
                return JobStatus.FAILED
            LOGGER.info("Job %s started with workflow %s", job_id, definition.name)
            return await self._run(context, definition, start_index=0)
        finally:
            self._release(job_id)

    async def resume(self, job_id: str, workflow: WorkflowDefinition | None = None) -> JobStatus:
        """Continue a ``processing`` job from the stage recorded in its checkpoint."""
        job = self._claim(job_id, JobStatus.PROCESSING)
        try:
            definition = workflow or select_workflow(job)
            context = self._build_context(job)
            try:
                start_index = self._resume_index(job_id, definition)
                context.outputs.update(self.checkpoints.load_context(job_id))
            except Exception as exc:
                self._fail_job(job_id, exc)
                return JobStatus.FAILED
            LOGGER.info(
                "Job %s resuming at stage %s of workflow %s",
                job_id,
                definition.stages[start_index].id,
                definition.name,
            )
            return await self._run(context, definition, start_index=start_index)
        finally:
            self._release(job_id)

    # ------------------------------------------------------------------ #
    # Control and introspection
    # ------------------------------------------------------------------ #
    def abort(self, job_id: str, reason: str = "job aborted") -> bool:
        signal = self._running.get(job_id)
        if signal is None:
            return False
        LOGGER.warning("Job %s abort requested: %s", job_id, reason)
        signal.abort(reason)
        return True

    def abort_all(self, reason: str = "engine shutting down") -> int:
        for job_id in list(self._running):
            self.abort(job_id, reason)
        return len(self._running)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._running

    @property
    def running_count(self) -> int:
        return len(self._running)

    def running_jobs(self) -> list[str]:
        return list(self._running)

    def last_heartbeat(self, job_id: str) -> datetime | None:
        if job_id in self._heartbeats:
            return self._heartbeats[job_id]
        job = self.jobs.find_job(job_id)
        return job.heartbeat_at if job else None

    def is_stale(
        self,
        job_id: str,
        window: timedelta = DEFAULT_ZOMBIE_WINDOW,
        *,
        now: datetime | None = None,
    ) -> bool:
        heartbeat = self.last_heartbeat(job_id)
        if heartbeat is None:
            return False
        return (now or utcnow()) - heartbeat > window

    def find_zombie_jobs(
        self,
        window: timedelta = DEFAULT_ZOMBIE_WINDOW,
        *,
        now: datetime | None = None,
    ) -> list[Job]:
        """Processing jobs with a stale heartbeat that are not running in this process."""
        return [
            job
            for job in self.jobs.find_stale_jobs(window, now=now)
            if job.id not in self._running
        ]

    # ------------------------------------------------------------------ #
    # Stage and step execution
    # ------------------------------------------------------------------ #
    async def _run(self, context: StepContext, workflow: WorkflowDefinition, *, start_index: int) -> JobStatus:
        job_id = context.job.id
        try:
            for stage in workflow.stages[start_index:]:
                await self._run_stage(context, stage)
            self.jobs.mark_completed(job_id)
        except Exception as exc:
            self._fail_job(job_id, exc)
            return JobStatus.FAILED
        LOGGER.info("Job %s completed", job_id)
        return JobStatus.COMPLETED

    async def _run_stage(self, context: StepContext, stage: StageDefinition) -> None:
        job_id = context.job.id
        context.stage_id = stage.id
        context.step_id = None
        self.checkpoints.update_state(job_id, current_stage=stage.id, current_step=None)
        LOGGER.info("Job %s stage %s started", job_id, stage.id)
        for definition in stage.steps:
            context.abort.raise_if_aborted()
            if not definition.applies_to(context.job.config):
                LOGGER.debug("Job %s step %s skipped by its condition", job_id, definition.id)
                continue
            await self._run_step(context, stage, definition)

    async def _run_step(self, context: StepContext, stage: StageDefinition, definition: StepDefinition) -> None:
        job_id = context.job.id
        step = self._step_factory(definition)
        context.step_id = step.id

        self._beat(job_id)
        self.history.mark_step_started(job_id, step.id, stage_id=stage.id)
        LOGGER.info("Job %s step %s/%s started", job_id, stage.id, step.id)
        # Snapshots go on the running row so a failure while describing, encoding or
        # checkpointing is recorded against this attempt.
        try:
            self.history.save_input(job_id, step.id, step.describe_input(context))
            output = await run_with_retry(
                lambda: step.execute(context),
                definition.retry,
                label=f"job {job_id} step {step.id}",
            )
            self.history.save_output(job_id, step.id, encode_payload(definition.kind, output))
            self.checkpoints.save_step_output(job_id, definition.kind, output)
        except Exception as exc:
            self.history.mark_step_failed(job_id, step.id, str(exc) or type(exc).__name__)
            raise

        context.outputs[definition.kind] = output
        self.history.mark_step_completed(job_id, step.id)
        self._beat(job_id)
        LOGGER.info("Job %s step %s/%s completed", job_id, stage.id, step.id)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _claim(self, job_id: str, expected: JobStatus) -> Job:
        if job_id in self._running:
            raise JobAlreadyRunningError(f"Job {job_id} is already running.")
        job = self.jobs.get_job(job_id)
        if job.status is not expected:
            raise InvalidTransitionError(
                f"Job {job_id} is {job.status.value}; expected {expected.value}."
            )
        self._running[job_id] = AbortSignal()
        return job

    def _release(self, job_id: str) -> None:
        self._running.pop(job_id, None)
        self._heartbeats.pop(job_id, None)

    def _build_context(self, job: Job) -> StepContext:
        return StepContext(
            job=job,
            services=self._services,
            database=self._db,
            jobs=self.jobs,
            checkpoints=self.checkpoints,
            history=self.history,
            abort=self._running[job.id],
        )

    def _resume_index(self, job_id: str, workflow: WorkflowDefinition) -> int:
        checkpoint = self.checkpoints.get_state(job_id)
        if checkpoint is None:
            raise JobFatalError(f"Job {job_id} has no checkpoint to resume from.")
        if checkpoint.current_stage is None:
            return 0
        try:
            return workflow.stage_index(checkpoint.current_stage)
        except KeyError as exc:
            raise JobFatalError(
                f"Checkpoint stage '{checkpoint.current_stage}' is not part of workflow {workflow.name}."
            ) from exc

    def _beat(self, job_id: str) -> None:
        now = utcnow()
        self._heartbeats[job_id] = now
        self.jobs.touch_heartbeat(job_id, now)

    def _fail_job(self, job_id: str, exc: BaseException) -> None:
        classification = classify_failure(
            exc, transient=classify_error(exc) is not ErrorDisposition.FATAL
        )
        message = str(exc) or type(exc).__name__
        LOGGER.error("Job %s failed (%s): %s", job_id, classification.category.value, message)
        try:
            self.jobs.mark_failed(
                job_id,
                message,
                category=classification.category.value,
                guidance=classification.guidance,
                retryable=classification.retryable,
            )
        except Exception:
            LOGGER.exception("Job %s: unable to record the failure", job_id)
