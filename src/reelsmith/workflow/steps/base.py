"""Step contract and the execution context handed to every step."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeVar

from ...exceptions import JobFatalError
from ...storage.checkpoints import CheckpointStore
from ...storage.db import SQLiteDatabase
from ...storage.jobs import JobRepository
from ...storage.step_history import StepHistoryLedger
from ..definitions import StepDefinition
from ..models import Job, StepKind
from ..payloads import StepPayload
from ..services import AbortSignal, Services

__all__ = ["StepContext", "WorkflowStep"]

P = TypeVar("P")


@dataclass(slots=True)
class StepContext:
    """Everything a step may touch while the engine runs it."""

    job: Job
    services: Services
    database: SQLiteDatabase
    jobs: JobRepository
    checkpoints: CheckpointStore
    history: StepHistoryLedger
    abort: AbortSignal
    outputs: dict[StepKind, StepPayload] = field(default_factory=dict)
    stage_id: str | None = None
    step_id: str | None = None

    def require_output(self, kind: StepKind, expected: type[P]) -> P:
        """Return the stored output of an earlier step, failing the job if it is missing."""
        payload = self.outputs.get(kind)
        if payload is None:
            raise JobFatalError(f"Step '{kind.value}' has no recorded output for job {self.job.id}.")
        if not isinstance(payload, expected):
            raise JobFatalError(
                f"Step '{kind.value}' output is {type(payload).__name__}, expected {expected.__name__}."
            )
        return payload

    def refresh_job(self) -> Job:
        self.job = self.jobs.get_job(self.job.id)
        return self.job


class WorkflowStep(ABC):
    """An executable unit resolved from a :class:`StepDefinition` by the registry."""

    kind: ClassVar[StepKind]

    def __init__(self, definition: StepDefinition) -> None:
        self.definition = definition

    @property
    def id(self) -> str:
        return self.definition.id

    def describe_input(self, context: StepContext) -> dict[str, Any]:
        """Snapshot recorded in the step history when the step starts."""
        return {"job_id": context.job.id, "step": self.id}

    @abstractmethod
    async def execute(self, context: StepContext) -> StepPayload:
        """Run the step and return its typed output."""
