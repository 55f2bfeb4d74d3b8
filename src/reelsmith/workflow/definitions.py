"""Static workflow graphs: ordered stages of ordered steps."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from .models import Job, JobConfig, StepKind
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy

__all__ = [
    "MULTI_VIDEO_WORKFLOW",
    "SINGLE_VIDEO_WORKFLOW",
    "StageDefinition",
    "StepCondition",
    "StepDefinition",
    "WorkflowDefinition",
    "concurrency_at_least",
    "concurrency_below",
    "select_workflow",
]

StepCondition = Callable[[JobConfig], bool]


def concurrency_at_least(threshold: int) -> StepCondition:
    def _condition(config: JobConfig) -> bool:
        return config.max_concurrent_segments >= threshold

    _condition.__name__ = f"concurrency_at_least_{threshold}"
    return _condition


def concurrency_below(threshold: int) -> StepCondition:
    def _condition(config: JobConfig) -> bool:
        return config.max_concurrent_segments < threshold

    _condition.__name__ = f"concurrency_below_{threshold}"
    return _condition


@dataclass(slots=True, frozen=True)
class StepDefinition:
    kind: StepKind
    condition: StepCondition | None = None
    retry: RetryPolicy = DEFAULT_RETRY_POLICY
    step_id: str | None = None

    @property
    def id(self) -> str:
        return self.step_id or self.kind.value

    def applies_to(self, config: JobConfig) -> bool:
        return self.condition is None or self.condition(config)


@dataclass(slots=True, frozen=True)
class StageDefinition:
    id: str
    steps: tuple[StepDefinition, ...]


@dataclass(slots=True, frozen=True)
class WorkflowDefinition:
    name: str
    stages: tuple[StageDefinition, ...] = field(default_factory=tuple)

    def stage_index(self, stage_id: str) -> int:
        for index, stage in enumerate(self.stages):
            if stage.id == stage_id:
                return index
        raise KeyError(stage_id)


def _retry(attempts: int, delay: float, multiplier: float = 2.0) -> RetryPolicy:
    return RetryPolicy(max_attempts=attempts, base_delay=delay, backoff_multiplier=multiplier)


def _build_workflow(name: str, retries: dict[StepKind, RetryPolicy]) -> WorkflowDefinition:
    def step(kind: StepKind, condition: StepCondition | None = None) -> StepDefinition:
        return StepDefinition(
            kind=kind,
            condition=condition,
            retry=retries.get(kind, DEFAULT_RETRY_POLICY),
        )

    return WorkflowDefinition(
        name=name,
        stages=(
            StageDefinition(
                id="analysis",
                steps=(
                    step(StepKind.FETCH_METADATA),
                    step(StepKind.ANALYZE_VIDEO),
                    step(StepKind.VALIDATE_SEGMENTS),
                ),
            ),
            StageDefinition(
                id="generate_narrations",
                steps=(step(StepKind.GENERATE_NARRATIONS),),
            ),
            StageDefinition(
                id="extract_segments",
                steps=(step(StepKind.SPLIT_SEGMENTS),),
            ),
            StageDefinition(
                id="process_segments",
                steps=(
                    step(StepKind.PROCESS_SEGMENTS_CONCURRENT, concurrency_at_least(2)),
                    step(StepKind.PROCESS_SEGMENTS_SEQUENTIAL, concurrency_below(2)),
                ),
            ),
            StageDefinition(
                id="compose",
                steps=(
                    step(StepKind.CONCATENATE),
                    step(StepKind.ADD_BGM),
                    step(StepKind.EXPORT),
                ),
            ),
        ),
    )


_NO_STEP_RETRY = RetryPolicy(max_attempts=1)

# Validation and segment processing get one attempt; segments retry inside the batch processor.
SINGLE_VIDEO_WORKFLOW = _build_workflow(
    "single-video",
    {
        StepKind.FETCH_METADATA: _retry(3, 1.0),
        StepKind.ANALYZE_VIDEO: _retry(2, 5.0),
        StepKind.VALIDATE_SEGMENTS: _NO_STEP_RETRY,
        StepKind.PROCESS_SEGMENTS_CONCURRENT: _NO_STEP_RETRY,
        StepKind.PROCESS_SEGMENTS_SEQUENTIAL: _NO_STEP_RETRY,
        StepKind.ADD_BGM: _retry(2, 2.0),
        StepKind.EXPORT: _retry(2, 2.0),
    },
)

MULTI_VIDEO_WORKFLOW = _build_workflow(
    "multi-video",
    {
        StepKind.FETCH_METADATA: _retry(3, 2.0),
        StepKind.ANALYZE_VIDEO: _retry(2, 5.0),
        StepKind.VALIDATE_SEGMENTS: _NO_STEP_RETRY,
        StepKind.GENERATE_NARRATIONS: _retry(3, 5.0),
        StepKind.SPLIT_SEGMENTS: _retry(3, 3.0),
        StepKind.PROCESS_SEGMENTS_CONCURRENT: _NO_STEP_RETRY,
        StepKind.PROCESS_SEGMENTS_SEQUENTIAL: _NO_STEP_RETRY,
        StepKind.CONCATENATE: _retry(3, 3.0),
        StepKind.ADD_BGM: _retry(2, 2.0),
        StepKind.EXPORT: _retry(3, 2.0),
    },
)


def select_workflow(job: Job) -> WorkflowDefinition:
    return MULTI_VIDEO_WORKFLOW if len(job.inputs) > 1 else SINGLE_VIDEO_WORKFLOW
