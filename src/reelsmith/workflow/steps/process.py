"""Segment processing steps; the workflow enables exactly one of them per job."""

from __future__ import annotations

from typing import Any

from ..batch import SegmentBatchProcessor
from ..models import StepKind
from ..payloads import ProcessSegmentsOutput
from .base import StepContext, WorkflowStep

__all__ = ["ProcessSegmentsConcurrentStep", "ProcessSegmentsSequentialStep"]


class ProcessSegmentsConcurrentStep(WorkflowStep):
    kind = StepKind.PROCESS_SEGMENTS_CONCURRENT

    def concurrency(self, context: StepContext) -> int:
        return context.job.config.max_concurrent_segments

    def describe_input(self, context: StepContext) -> dict[str, Any]:
        return {
            "job_id": context.job.id,
            "step": self.id,
            "concurrency": self.concurrency(context),
        }

    async def execute(self, context: StepContext) -> ProcessSegmentsOutput:
        processor = SegmentBatchProcessor(context, concurrency=self.concurrency(context))
        return await processor.process(context.jobs.list_segments(context.job.id))


class ProcessSegmentsSequentialStep(ProcessSegmentsConcurrentStep):
    kind = StepKind.PROCESS_SEGMENTS_SEQUENTIAL

    def concurrency(self, context: StepContext) -> int:
        return 1
