"""Bounded-concurrency processing of segments in ordinal batches."""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Sequence

from ..exceptions import JobFatalError
from ..utils.logging import get_logger
from .handlers import SegmentOutcome, SegmentPipeline
from .models import MAX_CONCURRENCY, MIN_CONCURRENCY, Segment
from .payloads import FailedSegment, ProcessedSegment, ProcessSegmentsOutput
from .steps.base import StepContext

__all__ = ["SegmentBatchProcessor", "clamp_concurrency"]

LOGGER = get_logger(__name__)


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(value)))


class SegmentBatchProcessor:
    """Run the segment pipeline over every pending segment.

    Segments are taken in ordinal order and grouped into batches of ``concurrency``;
    a batch starts only after the previous batch has settled. A failing segment is
    recorded and does not stop its siblings. Segments that already finished in an
    earlier run are counted as processed without being touched again.
    """

    def __init__(
        self,
        context: StepContext,
        *,
        concurrency: int,
        pipeline: SegmentPipeline | None = None,
    ) -> None:
        self._context = context
        self._concurrency = clamp_concurrency(concurrency)
        self._pipeline = pipeline or SegmentPipeline(context)

    @property
    def concurrency(self) -> int:
        return self._concurrency

    async def process(self, segments: Sequence[Segment]) -> ProcessSegmentsOutput:
        context = self._context
        job_id = context.job.id
        ordered = sorted((segment for segment in segments if not segment.skipped), key=lambda s: s.ordinal)

        processed = [
            ProcessedSegment(
                segment_id=segment.id,
                ordinal=segment.ordinal,
                final_artifact_ref=segment.final_artifact_ref or "",
                speed_factor=segment.speed_factor,
            )
            for segment in ordered
            if segment.is_terminal_success
        ]
        pending = [segment for segment in ordered if not segment.is_terminal_success]
        failed: list[FailedSegment] = []

        LOGGER.info(
            "Job %s processing %d segment(s) with concurrency %d (%d already done)",
            job_id,
            len(pending),
            self._concurrency,
            len(processed),
        )

        for start in range(0, len(pending), self._concurrency):
            context.abort.raise_if_aborted()
            batch = pending[start : start + self._concurrency]
            results = await asyncio.gather(
                *(self._pipeline.run(segment) for segment in batch),
                return_exceptions=True,
            )
            for segment, result in zip(batch, results, strict=True):
                if isinstance(result, SegmentOutcome):
                    self._record_success(result)
                    processed.append(
                        ProcessedSegment(
                            segment_id=segment.id,
                            ordinal=segment.ordinal,
                            final_artifact_ref=result.final_artifact_ref,
                            speed_factor=result.speed_factor,
                        )
                    )
                    continue
                if not isinstance(result, Exception):
                    raise result
                reason = str(result) or type(result).__name__
                context.jobs.fail_segment(segment.id, reason)
                failed.append(FailedSegment(segment_id=segment.id, ordinal=segment.ordinal, reason=reason))
                LOGGER.error("Job %s %s failed: %s", job_id, segment.external_id, reason)

        context.abort.raise_if_aborted()
        if not processed:
            details = "; ".join(f"{item.segment_id}: {item.reason}" for item in failed)
            raise JobFatalError(f"All segments failed to process. {details}".strip())

        processed.sort(key=lambda item: item.ordinal)
        failed.sort(key=lambda item: item.ordinal)
        LOGGER.info(
            "Job %s segment processing finished: %d processed, %d failed",
            job_id,
            len(processed),
            len(failed),
        )
        return ProcessSegmentsOutput(processed=processed, failed=failed)

    def _record_success(self, outcome: SegmentOutcome) -> None:
        context = self._context
        segment = outcome.segment

        def _store(conn: sqlite3.Connection) -> None:
            context.jobs.complete_segment(
                segment.id,
                final_artifact_ref=outcome.final_artifact_ref,
                selected_audio_ref=outcome.selected_audio_ref,
                speed_factor=outcome.speed_factor,
                candidates=outcome.candidates,
                connection=conn,
            )
            context.checkpoints.increment_processed_segments(segment.job_id, connection=conn)

        context.database.run_in_transaction(_store)
