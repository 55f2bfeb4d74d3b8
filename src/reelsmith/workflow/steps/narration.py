"""Second conversation turn: three narration versions per dubbed segment, in batches."""

from __future__ import annotations

from ...utils.logging import get_logger
from ..models import Segment, StepKind
from ..payloads import AnalysisOutput, NarrationOutput, TokenUsage
from ..services import NarrationBatchResult, NarrationVariant
from .base import StepContext, WorkflowStep

__all__ = ["GenerateNarrationsStep", "chunk_segments"]

LOGGER = get_logger(__name__)


def chunk_segments(segments: list[Segment], size: int) -> list[list[Segment]]:
    return [segments[index : index + size] for index in range(0, len(segments), size)]


class GenerateNarrationsStep(WorkflowStep):
    """Ask the AI for narration variants A/B/C of every dubbed segment.

    A batch whose response does not contain exactly one entry per requested segment falls
    back to the draft narration for all three versions; the batch index is reported in
    ``fallback_batches``.
    """

    kind = StepKind.GENERATE_NARRATIONS

    async def execute(self, context: StepContext) -> NarrationOutput:
        analysis = context.require_output(StepKind.ANALYZE_VIDEO, AnalysisOutput)
        job = context.job
        services = context.services

        dubbed = [
            segment
            for segment in context.jobs.list_segments(job.id)
            if not segment.skipped and not segment.passthrough
        ]
        if not dubbed:
            LOGGER.info("Job %s has no dubbed segments; skipping narration generation.", job.id)
            return NarrationOutput(batches=0, narrated=0)

        batches = chunk_segments(dubbed, job.config.narration_batch_size)
        video_refs = [video.uri for video in job.inputs]
        usage = TokenUsage()
        fallback_batches: list[int] = []
        narrations: dict[str, tuple[str, str, str]] = {}

        for index, batch in enumerate(batches):
            context.abort.raise_if_aborted()
            follow_up = services.prompts.narration_prompt(job, batch, index, len(batches))
            result: NarrationBatchResult = await services.dispatcher.execute(
                lambda: services.video_client.batch_optimize_narration(
                    analysis.prompt,
                    analysis.response_text,
                    follow_up,
                    video_refs,
                    job.config.platform,
                ),
                platform=job.config.platform,
                label=f"narration batch {index + 1}/{len(batches)}",
                timeout=services.timeouts.narration,
            )
            usage = usage.add(result.token_usage)

            if len(result.segments) != len(batch):
                LOGGER.warning(
                    "Job %s narration batch %d returned %d entries for %d segments; "
                    "using draft narration for the whole batch.",
                    job.id,
                    index + 1,
                    len(result.segments),
                    len(batch),
                )
                fallback_batches.append(index)
                for segment in batch:
                    draft = segment.narration_text or ""
                    narrations[segment.id] = (draft, draft, draft)
                continue

            for segment, variant in zip(batch, _align(batch, result), strict=True):
                narrations[segment.id] = variant.versions

        context.jobs.update_segment_narrations(narrations)
        LOGGER.info(
            "Job %s narrated %d segment(s) in %d batch(es), %d fallback batch(es)",
            job.id,
            len(narrations),
            len(batches),
            len(fallback_batches),
        )
        return NarrationOutput(
            batches=len(batches),
            narrated=len(narrations),
            fallback_batches=fallback_batches,
            token_usage=usage,
        )


def _align(batch: list[Segment], result: NarrationBatchResult) -> list[NarrationVariant]:
    """Order variants by segment id when every id matches, otherwise keep response order."""
    by_id = {variant.segment_id: variant for variant in result.segments}
    if all(segment.external_id in by_id for segment in batch):
        return [by_id[segment.external_id] for segment in batch]
    return list(result.segments)
