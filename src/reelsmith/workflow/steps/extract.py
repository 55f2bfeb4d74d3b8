"""Cut every usable segment out of its source video."""

from __future__ import annotations

import asyncio

from ...exceptions import ValidationError
from ...utils.logging import get_logger
from ..models import StepKind
from ..payloads import SegmentClip, SplitOutput
from .base import StepContext, WorkflowStep

__all__ = ["SplitSegmentsStep"]

LOGGER = get_logger(__name__)


class SplitSegmentsStep(WorkflowStep):
    kind = StepKind.SPLIT_SEGMENTS

    async def execute(self, context: StepContext) -> SplitOutput:
        job = context.job
        media = context.services.media
        timeout = context.services.timeouts.media
        clips: list[SegmentClip] = []
        extracted = 0

        for segment in context.jobs.list_segments(job.id):
            if segment.skipped:
                continue
            # Clips survive a retry or resume; only missing ones are cut.
            if segment.clip_ref or segment.is_terminal_success:
                if segment.clip_ref:
                    clips.append(SegmentClip(segment_id=segment.id, clip_ref=segment.clip_ref))
                continue

            context.abort.raise_if_aborted()
            try:
                source = job.input_by_label(segment.source_label)
            except KeyError as exc:
                raise ValidationError(
                    f"{segment.external_id} refers to unknown source video '{segment.source_label}'."
                ) from exc
            source_path = source.local_path or source.uri

            clip_ref = await asyncio.wait_for(
                media.trim(source_path, segment.source_start, segment.source_end),
                timeout=timeout,
            )
            context.jobs.set_segment_clip(segment.id, clip_ref)
            clips.append(SegmentClip(segment_id=segment.id, clip_ref=clip_ref))
            extracted += 1
            LOGGER.debug(
                "Job %s extracted %s (%.2f-%.2f) from %s",
                job.id,
                segment.external_id,
                segment.source_start,
                segment.source_end,
                source.label,
            )

        LOGGER.info("Job %s extracted %d clip(s), %d reused", job.id, extracted, len(clips) - extracted)
        return SplitOutput(clips=clips)
