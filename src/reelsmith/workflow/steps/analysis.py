"""Analysis stage: probe the inputs, ask the AI for segments, validate the answer."""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from ...exceptions import ValidationError
from ...utils.logging import get_logger
from ..models import Job, Segment, StepKind, segment_key
from ..payloads import (
    AnalysisOutput,
    MetadataOutput,
    SkippedSegment,
    ValidationOutput,
    VideoMetadata,
)
from .base import StepContext, WorkflowStep

__all__ = [
    "AnalyzeVideoStep",
    "FetchMetadataStep",
    "ValidateSegmentsStep",
    "parse_timestamp",
]

LOGGER = get_logger(__name__)

PASSTHROUGH_KEYS = ("use_original_audio", "passthrough", "original_audio")
NARRATION_KEYS = ("narration", "narration_script", "text")
SOURCE_KEYS = ("source", "video", "source_label")


class FetchMetadataStep(WorkflowStep):
    """Resolve a local file for every input and measure its duration."""

    kind = StepKind.FETCH_METADATA

    async def execute(self, context: StepContext) -> MetadataOutput:
        media = context.services.media
        timeout = context.services.timeouts.media
        videos: list[VideoMetadata] = []
        for video in context.job.inputs:
            context.abort.raise_if_aborted()
            local_path = video.local_path or video.uri
            if "://" not in local_path and not Path(local_path).exists():
                raise ValidationError(f"Input video not found: {local_path}")
            metadata = await asyncio.wait_for(media.get_metadata(local_path), timeout=timeout)
            if metadata.duration_seconds <= 0:
                raise ValidationError(f"Invalid video duration for {video.label}: {metadata.duration_seconds}")
            context.jobs.update_input_metadata(
                context.job.id,
                video.label,
                local_path=local_path,
                duration_seconds=metadata.duration_seconds,
            )
            videos.append(
                VideoMetadata(
                    label=video.label,
                    uri=video.uri,
                    local_path=local_path,
                    duration_seconds=metadata.duration_seconds,
                )
            )
            LOGGER.info(
                "Job %s input %s: %.2fs", context.job.id, video.label, metadata.duration_seconds
            )
        context.refresh_job()
        return MetadataOutput(videos=videos)


class AnalyzeVideoStep(WorkflowStep):
    """First conversation turn with the video-understanding AI."""

    kind = StepKind.ANALYZE_VIDEO

    def describe_input(self, context: StepContext) -> dict[str, Any]:
        return {
            "job_id": context.job.id,
            "uris": [video.uri for video in context.job.inputs],
            "platform": context.job.config.platform.value,
        }

    async def execute(self, context: StepContext) -> AnalysisOutput:
        context.abort.raise_if_aborted()
        services = context.services
        job = context.job
        prompt = services.prompts.analysis_prompt(job)
        uris = [video.uri for video in job.inputs]

        result = await services.dispatcher.execute(
            lambda: services.video_client.analyze_video(uris, prompt, job.config.platform),
            platform=job.config.platform,
            label="analyze_video",
            timeout=services.timeouts.analysis,
        )
        if not result.segments:
            raise ValidationError("Video analysis returned no segments.")
        LOGGER.info(
            "Job %s analysis returned %d segment(s) (%d tokens)",
            job.id,
            len(result.segments),
            result.token_usage.total_tokens,
        )
        return AnalysisOutput(
            prompt=prompt,
            response_text=result.raw_response_text,
            segments=[dict(item) for item in result.segments],
            token_usage=result.token_usage,
        )


class ValidateSegmentsStep(WorkflowStep):
    """Turn raw analysis segments into Segment rows.

    Structural problems (missing or empty timings) fail the job. Segments that fall outside
    their source video or lack narration text are stored with the skip flag instead.
    """

    kind = StepKind.VALIDATE_SEGMENTS

    async def execute(self, context: StepContext) -> ValidationOutput:
        analysis = context.require_output(StepKind.ANALYZE_VIDEO, AnalysisOutput)
        metadata = context.require_output(StepKind.FETCH_METADATA, MetadataOutput)
        job = context.job
        durations = {video.label: video.duration_seconds for video in metadata.videos}

        errors: list[str] = []
        warnings: list[str] = []
        skipped: list[SkippedSegment] = []
        segments: list[Segment] = []

        for ordinal, raw in enumerate(analysis.segments):
            try:
                segment = _build_segment(job.id, ordinal, raw)
            except ValidationError as exc:
                errors.append(f"segment {ordinal + 1}: {exc}")
                continue

            reason = _skip_reason(segment, job, durations)
            if reason is not None:
                segment.skipped = True
                segment.skip_reason = reason
                skipped.append(SkippedSegment(ordinal=ordinal, reason=reason))
                LOGGER.warning("Job %s skipping %s: %s", job.id, segment.external_id, reason)
            segments.append(segment)

        if errors:
            raise ValidationError("Analysis segments are invalid: " + "; ".join(errors))

        usable = [segment for segment in segments if not segment.skipped]
        if not usable:
            raise ValidationError("No usable segments remain after validation.")

        target = job.config.target_segment_count
        if target is not None and len(segments) != target:
            warnings.append(f"expected {target} segments, analysis returned {len(segments)}")
        passthrough_count = sum(1 for segment in usable if segment.passthrough)
        expected_passthrough = job.config.passthrough_segment_count
        if expected_passthrough and passthrough_count != expected_passthrough:
            warnings.append(
                f"expected {expected_passthrough} original-audio segments, found {passthrough_count}"
            )
        for warning in warnings:
            LOGGER.warning("Job %s: %s", job.id, warning)

        def _store(conn: sqlite3.Connection) -> None:
            context.jobs.replace_segments(job.id, segments, connection=conn)
            context.checkpoints.update_state(job.id, total_segments=len(usable), connection=conn)

        context.database.run_in_transaction(_store)
        return ValidationOutput(
            total=len(segments),
            usable=len(usable),
            skipped=skipped,
            warnings=warnings,
        )


def parse_timestamp(value: Any) -> float:
    """Parse seconds given as a number, ``SS``, ``MM:SS`` or ``HH:MM:SS(.fff)`` string."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid timestamp: {value!r}")
    parts = value.strip().split(":")
    if len(parts) > 3:
        raise ValidationError(f"Invalid timestamp: {value!r}")
    try:
        numbers = [float(part) for part in parts]
    except ValueError as exc:
        raise ValidationError(f"Invalid timestamp: {value!r}") from exc
    seconds = 0.0
    for number in numbers:
        seconds = seconds * 60 + number
    return seconds


def _first(raw: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _build_segment(job_id: str, ordinal: int, raw: Mapping[str, Any]) -> Segment:
    if not isinstance(raw, Mapping):
        raise ValidationError("segment is not an object")
    if raw.get("start") is None or raw.get("end") is None:
        raise ValidationError("missing start or end")

    start = parse_timestamp(raw["start"])
    end = parse_timestamp(raw["end"])
    if start > end:
        start, end = end, start
    duration = end - start
    if duration <= 0:
        raise ValidationError(f"empty time range {start:.3f}-{end:.3f}")

    narration = _first(raw, NARRATION_KEYS)
    source = _first(raw, SOURCE_KEYS)
    passthrough = bool(_first(raw, PASSTHROUGH_KEYS) or False)
    return Segment(
        id=segment_key(job_id, ordinal),
        job_id=job_id,
        ordinal=ordinal,
        source_start=start,
        source_end=end,
        target_duration=duration,
        narration_text=str(narration).strip() if narration else None,
        source_label=str(source) if source is not None else None,
        passthrough=passthrough,
    )


def _skip_reason(segment: Segment, job: Job, durations: Mapping[str, float]) -> str | None:
    try:
        video = job.input_by_label(segment.source_label)
    except KeyError:
        return f"unknown source video '{segment.source_label}'"
    segment.source_label = video.label

    if segment.source_start < 0:
        return "starts before the beginning of the source video"
    video_duration = durations.get(video.label)
    if video_duration is not None and segment.source_end > video_duration:
        return f"ends after the source video ({segment.source_end:.2f}s > {video_duration:.2f}s)"
    if not segment.passthrough and not segment.narration_text:
        return "no narration text"
    return None
