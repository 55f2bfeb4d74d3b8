"""Per-segment pipelines: dubbed narration and original-audio passthrough."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ..exceptions import ValidationError
from ..media.captions import write_srt
from ..utils.logging import get_logger
from .models import NarrationCandidate, Segment, StepStatus, utcnow
from .retry import RetryPolicy, Sleeper, run_with_retry
from .services import MergeOptions, ReencodeOptions, SynthesizedAudio, VoiceOptions
from .speed_match import SpeedMatch, analyze_candidates, select_best_match
from .steps.base import StepContext

__all__ = ["SEGMENT_RETRY_POLICY", "SegmentOutcome", "SegmentPipeline"]

LOGGER = get_logger(__name__)

T = TypeVar("T")

SEGMENT_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay=2.0, backoff_multiplier=2.0)


@dataclass(slots=True)
class SegmentOutcome:
    segment: Segment
    final_artifact_ref: str
    selected_audio_ref: str | None = None
    speed_factor: float | None = None
    candidates: list[NarrationCandidate] = field(default_factory=list)


class SegmentPipeline:
    """Runs one segment from extracted clip to final artefact.

    Every external call is preceded by an abort check, bounded by its timeout and recorded
    as a sub-step in the step history. A failing segment is retried locally according to
    ``retry_policy`` before the error reaches the batch processor.
    """

    def __init__(
        self,
        context: StepContext,
        *,
        retry_policy: RetryPolicy = SEGMENT_RETRY_POLICY,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._context = context
        self._retry_policy = retry_policy
        self._sleep = sleep

    async def run(self, segment: Segment) -> SegmentOutcome:
        return await run_with_retry(
            lambda: self._run_once(segment),
            self._retry_policy,
            label=f"job {segment.job_id} {segment.external_id}",
            sleep=self._sleep,
        )

    async def _run_once(self, segment: Segment) -> SegmentOutcome:
        self._context.abort.raise_if_aborted()
        if not segment.clip_ref:
            raise ValidationError(f"{segment.external_id} has no extracted clip.")
        if segment.passthrough:
            return await self._run_passthrough(segment)
        return await self._run_dubbed(segment)

    # ------------------------------------------------------------------ #
    # Pipelines
    # ------------------------------------------------------------------ #
    async def _run_dubbed(self, segment: Segment) -> SegmentOutcome:
        context = self._context
        media = context.services.media
        timeouts = context.services.timeouts
        config = context.job.config

        texts = [text.strip() if text else "" for text in segment.narrations]
        if not all(texts):
            raise ValidationError(f"{segment.external_id} is missing narration versions.")

        trimmed = await self._call(
            "trim_jumpcuts",
            segment,
            lambda: media.trim_cut_boundaries(segment.clip_ref),
            timeouts.media,
        )
        audios: list[SynthesizedAudio] = await self._call(
            "synthesize_audio",
            segment,
            lambda: context.services.speech.synthesize_many(
                texts,
                VoiceOptions(
                    language=config.language,
                    speech_rates=config.speech_rates,
                    voice=config.voice,
                ),
            ),
            timeouts.speech,
            summarize=lambda result: [
                {"audio_ref": audio.audio_ref, "duration": audio.duration_seconds} for audio in result
            ],
        )
        if len(audios) != len(texts):
            raise ValidationError(
                f"Speech synthesis returned {len(audios)} tracks for {len(texts)} narrations."
            )

        metadata = await self._call(
            "probe_clip",
            segment,
            lambda: media.get_metadata(trimmed),
            timeouts.media,
            summarize=lambda result: {"duration": result.duration_seconds},
        )
        match = self._select_match(segment, metadata.duration_seconds, audios)

        video = trimmed
        if match.loop_count:
            video = await self._call(
                "loop_clip",
                segment,
                lambda: media.loop(
                    trimmed, match.loop_count, metadata.duration_seconds * match.loop_count
                ),
                timeouts.media,
            )
        elif match.needs_trim:
            video = await self._call(
                "pretrim_clip",
                segment,
                lambda: media.trim(trimmed, 0.0, match.trim_duration),
                timeouts.media,
            )

        retimed = await self._call(
            "adjust_video_speed",
            segment,
            lambda: media.adjust_speed(video, match.adjusted_factor, drop_audio=True),
            timeouts.media,
        )
        selected = audios[match.candidate_index]
        final = await self._call(
            "merge_audio_video",
            segment,
            lambda: media.merge(
                retimed,
                selected.audio_ref,
                MergeOptions(duration=selected.duration_seconds, volume=config.dub_volume),
            ),
            timeouts.media,
        )

        if config.captions_enabled:
            subtitle_path = write_srt(
                texts[match.candidate_index],
                selected.duration_seconds,
                context.services.work_dir / segment.job_id / f"{segment.external_id}.srt",
            )
            merged = final
            final = await self._call(
                "burn_subtitle",
                segment,
                lambda: media.burn_captions(merged, str(subtitle_path)),
                timeouts.media,
            )

        scores = {
            score.index: score.score
            for score in analyze_candidates(metadata.duration_seconds, [a.duration_seconds for a in audios])
        }
        candidates = [
            NarrationCandidate(
                version=index + 1,
                text=texts[index],
                audio_ref=audio.audio_ref,
                duration_seconds=audio.duration_seconds,
                speed_score=scores.get(index),
                selected=index == match.candidate_index,
            )
            for index, audio in enumerate(audios)
        ]
        return SegmentOutcome(
            segment=segment,
            final_artifact_ref=final,
            selected_audio_ref=selected.audio_ref,
            speed_factor=match.adjusted_factor,
            candidates=candidates,
        )

    async def _run_passthrough(self, segment: Segment) -> SegmentOutcome:
        media = self._context.services.media
        timeout = self._context.services.timeouts.media
        trimmed = await self._call(
            "trim_jumpcuts", segment, lambda: media.trim_cut_boundaries(segment.clip_ref), timeout
        )
        final = await self._call(
            "reencode", segment, lambda: media.reencode(trimmed, ReencodeOptions()), timeout
        )
        return SegmentOutcome(segment=segment, final_artifact_ref=final, speed_factor=1.0)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _select_match(
        self, segment: Segment, video_duration: float, audios: list[SynthesizedAudio]
    ) -> SpeedMatch:
        started_at = utcnow()
        durations = [audio.duration_seconds for audio in audios]
        snapshot = {"video_duration": video_duration, "audio_durations": durations}
        try:
            match = select_best_match(video_duration, durations)
        except ValidationError as exc:
            self._record(segment, "select_best_match", StepStatus.FAILED, started_at, snapshot, error=str(exc))
            raise
        self._record(
            segment,
            "select_best_match",
            StepStatus.COMPLETED,
            started_at,
            snapshot,
            output={
                "candidate_index": match.candidate_index,
                "raw_factor": match.raw_factor,
                "adjusted_factor": match.adjusted_factor,
                "loop_count": match.loop_count,
                "needs_trim": match.needs_trim,
            },
        )
        return match

    async def _call(
        self,
        name: str,
        segment: Segment,
        factory: Callable[[], Awaitable[T]],
        timeout: float,
        *,
        summarize: Callable[[T], Any] | None = None,
    ) -> T:
        self._context.abort.raise_if_aborted()
        started_at = utcnow()
        snapshot = {"clip_ref": segment.clip_ref}
        try:
            result = await asyncio.wait_for(factory(), timeout=timeout)
        except Exception as exc:
            self._record(segment, name, StepStatus.FAILED, started_at, snapshot, error=str(exc) or type(exc).__name__)
            raise
        self._record(
            segment,
            name,
            StepStatus.COMPLETED,
            started_at,
            snapshot,
            output=summarize(result) if summarize else result,
        )
        return result

    def _record(
        self,
        segment: Segment,
        name: str,
        status: StepStatus,
        started_at: Any,
        snapshot: Any,
        *,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        context = self._context
        context.history.record_sub_step(
            segment.job_id,
            name,
            segment_id=segment.id,
            stage_id=context.stage_id,
            status=status,
            started_at=started_at,
            input_snapshot=snapshot,
            output_snapshot=output,
            error_message=error,
        )
        if status is StepStatus.FAILED:
            LOGGER.warning("Job %s %s %s failed: %s", segment.job_id, segment.external_id, name, error)
