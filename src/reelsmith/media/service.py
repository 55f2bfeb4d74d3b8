"""Local media transform service built on :class:`FFmpeg`."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence
from pathlib import Path

from ..utils.logging import get_logger
from ..workflow.services import MediaMetadata, MergeOptions, ReencodeOptions, Timeouts
from .cuts import DEFAULT_MIN_DURATION, DEFAULT_SCAN_RANGE, analyze_trim_points
from .ffmpeg import FFmpeg, probe_duration

__all__ = ["FFmpegMediaService"]

LOGGER = get_logger(__name__)

DEFAULT_TIMEOUT = Timeouts().media


class FFmpegMediaService:
    """Implements the media transform contract with local files as artefact references.

    Commands run in a worker thread so the event loop stays responsive; outputs are
    written to ``work_dir`` under unique names. ``timeout`` bounds each FFmpeg child
    process, so a call abandoned by the engine does not leave the encoder running.
    """

    def __init__(
        self,
        work_dir: str | Path,
        *,
        ffmpeg: FFmpeg | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
        scan_range: float = DEFAULT_SCAN_RANGE,
        min_duration: float = DEFAULT_MIN_DURATION,
    ) -> None:
        self.work_dir = Path(work_dir)
        self.ffmpeg = ffmpeg or FFmpeg(timeout=timeout)
        self.scan_range = scan_range
        self.min_duration = min_duration

    async def get_metadata(self, ref: str) -> MediaMetadata:
        payload = await asyncio.to_thread(self.ffmpeg.probe, ref)
        streams = payload.get("streams")
        streams = streams if isinstance(streams, list) else []
        video = next(
            (s for s in streams if isinstance(s, dict) and s.get("codec_type") == "video"), {}
        )
        return MediaMetadata(
            duration_seconds=probe_duration(payload),
            width=_as_int(video.get("width")),
            height=_as_int(video.get("height")),
            has_audio=any(isinstance(s, dict) and s.get("codec_type") == "audio" for s in streams),
        )

    async def trim(self, ref: str, start: float, end: float) -> str:
        output = self._output_path(ref, "clip")
        await asyncio.to_thread(self.ffmpeg.trim, ref, output, start=start, duration=end - start)
        return str(output)

    async def trim_cut_boundaries(self, ref: str) -> str:
        """Cut jump-cut frames at either end; returns ``ref`` unchanged when none are found."""
        duration = await asyncio.to_thread(self.ffmpeg.duration, ref)
        changes = await asyncio.to_thread(self.ffmpeg.detect_scene_changes, ref)
        analysis = analyze_trim_points(
            duration, changes, scan_range=self.scan_range, min_duration=self.min_duration
        )
        if not analysis.needs_trim:
            return ref
        LOGGER.debug(
            "Trimming %.3fs from the start and %.3fs from the end of %s",
            analysis.trim_start,
            analysis.trim_end,
            ref,
        )
        output = self._output_path(ref, "trimmed")
        await asyncio.to_thread(
            self.ffmpeg.trim, ref, output, start=analysis.trim_start, duration=analysis.new_duration
        )
        return str(output)

    async def adjust_speed(self, ref: str, factor: float, *, drop_audio: bool = True) -> str:
        output = self._output_path(ref, "speed")
        await asyncio.to_thread(self.ffmpeg.adjust_speed, ref, output, factor, drop_audio=drop_audio)
        return str(output)

    async def loop(self, ref: str, count: int, target_duration: float) -> str:
        output = self._output_path(ref, "loop")
        await asyncio.to_thread(self.ffmpeg.loop, ref, output, count=count, duration=target_duration)
        return str(output)

    async def merge(self, video_ref: str, audio_ref: str, options: MergeOptions) -> str:
        output = self._output_path(video_ref, "merged")
        await asyncio.to_thread(
            self.ffmpeg.merge,
            video_ref,
            audio_ref,
            output,
            sample_rate=options.sample_rate,
            channels=options.channels,
            copy_video=options.copy_video,
            duration=options.duration,
            volume=options.volume,
        )
        return str(output)

    async def concatenate(self, refs: Sequence[str]) -> str:
        token = uuid.uuid4().hex[:8]
        output = self.work_dir / f"concat-{token}.mp4"
        list_path = self.work_dir / f"concat-{token}.txt"
        self.work_dir.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(self.ffmpeg.concat, list(refs), output, list_path=list_path)
        return str(output)

    async def mix_bgm(self, video_ref: str, music_ref: str, volume: float) -> str:
        output = self._output_path(video_ref, "bgm")
        await asyncio.to_thread(
            self.ffmpeg.mix_background_music, video_ref, music_ref, output, volume=volume
        )
        return str(output)

    async def burn_captions(self, ref: str, subtitle_ref: str) -> str:
        output = self._output_path(ref, "captioned")
        await asyncio.to_thread(self.ffmpeg.burn_captions, ref, subtitle_ref, output)
        return str(output)

    async def reencode(self, ref: str, options: ReencodeOptions) -> str:
        output = self._output_path(ref, "reencoded")
        await asyncio.to_thread(
            self.ffmpeg.reencode,
            ref,
            output,
            sample_rate=options.sample_rate,
            channels=options.channels,
        )
        return str(output)

    def _output_path(self, ref: str, operation: str) -> Path:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        stem = Path(ref).stem[:40]
        return self.work_dir / f"{stem}-{operation}-{uuid.uuid4().hex[:8]}.mp4"


def _as_int(value: object) -> int | None:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
