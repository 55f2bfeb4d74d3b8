"""FFmpeg command wrappers for the segment media operations."""

from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import cast

from .cuts import DEFAULT_SCDET_THRESHOLD, SceneChange, parse_scene_changes

__all__ = ["FFmpeg", "FFmpegError"]

VIDEO_CODEC_ARGS = ("-c:v", "libx264", "-preset", "fast", "-crf", "20")
AUDIO_CODEC_ARGS = ("-c:a", "aac", "-b:a", "128k")


class FFmpegError(RuntimeError):
    """Raised when FFmpeg or FFprobe exits with a non-zero status or times out."""


class FFmpeg:
    """Lightweight wrapper around FFmpeg and FFprobe commands.

    Every method writes to the output path it is given and never modifies its inputs.
    """

    def __init__(
        self,
        *,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        timeout: float | None = None,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    # ------------------------------------------------------------------ #
    # Probing
    # ------------------------------------------------------------------ #
    def probe(self, media_path: str | Path) -> dict[str, object]:
        """Return metadata for the provided media file using ffprobe."""
        command = [
            self.ffprobe_path,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(media_path),
        ]
        result = self._execute(command, "ffprobe")
        payload = json.loads(result.stdout or "{}")
        if not isinstance(payload, dict):
            raise FFmpegError("ffprobe did not return a JSON object.")
        return cast(dict[str, object], payload)

    def duration(self, media_path: str | Path) -> float:
        """Container duration in seconds, falling back to the longest stream."""
        return probe_duration(self.probe(media_path))

    def detect_scene_changes(
        self, media_path: str | Path, *, threshold: float = DEFAULT_SCDET_THRESHOLD
    ) -> list[SceneChange]:
        stderr = self.run(
            ["-i", str(media_path), "-vf", f"scdet=s=1:t={threshold}", "-f", "null", "-"]
        )
        return parse_scene_changes(stderr)

    # ------------------------------------------------------------------ #
    # Transforms
    # ------------------------------------------------------------------ #
    def trim(
        self, input_path: str | Path, output_path: str | Path, *, start: float, duration: float
    ) -> None:
        self.run(
            [
                "-ss",
                f"{start:.3f}",
                "-i",
                str(input_path),
                "-t",
                f"{duration:.3f}",
                *VIDEO_CODEC_ARGS,
                *AUDIO_CODEC_ARGS,
                "-vf",
                "setpts=PTS-STARTPTS",
                "-af",
                "asetpts=PTS-STARTPTS",
                str(output_path),
            ]
        )

    def adjust_speed(
        self,
        input_path: str | Path,
        output_path: str | Path,
        factor: float,
        *,
        drop_audio: bool = True,
    ) -> None:
        """Re-time the video so it plays ``factor`` times faster."""
        if factor <= 0:
            raise ValueError(f"Speed factor must be positive, got {factor}.")
        args = ["-i", str(input_path), "-filter:v", f"setpts=PTS/{factor:.6f}", *VIDEO_CODEC_ARGS]
        if drop_audio:
            args.append("-an")
        else:
            args.extend(["-filter:a", atempo_chain(factor), *AUDIO_CODEC_ARGS])
        args.append(str(output_path))
        self.run(args)

    def loop(
        self, input_path: str | Path, output_path: str | Path, *, count: int, duration: float
    ) -> None:
        if count < 1:
            raise ValueError(f"Loop count must be at least 1, got {count}.")
        self.run(
            [
                "-stream_loop",
                str(count - 1),
                "-i",
                str(input_path),
                "-t",
                f"{duration:.3f}",
                *VIDEO_CODEC_ARGS,
                "-an",
                str(output_path),
            ]
        )

    def merge(
        self,
        video_path: str | Path,
        audio_path: str | Path,
        output_path: str | Path,
        *,
        sample_rate: int = 44_100,
        channels: int = 2,
        copy_video: bool = True,
        duration: float | None = None,
        volume: float = 1.0,
    ) -> None:
        """Mux a video stream with an audio track."""
        args = [
            "-i",
            str(video_path),
            "-i",
            str(audio_path),
            "-map",
            "0:v:0",
            "-map",
            "1:a:0",
        ]
        args.extend(["-c:v", "copy"] if copy_video else list(VIDEO_CODEC_ARGS))
        args.extend([*AUDIO_CODEC_ARGS, "-ar", str(sample_rate), "-ac", str(channels)])
        if volume != 1.0:
            args.extend(["-filter:a", f"volume={volume:.3f}"])
        if duration is not None:
            args.extend(["-t", f"{duration:.3f}"])
        args.append(str(output_path))
        self.run(args)

    def concat(
        self, input_paths: Sequence[str | Path], output_path: str | Path, *, list_path: str | Path
    ) -> None:
        """Join clips with the concat demuxer; inputs must share codecs."""
        if not input_paths:
            raise ValueError("At least one input is required to concatenate.")
        lines = [f"file '{_escape_concat_path(path)}'" for path in input_paths]
        Path(list_path).write_text("\n".join(lines) + "\n", encoding="utf-8")
        self.run(
            ["-f", "concat", "-safe", "0", "-i", str(list_path), "-c", "copy", str(output_path)]
        )

    def mix_background_music(
        self,
        video_path: str | Path,
        music_path: str | Path,
        output_path: str | Path,
        *,
        volume: float = 0.15,
        loop: bool = True,
    ) -> None:
        """Mix a music bed under the video's own audio; the result keeps the video's length."""
        args = ["-i", str(video_path)]
        if loop:
            args.extend(["-stream_loop", "-1"])
        args.extend(["-i", str(music_path)])
        mix = (
            f"[1:a]volume={volume:.2f}[bgm];"
            "[0:a][bgm]amix=inputs=2:duration=first:dropout_transition=2[aout]"
        )
        args.extend(["-filter_complex", mix, "-map", "0:v:0", "-map", "[aout]", "-c:v", "copy"])
        args.extend(["-c:a", "aac", "-b:a", "192k", "-ar", "44100", "-ac", "2", str(output_path)])
        self.run(args)

    def burn_captions(
        self, input_path: str | Path, subtitle_path: str | Path, output_path: str | Path
    ) -> None:
        self.run(
            [
                "-i",
                str(input_path),
                "-vf",
                f"subtitles='{_escape_filter_path(subtitle_path)}'",
                *VIDEO_CODEC_ARGS,
                "-c:a",
                "copy",
                str(output_path),
            ]
        )

    def reencode(
        self,
        input_path: str | Path,
        output_path: str | Path,
        *,
        sample_rate: int = 44_100,
        channels: int = 2,
    ) -> None:
        """Normalise codecs so the clip can be concatenated with dubbed segments."""
        self.run(
            [
                "-i",
                str(input_path),
                *VIDEO_CODEC_ARGS,
                *AUDIO_CODEC_ARGS,
                "-ar",
                str(sample_rate),
                "-ac",
                str(channels),
                str(output_path),
            ]
        )

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #
    def run(self, args: Sequence[str], *, timeout: float | None = None) -> str:
        """Invoke FFmpeg with the provided arguments and return its log output."""
        command = [self.ffmpeg_path, "-hide_banner", "-y", *args]
        return self._execute(command, "ffmpeg", timeout=timeout).stderr or ""

    def _execute(
        self, command: Sequence[str], name: str, *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603 - command constructed from trusted input
                list(command),
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise FFmpegError(f"{name} timed out after {exc.timeout}s.") from exc
        if result.returncode != 0:
            raise FFmpegError(f"{name} failed with code {result.returncode}: {result.stderr.strip()}")
        return result


def probe_duration(payload: dict[str, object]) -> float:
    format_section = payload.get("format")
    if isinstance(format_section, dict):
        value = _as_float(format_section.get("duration"))
        if value is not None:
            return value
    streams = payload.get("streams")
    durations = [
        value
        for stream in (streams if isinstance(streams, list) else [])
        if isinstance(stream, dict) and (value := _as_float(stream.get("duration"))) is not None
    ]
    if not durations:
        raise FFmpegError("ffprobe output does not contain a duration.")
    return max(durations)


def atempo_chain(factor: float) -> str:
    """Build an ``atempo`` filter chain; a single atempo only accepts 0.5-2.0."""
    filters: list[str] = []
    remaining = factor
    while remaining > 2.0:
        filters.append("atempo=2.0")
        remaining /= 2.0
    while remaining < 0.5:
        filters.append("atempo=0.5")
        remaining /= 0.5
    filters.append(f"atempo={remaining:.6f}")
    return ",".join(filters)


def _as_float(value: object) -> float | None:
    if value is None:
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _escape_concat_path(path: str | Path) -> str:
    return str(Path(path).resolve()).replace("'", "'\\''")


def _escape_filter_path(path: str | Path) -> str:
    return str(path).replace("\\", "\\\\").replace(":", "\\:").replace("'", "\\'")
