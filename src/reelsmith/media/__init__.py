"""Media primitives backed by the ffmpeg command-line tools."""

from __future__ import annotations

from .ffmpeg import FFmpeg, FFmpegError
from .service import FFmpegMediaService

__all__ = ["FFmpeg", "FFmpegError", "FFmpegMediaService"]
