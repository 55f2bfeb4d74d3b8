"""Collaborator contracts consumed by the workflow steps, and the bundle that carries them."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ..exceptions import JobAbortedError
from .models import Job, Platform, Segment
from .payloads import TokenUsage
from .rate_limit import RateLimitedDispatcher

__all__ = [
    "AbortSignal",
    "AnalysisResult",
    "MediaMetadata",
    "MediaTransformService",
    "MergeOptions",
    "NarrationBatchResult",
    "NarrationVariant",
    "PromptProvider",
    "ReencodeOptions",
    "Services",
    "SpeechSynthesisService",
    "SynthesizedAudio",
    "Timeouts",
    "VideoUnderstandingClient",
    "VoiceOptions",
]


@dataclass(slots=True)
class AnalysisResult:
    """First-turn analysis. ``segments`` are the raw mappings returned by the model."""

    segments: list[dict[str, Any]]
    raw_response_text: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(slots=True, frozen=True)
class NarrationVariant:
    segment_id: str
    narration_a: str
    narration_b: str
    narration_c: str

    @property
    def versions(self) -> tuple[str, str, str]:
        return (self.narration_a, self.narration_b, self.narration_c)


@dataclass(slots=True)
class NarrationBatchResult:
    segments: list[NarrationVariant]
    token_usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(slots=True, frozen=True)
class SynthesizedAudio:
    audio_ref: str
    duration_seconds: float


@dataclass(slots=True, frozen=True)
class VoiceOptions:
    language: str
    speech_rates: tuple[float, ...]
    voice: str | None = None


@dataclass(slots=True, frozen=True)
class MediaMetadata:
    duration_seconds: float
    width: int | None = None
    height: int | None = None
    has_audio: bool = False


@dataclass(slots=True, frozen=True)
class MergeOptions:
    sample_rate: int = 44_100
    channels: int = 2
    copy_video: bool = True
    duration: float | None = None
    volume: float = 1.0


@dataclass(slots=True, frozen=True)
class ReencodeOptions:
    sample_rate: int = 44_100
    channels: int = 2


@runtime_checkable
class VideoUnderstandingClient(Protocol):
    async def analyze_video(
        self, uris: Sequence[str], prompt: str, platform: Platform
    ) -> AnalysisResult: ...

    async def batch_optimize_narration(
        self,
        analysis_prompt: str,
        analysis_response_text: str,
        follow_up_prompt: str,
        video_refs: Sequence[str],
        platform: Platform,
    ) -> NarrationBatchResult: ...


@runtime_checkable
class MediaTransformService(Protocol):
    """Media primitives. Every operation returns a new artefact reference."""

    async def get_metadata(self, ref: str) -> MediaMetadata: ...

    async def trim(self, ref: str, start: float, end: float) -> str: ...

    async def trim_cut_boundaries(self, ref: str) -> str: ...

    async def adjust_speed(self, ref: str, factor: float, *, drop_audio: bool = True) -> str: ...

    async def loop(self, ref: str, count: int, target_duration: float) -> str: ...

    async def merge(self, video_ref: str, audio_ref: str, options: MergeOptions) -> str: ...

    async def concatenate(self, refs: Sequence[str]) -> str: ...

    async def mix_bgm(self, video_ref: str, music_ref: str, volume: float) -> str: ...

    async def burn_captions(self, ref: str, subtitle_ref: str) -> str: ...

    async def reencode(self, ref: str, options: ReencodeOptions) -> str: ...


@runtime_checkable
class SpeechSynthesisService(Protocol):
    async def synthesize_many(
        self, texts: Sequence[str], options: VoiceOptions
    ) -> list[SynthesizedAudio]: ...


@runtime_checkable
class PromptProvider(Protocol):
    def analysis_prompt(self, job: Job) -> str: ...

    def narration_prompt(
        self, job: Job, segments: Sequence[Segment], batch_index: int, total_batches: int
    ) -> str: ...


@dataclass(slots=True, frozen=True)
class Timeouts:
    """Wall-clock limits in seconds for each kind of external call."""

    analysis: float = 1800.0
    narration: float = 600.0
    media: float = 300.0
    speech: float = 180.0

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> Timeouts:
        data = data or {}
        defaults = cls()
        return cls(
            analysis=float(data.get("analysis_seconds", defaults.analysis)),
            narration=float(data.get("narration_seconds", defaults.narration)),
            media=float(data.get("media_seconds", defaults.media)),
            speech=float(data.get("speech_seconds", defaults.speech)),
        )


@dataclass(slots=True)
class Services:
    """Process-wide collaborators, built once at start-up and passed to the engine."""

    video_client: VideoUnderstandingClient
    media: MediaTransformService
    speech: SpeechSynthesisService
    prompts: PromptProvider
    dispatcher: RateLimitedDispatcher = field(default_factory=RateLimitedDispatcher)
    timeouts: Timeouts = field(default_factory=Timeouts)
    work_dir: Path = field(default_factory=lambda: Path("data/tmp"))
    output_dir: Path = field(default_factory=lambda: Path("data/output"))


class AbortSignal:
    """Cooperative cancellation flag checked before each external call."""

    def __init__(self) -> None:
        self._reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def abort(self, reason: str = "job aborted") -> None:
        if self._reason is None:
            self._reason = reason

    def raise_if_aborted(self) -> None:
        if self._reason is not None:
            raise JobAbortedError(self._reason)
