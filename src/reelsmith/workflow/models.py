"""Domain models shared by the storage layer and the workflow engine."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..exceptions import ConfigurationError

__all__ = [
    "Checkpoint",
    "Job",
    "JobConfig",
    "JobStatus",
    "NarrationCandidate",
    "Platform",
    "Segment",
    "SegmentStatus",
    "StepHistoryRecord",
    "StepKind",
    "StepStatus",
    "VideoInput",
    "external_segment_id",
    "segment_key",
    "utcnow",
]

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 8
DEFAULT_CONCURRENCY = 3
NARRATION_VERSIONS = 3
DEFAULT_BGM_VOLUME = 0.15


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Lifecycle states for a job. Transitions only move forward."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SegmentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Platform(str, Enum):
    """Hosting tier of the video-understanding AI."""

    AI_STUDIO = "ai-studio"
    VERTEX = "vertex"


class StepKind(str, Enum):
    """Closed set of executable step kinds known to the step registry."""

    FETCH_METADATA = "fetch_metadata"
    ANALYZE_VIDEO = "analyze_video"
    VALIDATE_SEGMENTS = "validate_segments"
    GENERATE_NARRATIONS = "batch_generate_narrations"
    SPLIT_SEGMENTS = "split_segments"
    PROCESS_SEGMENTS_CONCURRENT = "process_segments_concurrent"
    PROCESS_SEGMENTS_SEQUENTIAL = "process_segments_sequential"
    CONCATENATE = "concatenate"
    ADD_BGM = "add_bgm"
    EXPORT = "export"


def segment_key(job_id: str, ordinal: int) -> str:
    """Composite segment key; ``ordinal`` is zero-based, the key is one-based."""
    return f"{job_id}-segment-{ordinal + 1}"


def external_segment_id(ordinal: int) -> str:
    return f"segment-{ordinal + 1}"


@dataclass(slots=True, frozen=True)
class VideoInput:
    """A source video attached to a job."""

    uri: str
    label: str
    local_path: str | None = None
    duration_seconds: float | None = None


@dataclass(slots=True)
class JobConfig:
    """Per-job settings. Concurrency is clamped to the supported 1-8 range."""

    max_concurrent_segments: int = DEFAULT_CONCURRENCY
    target_segment_count: int | None = None
    passthrough_segment_count: int = 0
    language: str = "en"
    captions_enabled: bool = False
    platform: Platform = Platform.AI_STUDIO
    narration_batch_size: int = 10
    speech_rates: tuple[float, float, float] = (0.9, 1.0, 1.1)
    voice: str | None = None
    dub_volume: float = 1.0
    bgm_url: str | None = None
    bgm_volume: float = DEFAULT_BGM_VOLUME

    def __post_init__(self) -> None:
        self.max_concurrent_segments = max(
            MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(self.max_concurrent_segments))
        )
        if not isinstance(self.platform, Platform):
            try:
                self.platform = Platform(self.platform)
            except ValueError as exc:
                raise ConfigurationError(f"Unknown platform '{self.platform}'.") from exc
        if self.narration_batch_size < 1:
            raise ConfigurationError("narration_batch_size must be at least 1.")
        rates = tuple(float(rate) for rate in self.speech_rates)
        if len(rates) != NARRATION_VERSIONS or any(rate <= 0 for rate in rates):
            raise ConfigurationError("speech_rates must contain three positive values.")
        if len(set(rates)) != len(rates):
            raise ConfigurationError("speech_rates must be three distinct values.")
        self.speech_rates = rates  # type: ignore[assignment]
        if self.target_segment_count is not None and self.target_segment_count < 1:
            raise ConfigurationError("target_segment_count must be positive when set.")
        if self.passthrough_segment_count < 0:
            raise ConfigurationError("passthrough_segment_count cannot be negative.")
        if not 0.0 <= self.bgm_volume <= 1.0:
            raise ConfigurationError("bgm_volume must be between 0 and 1.")
        self.bgm_url = (self.bgm_url or "").strip() or None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> JobConfig:
        data = dict(data or {})
        known = {name for name in cls.__dataclass_fields__}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown job configuration keys: {', '.join(unknown)}")
        if "speech_rates" in data:
            data["speech_rates"] = tuple(data["speech_rates"])
        return cls(**data)

    def to_mapping(self) -> dict[str, Any]:
        return {
            "max_concurrent_segments": self.max_concurrent_segments,
            "target_segment_count": self.target_segment_count,
            "passthrough_segment_count": self.passthrough_segment_count,
            "language": self.language,
            "captions_enabled": self.captions_enabled,
            "platform": self.platform.value,
            "narration_batch_size": self.narration_batch_size,
            "speech_rates": list(self.speech_rates),
            "voice": self.voice,
            "dub_volume": self.dub_volume,
            "bgm_url": self.bgm_url,
            "bgm_volume": self.bgm_volume,
        }


@dataclass(slots=True)
class Job:
    id: str
    status: JobStatus
    inputs: list[VideoInput]
    config: JobConfig
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    heartbeat_at: datetime | None = None
    error_message: str | None = None
    error_category: str | None = None
    error_guidance: str | None = None

    def input_by_label(self, label: str | None) -> VideoInput:
        """Return the input matching ``label``; single-input jobs ignore the label."""
        if len(self.inputs) == 1 and (label is None or label == self.inputs[0].label):
            return self.inputs[0]
        for video in self.inputs:
            if video.label == label:
                return video
        if label is None and self.inputs:
            return self.inputs[0]
        raise KeyError(label)


@dataclass(slots=True)
class Segment:
    """One re-timed unit of output video."""

    id: str
    job_id: str
    ordinal: int
    source_start: float
    source_end: float
    target_duration: float
    narration_text: str | None = None
    source_label: str | None = None
    narrations: tuple[str | None, str | None, str | None] = (None, None, None)
    passthrough: bool = False
    status: SegmentStatus = SegmentStatus.PENDING
    skipped: bool = False
    skip_reason: str | None = None
    clip_ref: str | None = None
    final_artifact_ref: str | None = None
    selected_audio_ref: str | None = None
    speed_factor: float | None = None
    failure_reason: str | None = None

    @property
    def external_id(self) -> str:
        return external_segment_id(self.ordinal)

    @property
    def is_terminal_success(self) -> bool:
        return self.status is SegmentStatus.COMPLETED and bool(self.final_artifact_ref)


@dataclass(slots=True)
class NarrationCandidate:
    version: int
    text: str
    audio_ref: str | None = None
    duration_seconds: float | None = None
    speed_score: float | None = None
    selected: bool = False


@dataclass(slots=True)
class Checkpoint:
    """Resume point of a job. ``context`` holds encoded step outputs keyed by step kind."""

    job_id: str
    current_stage: str | None
    current_step: str | None
    context: dict[str, Any] = field(default_factory=dict)
    total_segments: int = 0
    processed_segments: int = 0
    final_artifact_ref: str | None = None
    final_public_uri: str | None = None
    final_storage_uri: str | None = None
    final_local_path: str | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class StepHistoryRecord:
    id: int
    job_id: str
    step_id: str
    status: StepStatus
    started_at: datetime
    stage_id: str | None = None
    segment_id: str | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    input: Any = None
    output: Any = None
    error_message: str | None = None
