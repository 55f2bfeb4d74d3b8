"""Typed step outputs stored in the checkpoint context and the step history.

Each step kind produces exactly one payload type. Payloads are encoded as
``{"kind": <step kind>, "data": {...}}`` and decoded back through the same table, so
a checkpoint never carries an untyped blob.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, TypeAlias

from ..exceptions import ValidationError
from .models import StepKind

__all__ = [
    "AnalysisOutput",
    "BackgroundMusicOutput",
    "ConcatenateOutput",
    "ExportOutput",
    "FailedSegment",
    "MetadataOutput",
    "NarrationOutput",
    "ProcessSegmentsOutput",
    "ProcessedSegment",
    "SegmentClip",
    "SkippedSegment",
    "SplitOutput",
    "StepPayload",
    "TokenUsage",
    "ValidationOutput",
    "VideoMetadata",
    "decode_payload",
    "encode_payload",
    "payload_type_for",
]


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: TokenUsage | None) -> TokenUsage:
        if other is None:
            return self
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> TokenUsage:
        data = data or {}
        return cls(
            prompt_tokens=int(data.get("prompt_tokens", 0)),
            completion_tokens=int(data.get("completion_tokens", 0)),
            total_tokens=int(data.get("total_tokens", 0)),
        )


@dataclass(slots=True, frozen=True)
class VideoMetadata:
    label: str
    uri: str
    local_path: str
    duration_seconds: float


@dataclass(slots=True)
class MetadataOutput:
    videos: list[VideoMetadata]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MetadataOutput:
        return cls(videos=[VideoMetadata(**item) for item in data["videos"]])


@dataclass(slots=True)
class AnalysisOutput:
    prompt: str
    response_text: str
    segments: list[dict[str, Any]]
    token_usage: TokenUsage = field(default_factory=TokenUsage)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AnalysisOutput:
        return cls(
            prompt=data["prompt"],
            response_text=data["response_text"],
            segments=[dict(item) for item in data["segments"]],
            token_usage=TokenUsage.from_dict(data.get("token_usage")),
        )


@dataclass(slots=True, frozen=True)
class SkippedSegment:
    ordinal: int
    reason: str


@dataclass(slots=True)
class ValidationOutput:
    total: int
    usable: int
    skipped: list[SkippedSegment] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ValidationOutput:
        return cls(
            total=int(data["total"]),
            usable=int(data["usable"]),
            skipped=[SkippedSegment(**item) for item in data.get("skipped", [])],
            warnings=list(data.get("warnings", [])),
        )


@dataclass(slots=True)
class NarrationOutput:
    batches: int
    narrated: int
    fallback_batches: list[int] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NarrationOutput:
        return cls(
            batches=int(data["batches"]),
            narrated=int(data["narrated"]),
            fallback_batches=[int(item) for item in data.get("fallback_batches", [])],
            token_usage=TokenUsage.from_dict(data.get("token_usage")),
        )


@dataclass(slots=True, frozen=True)
class SegmentClip:
    segment_id: str
    clip_ref: str


@dataclass(slots=True)
class SplitOutput:
    clips: list[SegmentClip]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SplitOutput:
        return cls(clips=[SegmentClip(**item) for item in data["clips"]])


@dataclass(slots=True, frozen=True)
class ProcessedSegment:
    segment_id: str
    ordinal: int
    final_artifact_ref: str
    speed_factor: float | None = None


@dataclass(slots=True, frozen=True)
class FailedSegment:
    segment_id: str
    ordinal: int
    reason: str


@dataclass(slots=True)
class ProcessSegmentsOutput:
    processed: list[ProcessedSegment]
    failed: list[FailedSegment] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProcessSegmentsOutput:
        return cls(
            processed=[ProcessedSegment(**item) for item in data["processed"]],
            failed=[FailedSegment(**item) for item in data.get("failed", [])],
        )


@dataclass(slots=True)
class ConcatenateOutput:
    artifact_ref: str
    segment_ids: list[str]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ConcatenateOutput:
        return cls(artifact_ref=data["artifact_ref"], segment_ids=list(data["segment_ids"]))


@dataclass(slots=True)
class BackgroundMusicOutput:
    """Render after mixing; ``music_ref`` is ``None`` when the job has no soundtrack."""

    artifact_ref: str
    music_ref: str | None = None
    volume: float | None = None

    @property
    def mixed(self) -> bool:
        return self.music_ref is not None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BackgroundMusicOutput:
        return cls(
            artifact_ref=data["artifact_ref"],
            music_ref=data.get("music_ref"),
            volume=data.get("volume"),
        )


@dataclass(slots=True)
class ExportOutput:
    local_path: str | None
    storage_uri: str | None = None
    public_uri: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExportOutput:
        return cls(
            local_path=data.get("local_path"),
            storage_uri=data.get("storage_uri"),
            public_uri=data.get("public_uri"),
        )


StepPayload: TypeAlias = (
    MetadataOutput
    | AnalysisOutput
    | ValidationOutput
    | NarrationOutput
    | SplitOutput
    | ProcessSegmentsOutput
    | ConcatenateOutput
    | BackgroundMusicOutput
    | ExportOutput
)

_PAYLOAD_TYPES: dict[StepKind, type[Any]] = {
    StepKind.FETCH_METADATA: MetadataOutput,
    StepKind.ANALYZE_VIDEO: AnalysisOutput,
    StepKind.VALIDATE_SEGMENTS: ValidationOutput,
    StepKind.GENERATE_NARRATIONS: NarrationOutput,
    StepKind.SPLIT_SEGMENTS: SplitOutput,
    StepKind.PROCESS_SEGMENTS_CONCURRENT: ProcessSegmentsOutput,
    StepKind.PROCESS_SEGMENTS_SEQUENTIAL: ProcessSegmentsOutput,
    StepKind.CONCATENATE: ConcatenateOutput,
    StepKind.ADD_BGM: BackgroundMusicOutput,
    StepKind.EXPORT: ExportOutput,
}


def payload_type_for(kind: StepKind) -> type[Any]:
    return _PAYLOAD_TYPES[kind]


def encode_payload(kind: StepKind, payload: StepPayload) -> dict[str, Any]:
    """Encode ``payload`` as a tagged mapping, checking it matches ``kind``."""
    expected = _PAYLOAD_TYPES[kind]
    if not isinstance(payload, expected):
        raise ValidationError(
            f"Step '{kind.value}' produced {type(payload).__name__}, expected {expected.__name__}."
        )
    return {"kind": kind.value, "data": asdict(payload)}


def decode_payload(encoded: Mapping[str, Any]) -> tuple[StepKind, StepPayload]:
    """Decode a tagged mapping produced by :func:`encode_payload`."""
    try:
        kind = StepKind(encoded["kind"])
        return kind, _PAYLOAD_TYPES[kind].from_dict(encoded["data"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"Malformed step payload: {encoded!r}") from exc
