"""Global pytest fixtures and stub collaborators for Reelsmith."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

import pytest

from reelsmith.storage import CheckpointStore, JobRepository, SQLiteDatabase, StepHistoryLedger
from reelsmith.workflow.models import Job, JobConfig, Platform, Segment, VideoInput, segment_key
from reelsmith.workflow.payloads import TokenUsage
from reelsmith.workflow.rate_limit import PlatformProfile, RateLimitedDispatcher
from reelsmith.workflow.services import (
    AbortSignal,
    AnalysisResult,
    MediaMetadata,
    MergeOptions,
    NarrationBatchResult,
    NarrationVariant,
    ReencodeOptions,
    Services,
    SynthesizedAudio,
    VoiceOptions,
)
from reelsmith.workflow.steps.base import StepContext

SOURCE_URI = "https://videos.example.com/source.mp4"


class MediaFailure(RuntimeError):
    """Non-retryable failure raised by :class:`StubMedia`."""


class StubPrompts:
    def analysis_prompt(self, job: Job) -> str:
        return f"analyse {job.id}"

    def narration_prompt(
        self, job: Job, segments: Sequence[Segment], batch_index: int, total_batches: int
    ) -> str:
        return ",".join(segment.external_id for segment in segments)


class StubVideoClient:
    """Returns canned analysis segments; narration variants echo the requested ids."""

    def __init__(self, segments: list[dict[str, Any]], *, short_batches: Iterable[int] = ()) -> None:
        self.segments = segments
        self.short_batches = set(short_batches)
        self.analyze_calls = 0
        self.narration_calls = 0

    async def analyze_video(self, uris: Sequence[str], prompt: str, platform: Platform) -> AnalysisResult:
        self.analyze_calls += 1
        return AnalysisResult(
            segments=[dict(item) for item in self.segments],
            raw_response_text="analysis response",
            token_usage=TokenUsage(prompt_tokens=100, completion_tokens=50, total_tokens=150),
        )

    async def batch_optimize_narration(
        self,
        analysis_prompt: str,
        analysis_response_text: str,
        follow_up_prompt: str,
        video_refs: Sequence[str],
        platform: Platform,
    ) -> NarrationBatchResult:
        index = self.narration_calls
        self.narration_calls += 1
        ids = follow_up_prompt.split(",")
        if index in self.short_batches:
            ids = ids[:-1]
        return NarrationBatchResult(
            segments=[
                NarrationVariant(segment_id=item, narration_a=f"{item} A", narration_b=f"{item} B", narration_c=f"{item} C")
                for item in ids
            ],
            token_usage=TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        )


class StubMedia:
    """Derives new refs from old ones and records every call."""

    def __init__(
        self,
        *,
        durations: dict[str, float] | None = None,
        default_duration: float = 6.0,
        fail_tokens: Iterable[str] = (),
    ) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.durations = dict(durations or {})
        self.default_duration = default_duration
        self.fail_tokens = set(fail_tokens)

    def _record(self, operation: str, ref: str, *args: Any) -> None:
        self.calls.append((operation, (ref, *args)))
        for token in self.fail_tokens:
            if token in ref:
                raise MediaFailure(f"corrupt clip {ref}")

    def calls_to(self, operation: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == operation]

    async def get_metadata(self, ref: str) -> MediaMetadata:
        self.calls.append(("get_metadata", (ref,)))
        return MediaMetadata(duration_seconds=self.durations.get(ref, self.default_duration))

    async def trim(self, ref: str, start: float, end: float) -> str:
        self._record("trim", ref, start, end)
        if ref.startswith("clip-"):
            return f"{ref}+pretrim"
        return f"clip-{start:g}-{end:g}"

    async def trim_cut_boundaries(self, ref: str) -> str:
        self._record("trim_cut_boundaries", ref)
        return f"{ref}+cut"

    async def adjust_speed(self, ref: str, factor: float, *, drop_audio: bool = True) -> str:
        self._record("adjust_speed", ref, factor, drop_audio)
        return f"{ref}+speed"

    async def loop(self, ref: str, count: int, target_duration: float) -> str:
        self._record("loop", ref, count, target_duration)
        return f"{ref}+loop"

    async def merge(self, video_ref: str, audio_ref: str, options: MergeOptions) -> str:
        self._record("merge", video_ref, audio_ref, options)
        return f"{video_ref}+merge"

    async def concatenate(self, refs: Sequence[str]) -> str:
        self.calls.append(("concatenate", (list(refs),)))
        return "store://renders/final.mp4"

    async def mix_bgm(self, video_ref: str, music_ref: str, volume: float) -> str:
        self._record("mix_bgm", video_ref, music_ref, volume)
        return f"{video_ref}+bgm"

    async def burn_captions(self, ref: str, subtitle_ref: str) -> str:
        self._record("burn_captions", ref, subtitle_ref)
        return f"{ref}+captions"

    async def reencode(self, ref: str, options: ReencodeOptions) -> str:
        self._record("reencode", ref, options)
        return f"{ref}+reencode"


class StubSpeech:
    def __init__(self, durations: Sequence[float] = (5.5, 6.0, 6.5)) -> None:
        self.durations = tuple(durations)
        self.calls: list[list[str]] = []

    async def synthesize_many(self, texts: Sequence[str], options: VoiceOptions) -> list[SynthesizedAudio]:
        self.calls.append(list(texts))
        return [
            SynthesizedAudio(audio_ref=f"audio-{len(self.calls)}-v{index + 1}.mp3", duration_seconds=duration)
            for index, duration in enumerate(self.durations[: len(texts)])
        ]


FAST_PROFILES = {
    platform.value: PlatformProfile(
        name=platform.value, min_interval=0.0, max_attempts=3, initial_wait=0.0, max_wait=0.0
    )
    for platform in Platform
}


def raw_segments(
    count: int,
    *,
    length: float = 5.0,
    passthrough: Iterable[int] = (),
    source: str = "video-1",
) -> list[dict[str, Any]]:
    """Analysis-style segment dicts laid end to end."""
    keep_audio = set(passthrough)
    return [
        {
            "start": index * length,
            "end": (index + 1) * length,
            "narration": f"line {index + 1}",
            "source": source,
            "use_original_audio": index in keep_audio,
        }
        for index in range(count)
    ]


@pytest.fixture()
def database(tmp_path: Path) -> SQLiteDatabase:
    db = SQLiteDatabase(tmp_path / "reelsmith.sqlite")
    db.run_migrations()
    return db


@pytest.fixture()
def jobs(database: SQLiteDatabase) -> JobRepository:
    return JobRepository(database)


@pytest.fixture()
def checkpoints(database: SQLiteDatabase) -> CheckpointStore:
    return CheckpointStore(database)


@pytest.fixture()
def history(database: SQLiteDatabase) -> StepHistoryLedger:
    return StepHistoryLedger(database)


@pytest.fixture()
def make_job(jobs: JobRepository) -> Callable[..., Job]:
    def _make(
        job_id: str = "job-1",
        *,
        config: JobConfig | None = None,
        inputs: list[VideoInput] | None = None,
    ) -> Job:
        return jobs.create_job(
            job_id,
            inputs or [VideoInput(uri=SOURCE_URI, label="video-1")],
            config or JobConfig(),
        )

    return _make


@pytest.fixture()
def make_services(tmp_path: Path) -> Callable[..., Services]:
    def _make(
        *,
        video_client: StubVideoClient | None = None,
        media: StubMedia | None = None,
        speech: StubSpeech | None = None,
    ) -> Services:
        return Services(
            video_client=video_client or StubVideoClient(raw_segments(3)),
            media=media or StubMedia(durations={SOURCE_URI: 120.0}),
            speech=speech or StubSpeech(),
            prompts=StubPrompts(),
            dispatcher=RateLimitedDispatcher(FAST_PROFILES),
            work_dir=tmp_path / "work",
            output_dir=tmp_path / "output",
        )

    return _make


def stored_segments(job_id: str, count: int) -> list[Segment]:
    """Validated, narrated segments ready for processing."""
    return [
        Segment(
            id=segment_key(job_id, index),
            job_id=job_id,
            ordinal=index,
            source_start=index * 5.0,
            source_end=(index + 1) * 5.0,
            target_duration=5.0,
            narration_text=f"line {index + 1}",
            source_label="video-1",
            narrations=(f"line {index + 1} A", f"line {index + 1} B", f"line {index + 1} C"),
        )
        for index in range(count)
    ]


@pytest.fixture()
def make_context(
    database: SQLiteDatabase,
    jobs: JobRepository,
    checkpoints: CheckpointStore,
    history: StepHistoryLedger,
) -> Callable[..., StepContext]:
    def _make(job: Job, services: Services, *, stage_id: str = "process_segments") -> StepContext:
        checkpoints.init_state(job.id)
        return StepContext(
            job=job,
            services=services,
            database=database,
            jobs=jobs,
            checkpoints=checkpoints,
            history=history,
            abort=AbortSignal(),
            stage_id=stage_id,
        )

    return _make
