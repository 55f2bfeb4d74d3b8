"""End-to-end tests for the execution engine with stub collaborators."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import StubMedia, StubSpeech, StubVideoClient, raw_segments, stored_segments
from reelsmith.exceptions import InvalidTransitionError, JobAlreadyRunningError, JobNotFoundError
from reelsmith.workflow.definitions import StageDefinition, StepDefinition, WorkflowDefinition
from reelsmith.workflow.engine import ExecutionEngine
from reelsmith.workflow.models import JobConfig, JobStatus, StepKind, StepStatus, utcnow
from reelsmith.workflow.payloads import ExportOutput
from reelsmith.workflow.retry import RetryPolicy
from reelsmith.workflow.services import Timeouts
from reelsmith.workflow.steps.base import WorkflowStep


class BlockingVideoClient(StubVideoClient):
    """Holds the analysis call open until the test releases it."""

    def __init__(self, segments) -> None:
        super().__init__(segments)
        self.release: asyncio.Event | None = None

    async def analyze_video(self, uris, prompt, platform):
        assert self.release is not None
        await self.release.wait()
        return await super().analyze_video(uris, prompt, platform)


def _completed_steps(history, job_id: str) -> list[str]:
    return [
        record.step_id
        for record in history.find_by_job(job_id)
        if record.segment_id is None and record.status is StepStatus.COMPLETED
    ]


def test_full_run_completes_and_records_every_step(database, make_job, make_services, jobs, checkpoints, history) -> None:
    make_job()
    media = StubMedia(durations={"https://videos.example.com/source.mp4": 120.0})
    engine = ExecutionEngine(database, make_services(media=media))

    status = asyncio.run(engine.execute("job-1"))

    assert status is JobStatus.COMPLETED
    job = jobs.get_job("job-1")
    assert job.status is JobStatus.COMPLETED
    assert job.heartbeat_at is not None
    assert _completed_steps(history, "job-1") == [
        "fetch_metadata",
        "analyze_video",
        "validate_segments",
        "batch_generate_narrations",
        "split_segments",
        "process_segments_concurrent",
        "concatenate",
        "add_bgm",
        "export",
    ]
    state = checkpoints.require_state("job-1")
    assert state.current_stage == "compose"
    assert state.total_segments == 3
    assert state.processed_segments == 3
    assert state.final_storage_uri == "store://renders/final.mp4"
    assert media.calls_to("concatenate") == [
        (["clip-0-5+cut+speed+merge", "clip-5-10+cut+speed+merge", "clip-10-15+cut+speed+merge"],)
    ]
    assert engine.running_count == 0


def test_background_music_is_mixed_before_export(database, make_job, make_services, checkpoints) -> None:
    """A job with a soundtrack exports the mixed render, not the bare concatenation."""
    make_job(config=JobConfig(bgm_url="bed.mp3", bgm_volume=0.25))
    media = StubMedia(durations={"https://videos.example.com/source.mp4": 120.0})

    status = asyncio.run(ExecutionEngine(database, make_services(media=media)).execute("job-1"))

    assert status is JobStatus.COMPLETED
    assert media.calls_to("mix_bgm") == [("store://renders/final.mp4", "bed.mp3", 0.25)]
    assert checkpoints.require_state("job-1").final_storage_uri == "store://renders/final.mp4+bgm"


def test_narration_variants_reach_speech_synthesis(database, make_job, make_services) -> None:
    make_job()
    speech = StubSpeech()
    engine = ExecutionEngine(database, make_services(speech=speech))

    asyncio.run(engine.execute("job-1"))

    assert sorted(speech.calls) == [
        ["segment-1 A", "segment-1 B", "segment-1 C"],
        ["segment-2 A", "segment-2 B", "segment-2 C"],
        ["segment-3 A", "segment-3 B", "segment-3 C"],
    ]


@pytest.mark.parametrize(
    ("concurrency", "expected", "excluded"),
    [
        (1, "process_segments_sequential", "process_segments_concurrent"),
        (4, "process_segments_concurrent", "process_segments_sequential"),
    ],
)
def test_concurrency_selects_one_processing_step(
    database, make_job, make_services, history, concurrency: int, expected: str, excluded: str
) -> None:
    make_job(config=JobConfig(max_concurrent_segments=concurrency))
    engine = ExecutionEngine(database, make_services())

    asyncio.run(engine.execute("job-1"))

    steps = _completed_steps(history, "job-1")
    assert expected in steps
    assert excluded not in steps


def test_passthrough_segments_skip_narration(database, make_job, make_services, jobs) -> None:
    make_job(config=JobConfig(passthrough_segment_count=1))
    speech = StubSpeech()
    client = StubVideoClient(raw_segments(3, passthrough=[1]))
    engine = ExecutionEngine(database, make_services(video_client=client, speech=speech))

    status = asyncio.run(engine.execute("job-1"))

    assert status is JobStatus.COMPLETED
    assert len(speech.calls) == 2
    passthrough = jobs.list_segments("job-1")[1]
    assert passthrough.final_artifact_ref == "clip-5-10+cut+reencode"


def test_resume_processes_only_unfinished_segments(database, make_job, make_services, jobs, checkpoints) -> None:
    make_job()
    jobs.mark_processing("job-1")
    checkpoints.init_state("job-1", total_segments=10)
    segments = stored_segments("job-1", 10)
    jobs.replace_segments("job-1", segments)
    for segment in segments:
        jobs.set_segment_clip(segment.id, f"clip-{segment.source_start:g}-{segment.source_end:g}")
    for segment in segments[:4]:
        jobs.complete_segment(
            segment.id,
            final_artifact_ref=f"final-{segment.ordinal}.mp4",
            selected_audio_ref=None,
            speed_factor=1.0,
        )
    checkpoints.increment_processed_segments("job-1", amount=4)
    checkpoints.update_state("job-1", current_stage="process_segments")

    media = StubMedia()
    speech = StubSpeech()
    client = StubVideoClient(raw_segments(10))
    engine = ExecutionEngine(database, make_services(video_client=client, media=media, speech=speech))

    status = asyncio.run(engine.resume("job-1"))

    assert status is JobStatus.COMPLETED
    assert len(speech.calls) == 6
    assert client.analyze_calls == 0
    assert media.calls_to("trim") == []
    assert checkpoints.require_state("job-1").processed_segments == 10
    expected = [f"final-{index}.mp4" for index in range(4)] + [
        f"clip-{index * 5}-{index * 5 + 5}+cut+speed+merge" for index in range(4, 10)
    ]
    assert media.calls_to("concatenate") == [(expected,)]


def test_resume_without_checkpoint_fails_the_job(database, make_job, make_services, jobs) -> None:
    make_job()
    jobs.mark_processing("job-1")
    engine = ExecutionEngine(database, make_services())

    status = asyncio.run(engine.resume("job-1"))

    assert status is JobStatus.FAILED
    assert "no checkpoint" in jobs.get_job("job-1").error_message


def test_step_failure_marks_job_failed_with_classification(database, make_job, make_services, jobs, history) -> None:
    make_job()
    engine = ExecutionEngine(database, make_services(video_client=StubVideoClient([])))

    status = asyncio.run(engine.execute("job-1"))

    assert status is JobStatus.FAILED
    job = jobs.get_job("job-1")
    assert job.status is JobStatus.FAILED
    assert job.error_category == "input"
    assert job.error_message == "Video analysis returned no segments."
    assert job.error_guidance
    failed = [record.step_id for record in history.find_by_job("job-1") if record.status is StepStatus.FAILED]
    assert failed == ["analyze_video"]
    assert history.find_running("job-1") == []


def test_all_segments_failing_fails_the_job(database, make_job, make_services, jobs) -> None:
    make_job()
    engine = ExecutionEngine(database, make_services(media=StubMedia(fail_tokens={"clip-"})))

    status = asyncio.run(engine.execute("job-1"))

    assert status is JobStatus.FAILED
    assert jobs.get_job("job-1").error_message.startswith("All segments failed to process.")


def test_preconditions_are_raised_to_the_caller(database, make_job, make_services, jobs) -> None:
    make_job()
    engine = ExecutionEngine(database, make_services())

    with pytest.raises(JobNotFoundError):
        asyncio.run(engine.execute("ghost"))
    with pytest.raises(InvalidTransitionError):
        asyncio.run(engine.resume("job-1"))

    asyncio.run(engine.execute("job-1"))
    with pytest.raises(InvalidTransitionError):
        asyncio.run(engine.execute("job-1"))
    assert jobs.get_job("job-1").status is JobStatus.COMPLETED


def test_second_execution_of_a_running_job_is_rejected(database, make_job, make_services) -> None:
    make_job()
    client = BlockingVideoClient(raw_segments(2))
    engine = ExecutionEngine(database, make_services(video_client=client))

    async def scenario() -> JobStatus:
        client.release = asyncio.Event()
        task = asyncio.create_task(engine.execute("job-1"))
        while not engine.is_running("job-1"):
            await asyncio.sleep(0)
        with pytest.raises(JobAlreadyRunningError):
            await engine.execute("job-1")
        assert engine.running_jobs() == ["job-1"]
        client.release.set()
        return await task

    assert asyncio.run(scenario()) is JobStatus.COMPLETED
    assert not engine.is_running("job-1")


def test_abort_stops_the_job_before_the_next_step(database, make_job, make_services, jobs, history) -> None:
    make_job()
    client = BlockingVideoClient(raw_segments(2))
    engine = ExecutionEngine(database, make_services(video_client=client))

    async def scenario() -> JobStatus:
        client.release = asyncio.Event()
        task = asyncio.create_task(engine.execute("job-1"))
        while not engine.is_running("job-1"):
            await asyncio.sleep(0)
        assert engine.abort("job-1", "operator stop")
        client.release.set()
        return await task

    assert asyncio.run(scenario()) is JobStatus.FAILED
    job = jobs.get_job("job-1")
    assert job.error_category == "aborted"
    assert job.error_message == "operator stop"
    assert "validate_segments" not in _completed_steps(history, "job-1")
    assert engine.abort("job-1") is False


def test_zombie_detection_uses_heartbeat_age(database, make_job, make_services, jobs) -> None:
    make_job("job-1")
    make_job("job-2")
    jobs.mark_processing("job-1")
    jobs.mark_processing("job-2")
    jobs.touch_heartbeat("job-1", utcnow() - timedelta(hours=1))
    engine = ExecutionEngine(database, make_services())

    zombies = engine.find_zombie_jobs(timedelta(minutes=30))

    assert [job.id for job in zombies] == ["job-1"]
    assert engine.is_stale("job-1", timedelta(minutes=30))
    assert not engine.is_stale("job-2", timedelta(minutes=30))
    assert engine.last_heartbeat("ghost") is None


class HangingMedia(StubMedia):
    async def get_metadata(self, ref: str):
        await asyncio.sleep(10)
        raise AssertionError("unreachable")


def test_step_timeout_fails_the_job_as_retryable(database, make_job, make_services, jobs) -> None:
    """A bare asyncio timeout carries no message but is still reported as retryable."""
    make_job()
    services = make_services(media=HangingMedia())
    services.timeouts = Timeouts(media=0.05)
    workflow = WorkflowDefinition(
        name="metadata-only",
        stages=(
            StageDefinition(
                id="analysis",
                steps=(StepDefinition(kind=StepKind.FETCH_METADATA, retry=RetryPolicy(max_attempts=1)),),
            ),
        ),
    )

    status = asyncio.run(ExecutionEngine(database, services).execute("job-1", workflow))

    assert status is JobStatus.FAILED
    job = jobs.get_job("job-1")
    assert job.error_category == "retryable"
    assert job.error_message == "TimeoutError"
    assert "temporary upstream problem" in job.error_guidance


def test_step_rows_carry_input_and_output_snapshots(database, make_job, make_services, history) -> None:
    """Each completed step row holds the input it started from and its encoded payload."""
    make_job()
    asyncio.run(ExecutionEngine(database, make_services()).execute("job-1"))

    rows = {record.step_id: record for record in history.find_by_job("job-1") if record.segment_id is None}

    assert rows["export"].input["artifact_ref"] == "store://renders/final.mp4"
    assert rows["add_bgm"].input["bgm_url"] is None
    assert rows["add_bgm"].output == {
        "kind": "add_bgm",
        "data": {"artifact_ref": "store://renders/final.mp4", "music_ref": None, "volume": None},
    }


class MisreportingStep(WorkflowStep):
    kind = StepKind.FETCH_METADATA

    async def execute(self, context):
        return ExportOutput(local_path="/tmp/out.mp4")


def test_payload_of_the_wrong_kind_fails_the_running_step(database, make_job, make_services, jobs, history) -> None:
    """An output that cannot be encoded for its step marks that attempt failed, not running."""
    make_job()
    workflow = WorkflowDefinition(
        name="metadata-only",
        stages=(StageDefinition(id="analysis", steps=(StepDefinition(kind=StepKind.FETCH_METADATA),)),),
    )
    engine = ExecutionEngine(database, make_services(), step_factory=MisreportingStep)

    status = asyncio.run(engine.execute("job-1", workflow))

    assert status is JobStatus.FAILED
    (record,) = history.find_by_job("job-1")
    assert record.status is StepStatus.FAILED
    assert "expected MetadataOutput" in record.error_message
    assert record.input == {"job_id": "job-1", "step": "fetch_metadata"}
    assert jobs.get_job("job-1").error_category == "input"
