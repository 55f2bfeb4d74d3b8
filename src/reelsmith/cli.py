"""Command-line entrypoints for Reelsmith."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import typer

from reelsmith.config import build_services, heartbeat_window, job_config_from, load_config
from reelsmith.exceptions import ReelsmithError
from reelsmith.storage import (
    CheckpointStore,
    DatabaseIntegrityError,
    JobRepository,
    SQLiteDatabase,
    StepHistoryLedger,
)
from reelsmith.storage.paths import PathsConfig, build_paths
from reelsmith.utils.logging import configure_logging
from reelsmith.workflow.engine import ExecutionEngine
from reelsmith.workflow.models import JobStatus, VideoInput
from reelsmith.workflow.queue import AdmissionQueue

app = typer.Typer(help="Orchestrate narrated short-video jobs.")

ENV_OPTION = typer.Option("dev", "--env", help="Configuration environment to load (default: dev).")


@dataclass(slots=True)
class Runtime:
    config: Mapping[str, Any]
    paths: PathsConfig
    database: SQLiteDatabase

    @property
    def jobs(self) -> JobRepository:
        return JobRepository(self.database)


def _runtime(env: str) -> Runtime:
    try:
        config = load_config(env)
        configure_logging(config.get("logging"))
        paths = build_paths(config)
    except (ReelsmithError, ValueError) as exc:
        typer.echo(f"Failed to load configuration: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    paths.ensure_directories()
    database = SQLiteDatabase(paths.database)
    database.run_migrations()
    return Runtime(config=config, paths=paths, database=database)


def _fail(message: str, code: int = 1) -> typer.Exit:
    typer.echo(message, err=True)
    return typer.Exit(code=code)


@app.command("init-db")
def init_db(env: str = ENV_OPTION) -> None:
    """Create the database and apply pending migrations."""
    config = load_config(env)
    configure_logging(config.get("logging"))
    paths = build_paths(config)
    paths.ensure_directories()
    database = SQLiteDatabase(paths.database)
    applied = database.run_migrations()
    if applied:
        typer.echo(f"Applied {len(applied)} migration(s): {', '.join(applied)}")
    else:
        typer.echo("Database is up to date.")
    try:
        database.check_integrity()
    except DatabaseIntegrityError as exc:
        raise _fail(str(exc)) from exc


@app.command()
def create(
    job_id: str = typer.Argument(..., help="Identifier for the new job."),
    uris: list[str] = typer.Argument(..., help="Source video paths or URIs."),
    labels: Optional[list[str]] = typer.Option(
        None, "--label", "-l", help="Label per input, in order (default: video-1, video-2, ...)."
    ),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Segments processed at once (1-8)."),
    target_segments: Optional[int] = typer.Option(None, "--target-segments", help="Expected segment count."),
    passthrough: Optional[int] = typer.Option(None, "--passthrough", help="Segments that keep original audio."),
    captions: Optional[bool] = typer.Option(None, "--captions/--no-captions", help="Burn narration captions."),
    platform: Optional[str] = typer.Option(None, "--platform", help="ai-studio or vertex."),
    language: Optional[str] = typer.Option(None, "--language", help="Narration language code."),
    bgm_url: Optional[str] = typer.Option(None, "--bgm-url", help="Background music mixed under the render."),
    bgm_volume: Optional[float] = typer.Option(None, "--bgm-volume", help="Background music volume (0-1)."),
    env: str = ENV_OPTION,
) -> None:
    """Register a pending job."""
    runtime = _runtime(env)
    names = list(labels or [])
    if names and len(names) != len(uris):
        raise _fail("Provide one --label per input or none at all.", code=2)
    inputs = [
        VideoInput(uri=uri, label=names[index] if names else f"video-{index + 1}")
        for index, uri in enumerate(uris)
    ]
    try:
        job_config = job_config_from(
            runtime.config,
            {
                "max_concurrent_segments": concurrency,
                "target_segment_count": target_segments,
                "passthrough_segment_count": passthrough,
                "captions_enabled": captions,
                "platform": platform,
                "language": language,
                "bgm_url": bgm_url,
                "bgm_volume": bgm_volume,
            },
        )
        job = runtime.jobs.create_job(job_id, inputs, job_config)
    except ReelsmithError as exc:
        raise _fail(str(exc), code=2) from exc
    typer.echo(f"Created job {job.id} ({len(job.inputs)} input(s), {job.status.value}).")


def _run_job(runtime: Runtime, job_id: str, *, resume: bool) -> JobStatus:
    services = build_services(runtime.config, runtime.paths)
    engine = ExecutionEngine(runtime.database, services)
    queue = AdmissionQueue(engine)

    async def _drive() -> JobStatus:
        task = queue.enqueue(job_id, resume=resume)
        try:
            return await task
        except asyncio.CancelledError:
            await queue.shutdown("interrupted")
            raise

    return asyncio.run(_drive())


@app.command()
def run(job_id: str = typer.Argument(...), env: str = ENV_OPTION) -> None:
    """Execute a pending job from the first stage."""
    runtime = _runtime(env)
    try:
        status = _run_job(runtime, job_id, resume=False)
    except ReelsmithError as exc:
        raise _fail(str(exc), code=2) from exc
    _report_outcome(runtime, job_id, status)


@app.command()
def resume(job_id: str = typer.Argument(...), env: str = ENV_OPTION) -> None:
    """Continue an interrupted job from its last checkpoint."""
    runtime = _runtime(env)
    try:
        status = _run_job(runtime, job_id, resume=True)
    except ReelsmithError as exc:
        raise _fail(str(exc), code=2) from exc
    _report_outcome(runtime, job_id, status)


def _report_outcome(runtime: Runtime, job_id: str, status: JobStatus) -> None:
    if status is JobStatus.COMPLETED:
        checkpoint = CheckpointStore(runtime.database).get_state(job_id)
        location = None
        if checkpoint is not None:
            location = checkpoint.final_local_path or checkpoint.final_public_uri or checkpoint.final_storage_uri
        typer.echo(f"Job {job_id} completed: {location or 'no export location recorded'}")
        return
    job = runtime.jobs.get_job(job_id)
    message = f"Job {job_id} {status.value}: {job.error_message or 'unknown error'}"
    if job.error_guidance:
        message += f"\n{job.error_guidance}"
    raise _fail(message)


@app.command()
def status(job_id: str = typer.Argument(...), env: str = ENV_OPTION) -> None:
    """Show the lifecycle status and checkpoint of a job."""
    runtime = _runtime(env)
    job = runtime.jobs.find_job(job_id)
    if job is None:
        raise _fail(f"Job {job_id} does not exist.", code=2)
    checkpoint = CheckpointStore(runtime.database).get_state(job_id)

    typer.echo(f"Job {job.id}: {job.status.value}")
    if checkpoint is not None:
        typer.echo(f"  stage: {checkpoint.current_stage or '-'}  step: {checkpoint.current_step or '-'}")
        typer.echo(f"  segments: {checkpoint.processed_segments}/{checkpoint.total_segments}")
    if job.heartbeat_at is not None:
        typer.echo(f"  heartbeat: {job.heartbeat_at.isoformat()}")
    if job.error_message:
        typer.echo(f"  error ({job.error_category or 'unknown'}): {job.error_message}")


@app.command()
def report(job_id: str = typer.Argument(...), env: str = ENV_OPTION) -> None:
    """Per-stage durations, failed step count and segment summary."""
    runtime = _runtime(env)
    if runtime.jobs.find_job(job_id) is None:
        raise _fail(f"Job {job_id} does not exist.", code=2)
    history = StepHistoryLedger(runtime.database)

    typer.echo(f"Job {job_id}")
    typer.echo("Stage durations:")
    durations = history.duration_by_stage(job_id)
    for stage_id, total_ms in durations.items():
        typer.echo(f"  {stage_id:<22} {total_ms / 1000:8.1f}s")
    if not durations:
        typer.echo("  (no completed steps)")
    typer.echo(f"Failed step attempts: {history.failed_step_count(job_id)}")
    summary = runtime.jobs.segment_summary(job_id)
    typer.echo(
        "Segments: "
        + (", ".join(f"{bucket}={count}" for bucket, count in sorted(summary.items())) or "none")
    )


@app.command()
def reset(
    job_id: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
    env: str = ENV_OPTION,
) -> None:
    """Clear checkpoint, history and segments and return the job to pending."""
    runtime = _runtime(env)
    if not yes:
        typer.confirm(f"Reset job {job_id}? All progress will be discarded.", abort=True)
    try:
        runtime.jobs.reset_job(job_id)
    except ReelsmithError as exc:
        raise _fail(str(exc), code=2) from exc
    typer.echo(f"Job {job_id} reset to pending.")


@app.command()
def delete(
    job_id: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
    env: str = ENV_OPTION,
) -> None:
    """Remove a job together with its segments, checkpoint and history."""
    runtime = _runtime(env)
    try:
        job = runtime.jobs.get_job(job_id)
    except ReelsmithError as exc:
        raise _fail(str(exc), code=2) from exc
    if job.status is JobStatus.PROCESSING:
        raise _fail(f"Job {job_id} is processing; abort or wait for it before deleting.", code=2)
    if not yes:
        typer.confirm(f"Delete job {job_id}? This cannot be undone.", abort=True)
    runtime.jobs.delete_job(job_id)
    typer.echo(f"Job {job_id} deleted.")


@app.command()
def zombies(
    minutes: Optional[float] = typer.Option(
        None, "--minutes", help="Heartbeat age that marks a job stale (default from config)."
    ),
    env: str = ENV_OPTION,
) -> None:
    """List processing jobs whose heartbeat went stale."""
    runtime = _runtime(env)
    window = timedelta(minutes=minutes) if minutes is not None else heartbeat_window(runtime.config)
    stale = runtime.jobs.find_stale_jobs(window)
    if not stale:
        typer.echo("No stale jobs.")
        return
    for job in stale:
        heartbeat = job.heartbeat_at.isoformat() if job.heartbeat_at else "never"
        typer.echo(f"{job.id}  last heartbeat {heartbeat}  (resume with: reelsmith resume {job.id})")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
