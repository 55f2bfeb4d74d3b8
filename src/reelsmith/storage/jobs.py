"""Repository for jobs, their inputs, segments and narration candidates."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta

from ..exceptions import InvalidTransitionError, JobNotFoundError
from ..utils.logging import get_logger
from ..workflow.models import (
    Job,
    JobConfig,
    JobStatus,
    NarrationCandidate,
    Segment,
    SegmentStatus,
    VideoInput,
    utcnow,
)
from .checkpoints import CheckpointStore
from .db import SQLiteDatabase, dump_json, format_timestamp, load_json, parse_timestamp

__all__ = ["ALLOWED_TRANSITIONS", "JobRepository"]

LOGGER = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class JobRepository:
    """CRUD and lifecycle transitions for jobs and their dependent rows."""

    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    # ------------------------------------------------------------------ #
    # Jobs
    # ------------------------------------------------------------------ #
    def create_job(
        self,
        job_id: str,
        inputs: Sequence[VideoInput],
        config: JobConfig | None = None,
    ) -> Job:
        if not inputs:
            raise ValueError("A job needs at least one input video.")
        config = config or JobConfig()
        now = format_timestamp(utcnow())

        def _create(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO jobs (id, status, config, created_at, updated_at)
                VALUES (?, 'pending', ?, ?, ?);
                """,
                (job_id, dump_json(config.to_mapping()), now, now),
            )
            conn.executemany(
                """
                INSERT INTO job_inputs (job_id, ordinal, uri, label, local_path, duration_seconds)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                [
                    (job_id, index, video.uri, video.label, video.local_path, video.duration_seconds)
                    for index, video in enumerate(inputs)
                ],
            )

        self._db.run_in_transaction(_create)
        LOGGER.info("Created job %s with %d input(s)", job_id, len(inputs))
        return self.get_job(job_id)

    def find_job(self, job_id: str) -> Job | None:
        row = self._db.fetch_one("SELECT * FROM jobs WHERE id = ?;", (job_id,))
        if row is None:
            return None
        return self._row_to_job(row)

    def get_job(self, job_id: str) -> Job:
        job = self.find_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} does not exist.")
        return job

    def mark_processing(self, job_id: str) -> None:
        now = format_timestamp(utcnow())
        self._transition(
            job_id,
            JobStatus.PROCESSING,
            "started_at = ?, heartbeat_at = ?",
            (now, now),
        )

    def mark_completed(self, job_id: str) -> None:
        self._transition(
            job_id,
            JobStatus.COMPLETED,
            "completed_at = ?",
            (format_timestamp(utcnow()),),
        )

    def mark_failed(
        self,
        job_id: str,
        message: str,
        *,
        category: str | None = None,
        guidance: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        self._transition(
            job_id,
            JobStatus.FAILED,
            "completed_at = ?, error_message = ?, error_category = ?, error_guidance = ?, "
            "error_retryable = ?",
            (
                format_timestamp(utcnow()),
                message,
                category,
                guidance,
                None if retryable is None else int(retryable),
            ),
        )

    def touch_heartbeat(self, job_id: str, at: datetime | None = None) -> None:
        self._db.execute(
            "UPDATE jobs SET heartbeat_at = ? WHERE id = ?;",
            (format_timestamp(at or utcnow()), job_id),
        )

    def find_stale_jobs(self, window: timedelta, *, now: datetime | None = None) -> list[Job]:
        """Return processing jobs whose heartbeat is older than ``window``."""
        cutoff = format_timestamp((now or utcnow()) - window)
        rows = self._db.fetch_all(
            """
            SELECT * FROM jobs
            WHERE status = 'processing'
              AND COALESCE(heartbeat_at, started_at, updated_at) < ?
            ORDER BY created_at;
            """,
            (cutoff,),
        )
        return [self._row_to_job(row) for row in rows]

    def reset_job(self, job_id: str) -> None:
        """Return a job to ``pending``, clearing checkpoint, history, segments and error fields."""
        self.get_job(job_id)

        def _reset(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM step_history WHERE job_id = ?;", (job_id,))
            CheckpointStore(self._db).delete_state(job_id, connection=conn)
            conn.execute("DELETE FROM segments WHERE job_id = ?;", (job_id,))
            conn.execute(
                """
                UPDATE jobs
                SET status = 'pending', started_at = NULL, completed_at = NULL,
                    heartbeat_at = NULL, error_message = NULL, error_category = NULL,
                    error_guidance = NULL, error_retryable = NULL, updated_at = ?
                WHERE id = ?;
                """,
                (format_timestamp(utcnow()), job_id),
            )

        self._db.run_in_transaction(_reset)
        LOGGER.info("Job %s reset to pending", job_id)

    def delete_job(self, job_id: str) -> None:
        self._db.run_in_transaction(
            lambda conn: conn.execute("DELETE FROM jobs WHERE id = ?;", (job_id,))
        )

    def update_input_metadata(
        self,
        job_id: str,
        label: str,
        *,
        local_path: str | None,
        duration_seconds: float | None,
    ) -> None:
        self._db.execute(
            """
            UPDATE job_inputs SET local_path = ?, duration_seconds = ?
            WHERE job_id = ? AND label = ?;
            """,
            (local_path, duration_seconds, job_id, label),
        )

    # ------------------------------------------------------------------ #
    # Segments
    # ------------------------------------------------------------------ #
    def replace_segments(
        self,
        job_id: str,
        segments: Iterable[Segment],
        *,
        connection: sqlite3.Connection | None = None,
    ) -> int:
        """Delete every segment of the job and insert ``segments`` in their place."""
        rows = list(segments)
        now = format_timestamp(utcnow())

        def _replace(conn: sqlite3.Connection) -> int:
            conn.execute("DELETE FROM segments WHERE job_id = ?;", (job_id,))
            conn.executemany(
                """
                INSERT INTO segments (
                    id, job_id, ordinal, source_label, source_start, source_end,
                    target_duration, narration_text, narration_v1, narration_v2, narration_v3,
                    passthrough, status, skipped, skip_reason, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                [
                    (
                        segment.id,
                        job_id,
                        segment.ordinal,
                        segment.source_label,
                        segment.source_start,
                        segment.source_end,
                        segment.target_duration,
                        segment.narration_text,
                        *segment.narrations,
                        int(segment.passthrough),
                        segment.status.value,
                        int(segment.skipped),
                        segment.skip_reason,
                        now,
                    )
                    for segment in rows
                ],
            )
            return len(rows)

        return self._db.run_in_transaction(_replace, connection=connection)

    def list_segments(self, job_id: str) -> list[Segment]:
        rows = self._db.fetch_all(
            "SELECT * FROM segments WHERE job_id = ? ORDER BY ordinal;", (job_id,)
        )
        return [_row_to_segment(row) for row in rows]

    def get_segment(self, segment_id: str) -> Segment | None:
        row = self._db.fetch_one("SELECT * FROM segments WHERE id = ?;", (segment_id,))
        return _row_to_segment(row) if row is not None else None

    def update_segment_narrations(
        self,
        narrations: Mapping[str, tuple[str, str, str]],
        *,
        connection: sqlite3.Connection | None = None,
    ) -> None:
        """Store the three narration versions for each segment id."""
        now = format_timestamp(utcnow())
        self._db.run_in_transaction(
            lambda conn: conn.executemany(
                """
                UPDATE segments SET narration_v1 = ?, narration_v2 = ?, narration_v3 = ?,
                    updated_at = ?
                WHERE id = ?;
                """,
                [(*versions, now, segment_id) for segment_id, versions in narrations.items()],
            ),
            connection=connection,
        )

    def set_segment_clip(self, segment_id: str, clip_ref: str) -> None:
        self._db.execute(
            "UPDATE segments SET clip_ref = ?, updated_at = ? WHERE id = ?;",
            (clip_ref, format_timestamp(utcnow()), segment_id),
        )

    def complete_segment(
        self,
        segment_id: str,
        *,
        final_artifact_ref: str,
        selected_audio_ref: str | None,
        speed_factor: float | None,
        candidates: Sequence[NarrationCandidate] = (),
        connection: sqlite3.Connection | None = None,
    ) -> None:
        """Mark the segment completed and replace its narration candidates."""

        def _complete(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                UPDATE segments
                SET status = 'completed', final_artifact_ref = ?, selected_audio_ref = ?,
                    speed_factor = ?, failure_reason = NULL, updated_at = ?
                WHERE id = ?;
                """,
                (
                    final_artifact_ref,
                    selected_audio_ref,
                    speed_factor,
                    format_timestamp(utcnow()),
                    segment_id,
                ),
            )
            conn.execute("DELETE FROM narration_candidates WHERE segment_id = ?;", (segment_id,))
            conn.executemany(
                """
                INSERT INTO narration_candidates (
                    segment_id, version, text, audio_ref, duration_seconds, speed_score, selected
                )
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                [
                    (
                        segment_id,
                        candidate.version,
                        candidate.text,
                        candidate.audio_ref,
                        candidate.duration_seconds,
                        candidate.speed_score,
                        int(candidate.selected),
                    )
                    for candidate in candidates
                ],
            )

        self._db.run_in_transaction(_complete, connection=connection)

    def fail_segment(self, segment_id: str, reason: str) -> None:
        self._db.execute(
            """
            UPDATE segments SET status = 'failed', failure_reason = ?, updated_at = ?
            WHERE id = ?;
            """,
            (reason, format_timestamp(utcnow()), segment_id),
        )

    def list_candidates(self, segment_id: str) -> list[NarrationCandidate]:
        rows = self._db.fetch_all(
            "SELECT * FROM narration_candidates WHERE segment_id = ? ORDER BY version;",
            (segment_id,),
        )
        return [
            NarrationCandidate(
                version=int(row["version"]),
                text=row["text"],
                audio_ref=row["audio_ref"],
                duration_seconds=row["duration_seconds"],
                speed_score=row["speed_score"],
                selected=bool(row["selected"]),
            )
            for row in rows
        ]

    def segment_summary(self, job_id: str) -> dict[str, int]:
        """Count segments per status, plus skipped ones."""
        rows = self._db.fetch_all(
            """
            SELECT CASE WHEN skipped = 1 THEN 'skipped' ELSE status END AS bucket,
                   COUNT(*) AS total
            FROM segments WHERE job_id = ?
            GROUP BY bucket;
            """,
            (job_id,),
        )
        return {row["bucket"]: int(row["total"]) for row in rows}

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _transition(
        self,
        job_id: str,
        target: JobStatus,
        assignments: str,
        parameters: tuple[object, ...],
    ) -> None:
        def _apply(conn: sqlite3.Connection) -> None:
            row = conn.execute("SELECT status FROM jobs WHERE id = ?;", (job_id,)).fetchone()
            if row is None:
                raise JobNotFoundError(f"Job {job_id} does not exist.")
            current = JobStatus(row["status"])
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Job {job_id} cannot move from {current.value} to {target.value}."
                )
            conn.execute(
                f"UPDATE jobs SET status = ?, updated_at = ?, {assignments} WHERE id = ?;",
                (target.value, format_timestamp(utcnow()), *parameters, job_id),
            )

        self._db.run_in_transaction(_apply)
        LOGGER.info("Job %s -> %s", job_id, target.value)

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        input_rows = self._db.fetch_all(
            "SELECT * FROM job_inputs WHERE job_id = ? ORDER BY ordinal;", (row["id"],)
        )
        return Job(
            id=row["id"],
            status=JobStatus(row["status"]),
            inputs=[
                VideoInput(
                    uri=item["uri"],
                    label=item["label"],
                    local_path=item["local_path"],
                    duration_seconds=item["duration_seconds"],
                )
                for item in input_rows
            ],
            config=JobConfig.from_mapping(load_json(row["config"])),
            created_at=parse_timestamp(row["created_at"]),  # type: ignore[arg-type]
            updated_at=parse_timestamp(row["updated_at"]),  # type: ignore[arg-type]
            started_at=parse_timestamp(row["started_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
            heartbeat_at=parse_timestamp(row["heartbeat_at"]),
            error_message=row["error_message"],
            error_category=row["error_category"],
            error_guidance=row["error_guidance"],
        )


def _row_to_segment(row: sqlite3.Row) -> Segment:
    return Segment(
        id=row["id"],
        job_id=row["job_id"],
        ordinal=int(row["ordinal"]),
        source_start=float(row["source_start"]),
        source_end=float(row["source_end"]),
        target_duration=float(row["target_duration"]),
        narration_text=row["narration_text"],
        source_label=row["source_label"],
        narrations=(row["narration_v1"], row["narration_v2"], row["narration_v3"]),
        passthrough=bool(row["passthrough"]),
        status=SegmentStatus(row["status"]),
        skipped=bool(row["skipped"]),
        skip_reason=row["skip_reason"],
        clip_ref=row["clip_ref"],
        final_artifact_ref=row["final_artifact_ref"],
        selected_audio_ref=row["selected_audio_ref"],
        speed_factor=row["speed_factor"],
        failure_reason=row["failure_reason"],
    )

