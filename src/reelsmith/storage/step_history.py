"""Step history ledger: one row per step attempt, plus per-segment sub-step rows."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any

from ..exceptions import ValidationError
from ..utils.logging import get_logger
from ..workflow.models import StepHistoryRecord, StepStatus, utcnow
from .db import SQLiteDatabase, dump_json, format_timestamp, load_json, parse_timestamp

__all__ = ["RESTARTED_MESSAGE", "StepHistoryLedger"]

LOGGER = get_logger(__name__)

RESTARTED_MESSAGE = "step was restarted"
START_MAX_RETRIES = 3


class StepHistoryLedger:
    """Audit trail of step executions stored in ``step_history``.

    A (job, step) pair never has more than one ``running`` row: starting a new attempt
    first fails any stale running row with :data:`RESTARTED_MESSAGE`.
    """

    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    # ------------------------------------------------------------------ #
    # Step lifecycle
    # ------------------------------------------------------------------ #
    def mark_step_started(
        self,
        job_id: str,
        step_id: str,
        *,
        stage_id: str | None = None,
        input_snapshot: Any = None,
    ) -> int:
        """Record a new running attempt and return its row id."""
        if not job_id or not step_id:
            raise ValidationError("mark_step_started requires a job id and a step id.")

        started_at = utcnow()

        def _start(conn: sqlite3.Connection) -> int:
            restarted = _fail_running(conn, job_id, step_id, RESTARTED_MESSAGE, started_at)
            if restarted:
                LOGGER.warning(
                    "Job %s step %s had %d stale running record(s); marked failed.",
                    job_id,
                    step_id,
                    restarted,
                )
            conn.execute(
                "UPDATE checkpoints SET current_step = ?, updated_at = ? WHERE job_id = ?;",
                (step_id, format_timestamp(started_at), job_id),
            )
            cursor = conn.execute(
                """
                INSERT INTO step_history (job_id, stage_id, step_id, status, started_at, input)
                VALUES (?, ?, ?, 'running', ?, ?);
                """,
                (job_id, stage_id, step_id, format_timestamp(started_at), dump_json(input_snapshot)),
            )
            return int(cursor.lastrowid)

        return self._db.run_in_transaction(_start, max_retries=START_MAX_RETRIES)

    def save_input(self, job_id: str, step_id: str, snapshot: Any) -> None:
        self._update_running(job_id, step_id, "input = ?", (dump_json(snapshot),))

    def save_output(self, job_id: str, step_id: str, snapshot: Any) -> None:
        self._update_running(job_id, step_id, "output = ?", (dump_json(snapshot),))

    def mark_step_completed(self, job_id: str, step_id: str, *, output: Any = None) -> None:
        finished_at = utcnow()

        def _complete(conn: sqlite3.Connection) -> None:
            row = _latest_running(conn, job_id, step_id)
            if row is None:
                LOGGER.warning("Job %s step %s has no running record to complete.", job_id, step_id)
                return
            conn.execute(
                """
                UPDATE step_history
                SET status = 'completed', completed_at = ?, duration_ms = ?,
                    output = COALESCE(?, output)
                WHERE id = ?;
                """,
                (
                    format_timestamp(finished_at),
                    _duration_ms(row["started_at"], finished_at),
                    dump_json(output),
                    row["id"],
                ),
            )

        self._db.run_in_transaction(_complete)

    def mark_step_failed(self, job_id: str, step_id: str, error_message: str) -> None:
        finished_at = utcnow()
        failed = self._db.run_in_transaction(
            lambda conn: _fail_running(conn, job_id, step_id, error_message, finished_at)
        )
        if not failed:
            LOGGER.warning("Job %s step %s has no running record to fail.", job_id, step_id)

    def record_sub_step(
        self,
        job_id: str,
        step_id: str,
        *,
        segment_id: str,
        stage_id: str | None = None,
        status: StepStatus,
        started_at: datetime,
        completed_at: datetime | None = None,
        input_snapshot: Any = None,
        output_snapshot: Any = None,
        error_message: str | None = None,
    ) -> int:
        """Append a finished per-segment sub-step record."""
        finished_at = completed_at or utcnow()
        cursor_id = self._db.run_in_transaction(
            lambda conn: conn.execute(
                """
                INSERT INTO step_history (
                    job_id, stage_id, step_id, segment_id, status, started_at, completed_at,
                    duration_ms, input, output, error_message
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    job_id,
                    stage_id,
                    step_id,
                    segment_id,
                    status.value,
                    format_timestamp(started_at),
                    format_timestamp(finished_at),
                    _duration_ms(format_timestamp(started_at), finished_at),
                    dump_json(input_snapshot),
                    dump_json(output_snapshot),
                    error_message,
                ),
            ).lastrowid
        )
        return int(cursor_id)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def find_by_job(self, job_id: str, *, segment_id: str | None = None) -> list[StepHistoryRecord]:
        if segment_id is None:
            rows = self._db.fetch_all(
                "SELECT * FROM step_history WHERE job_id = ? ORDER BY id;", (job_id,)
            )
        else:
            rows = self._db.fetch_all(
                "SELECT * FROM step_history WHERE job_id = ? AND segment_id = ? ORDER BY id;",
                (job_id, segment_id),
            )
        return [_row_to_record(row) for row in rows]

    def find_running(self, job_id: str) -> list[StepHistoryRecord]:
        rows = self._db.fetch_all(
            "SELECT * FROM step_history WHERE job_id = ? AND status = 'running' ORDER BY id;",
            (job_id,),
        )
        return [_row_to_record(row) for row in rows]

    def duration_by_stage(self, job_id: str) -> dict[str, int]:
        """Total milliseconds spent in completed steps, grouped by stage."""
        rows = self._db.fetch_all(
            """
            SELECT stage_id, SUM(duration_ms) AS total_ms
            FROM step_history
            WHERE job_id = ? AND segment_id IS NULL AND status = 'completed'
            GROUP BY stage_id
            ORDER BY MIN(id);
            """,
            (job_id,),
        )
        return {row["stage_id"] or "unknown": int(row["total_ms"] or 0) for row in rows}

    def failed_step_count(self, job_id: str) -> int:
        row = self._db.fetch_one(
            "SELECT COUNT(*) AS total FROM step_history WHERE job_id = ? AND status = 'failed';",
            (job_id,),
        )
        return int(row["total"]) if row is not None else 0

    def _update_running(self, job_id: str, step_id: str, assignment: str, params: tuple[Any, ...]) -> None:
        def _update(conn: sqlite3.Connection) -> None:
            row = _latest_running(conn, job_id, step_id)
            if row is None:
                return
            conn.execute(f"UPDATE step_history SET {assignment} WHERE id = ?;", (*params, row["id"]))

        self._db.run_in_transaction(_update)


def _latest_running(conn: sqlite3.Connection, job_id: str, step_id: str) -> sqlite3.Row | None:
    return conn.execute(
        """
        SELECT id, started_at FROM step_history
        WHERE job_id = ? AND step_id = ? AND status = 'running' AND segment_id IS NULL
        ORDER BY id DESC LIMIT 1;
        """,
        (job_id, step_id),
    ).fetchone()


def _fail_running(
    conn: sqlite3.Connection,
    job_id: str,
    step_id: str,
    message: str,
    finished_at: datetime,
) -> int:
    rows = conn.execute(
        """
        SELECT id, started_at FROM step_history
        WHERE job_id = ? AND step_id = ? AND status = 'running' AND segment_id IS NULL;
        """,
        (job_id, step_id),
    ).fetchall()
    for row in rows:
        conn.execute(
            """
            UPDATE step_history
            SET status = 'failed', completed_at = ?, duration_ms = ?, error_message = ?
            WHERE id = ?;
            """,
            (
                format_timestamp(finished_at),
                _duration_ms(row["started_at"], finished_at),
                message,
                row["id"],
            ),
        )
    return len(rows)


def _duration_ms(started_at: str | None, finished_at: datetime) -> int | None:
    started = parse_timestamp(started_at)
    if started is None:
        return None
    return max(0, int((finished_at - started).total_seconds() * 1000))


def _row_to_record(row: sqlite3.Row) -> StepHistoryRecord:
    return StepHistoryRecord(
        id=int(row["id"]),
        job_id=row["job_id"],
        step_id=row["step_id"],
        status=StepStatus(row["status"]),
        started_at=parse_timestamp(row["started_at"]),  # type: ignore[arg-type]
        stage_id=row["stage_id"],
        segment_id=row["segment_id"],
        completed_at=parse_timestamp(row["completed_at"]),
        duration_ms=row["duration_ms"],
        input=load_json(row["input"]),
        output=load_json(row["output"]),
        error_message=row["error_message"],
    )
