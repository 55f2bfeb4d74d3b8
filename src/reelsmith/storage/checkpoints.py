"""Checkpoint store: the persistent resume point of each job."""

from __future__ import annotations

import sqlite3
from typing import Any

from ..utils.logging import get_logger
from ..workflow.models import Checkpoint, StepKind, utcnow
from ..workflow.payloads import StepPayload, decode_payload, encode_payload
from .db import DatabaseError, SQLiteDatabase, dump_json, format_timestamp, load_json, parse_timestamp

__all__ = ["CheckpointNotFoundError", "CheckpointStore"]

LOGGER = get_logger(__name__)

# processed_segments only changes through increment_processed_segments.
UPDATABLE_FIELDS = frozenset(
    {
        "current_stage",
        "current_step",
        "total_segments",
        "final_artifact_ref",
        "final_public_uri",
        "final_storage_uri",
        "final_local_path",
    }
)


class CheckpointNotFoundError(DatabaseError):
    """Raised when a checkpoint row is required but missing."""


class CheckpointStore:
    """Reads and atomically updates the ``checkpoints`` table."""

    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def init_state(
        self,
        job_id: str,
        *,
        total_segments: int = 0,
        connection: sqlite3.Connection | None = None,
    ) -> None:
        """Create the checkpoint row; an existing row is left untouched."""

        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO checkpoints (job_id, total_segments, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (job_id) DO NOTHING;
                """,
                (job_id, total_segments, format_timestamp(utcnow())),
            )

        self._db.run_in_transaction(_insert, connection=connection)

    def get_state(self, job_id: str) -> Checkpoint | None:
        row = self._db.fetch_one("SELECT * FROM checkpoints WHERE job_id = ?;", (job_id,))
        return _row_to_checkpoint(row) if row is not None else None

    def require_state(self, job_id: str) -> Checkpoint:
        state = self.get_state(job_id)
        if state is None:
            raise CheckpointNotFoundError(f"No checkpoint exists for job {job_id}.")
        return state

    def update_state(
        self,
        job_id: str,
        changes: dict[str, Any] | None = None,
        *,
        connection: sqlite3.Connection | None = None,
        **fields: Any,
    ) -> None:
        """Apply a partial update; only the supplied fields change."""
        updates = {**(changes or {}), **fields}
        if not updates:
            return
        invalid = sorted(set(updates) - UPDATABLE_FIELDS)
        if invalid:
            raise ValueError(f"Checkpoint fields cannot be updated directly: {', '.join(invalid)}")

        columns = sorted(updates)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        parameters = [updates[column] for column in columns]
        parameters.extend([format_timestamp(utcnow()), job_id])

        def _update(conn: sqlite3.Connection) -> None:
            cursor = conn.execute(
                f"UPDATE checkpoints SET {assignments}, updated_at = ? WHERE job_id = ?;",
                parameters,
            )
            if cursor.rowcount == 0:
                raise CheckpointNotFoundError(f"No checkpoint exists for job {job_id}.")

        self._db.run_in_transaction(_update, connection=connection)

    def increment_processed_segments(
        self,
        job_id: str,
        *,
        amount: int = 1,
        connection: sqlite3.Connection | None = None,
    ) -> int:
        """Atomically add ``amount`` to the processed counter and return the new value."""
        if amount < 0:
            raise ValueError("The processed segment counter can only increase.")

        def _increment(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """
                UPDATE checkpoints
                SET processed_segments = processed_segments + ?, updated_at = ?
                WHERE job_id = ?;
                """,
                (amount, format_timestamp(utcnow()), job_id),
            )
            if cursor.rowcount == 0:
                raise CheckpointNotFoundError(
                    f"Cannot increment processed segments: no checkpoint for job {job_id}."
                )
            row = conn.execute(
                "SELECT processed_segments FROM checkpoints WHERE job_id = ?;", (job_id,)
            ).fetchone()
            return int(row["processed_segments"])

        return self._db.run_in_transaction(_increment, connection=connection)

    def save_step_output(
        self,
        job_id: str,
        kind: StepKind,
        payload: StepPayload,
        *,
        connection: sqlite3.Connection | None = None,
    ) -> None:
        """Store ``payload`` in the context blob under its step kind."""
        encoded = encode_payload(kind, payload)

        def _save(conn: sqlite3.Connection) -> None:
            row = conn.execute(
                "SELECT context FROM checkpoints WHERE job_id = ?;", (job_id,)
            ).fetchone()
            if row is None:
                raise CheckpointNotFoundError(f"No checkpoint exists for job {job_id}.")
            context = load_json(row["context"]) or {}
            context[kind.value] = encoded
            conn.execute(
                "UPDATE checkpoints SET context = ?, updated_at = ? WHERE job_id = ?;",
                (dump_json(context), format_timestamp(utcnow()), job_id),
            )

        self._db.run_in_transaction(_save, connection=connection)

    def load_step_output(self, job_id: str, kind: StepKind) -> StepPayload | None:
        return self.load_context(job_id).get(kind)

    def load_context(self, job_id: str) -> dict[StepKind, StepPayload]:
        """Decode every step output stored for the job."""
        state = self.get_state(job_id)
        if state is None:
            return {}
        outputs: dict[StepKind, StepPayload] = {}
        for encoded in state.context.values():
            kind, payload = decode_payload(encoded)
            outputs[kind] = payload
        return outputs

    def delete_state(self, job_id: str, *, connection: sqlite3.Connection | None = None) -> None:
        self._db.run_in_transaction(
            lambda conn: conn.execute("DELETE FROM checkpoints WHERE job_id = ?;", (job_id,)),
            connection=connection,
        )


def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
    return Checkpoint(
        job_id=row["job_id"],
        current_stage=row["current_stage"],
        current_step=row["current_step"],
        context=load_json(row["context"]) or {},
        total_segments=int(row["total_segments"]),
        processed_segments=int(row["processed_segments"]),
        final_artifact_ref=row["final_artifact_ref"],
        final_public_uri=row["final_public_uri"],
        final_storage_uri=row["final_storage_uri"],
        final_local_path=row["final_local_path"],
        updated_at=parse_timestamp(row["updated_at"]),
    )
