"""Persistent storage: SQLite helpers, repositories and filesystem paths."""

from __future__ import annotations

from .checkpoints import CheckpointNotFoundError, CheckpointStore
from .db import DatabaseError, DatabaseIntegrityError, SQLiteDatabase
from .jobs import JobRepository
from .step_history import StepHistoryLedger

__all__ = [
    "CheckpointNotFoundError",
    "CheckpointStore",
    "DatabaseError",
    "DatabaseIntegrityError",
    "JobRepository",
    "SQLiteDatabase",
    "StepHistoryLedger",
]
