"""SQLite database helpers for the Reelsmith storage layer."""

from __future__ import annotations

import itertools
import json
import sqlite3
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar, cast

from ..exceptions import StorageError
from ..utils.logging import get_logger

__all__ = [
    "DatabaseError",
    "DatabaseIntegrityError",
    "SQLiteDatabase",
    "dump_json",
    "format_timestamp",
    "load_json",
    "parse_timestamp",
]

LOGGER = get_logger(__name__)

T = TypeVar("T")

TRANSACTION_MODES = frozenset({"DEFERRED", "IMMEDIATE", "EXCLUSIVE"})
BUSY_MARKERS = ("database is locked", "database is busy", "sqlite_busy")


class DatabaseError(StorageError):
    """Raised when database operations fail."""


class DatabaseIntegrityError(DatabaseError):
    """Raised when the SQLite integrity checks fail."""


class SQLiteDatabase:
    """Lightweight helper around SQLite connections, transactions and schema management."""

    def __init__(
        self,
        db_path: str | Path,
        *,
        busy_timeout: float = 5.0,
        max_busy_retries: int = 3,
        busy_retry_delay: float = 0.1,
    ) -> None:
        self.db_path = Path(db_path)
        if not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self.max_busy_retries = max_busy_retries
        self.busy_retry_delay = busy_retry_delay
        self._savepoints = itertools.count(1)

    @contextmanager
    def connect(self, *, read_only: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager that yields a SQLite connection with sane defaults."""
        connection = self._open(read_only=read_only)
        try:
            yield connection
            if not read_only:
                connection.commit()
        except Exception as exc:
            if not read_only:
                connection.rollback()
            if isinstance(exc, sqlite3.Error):
                raise DatabaseError(str(exc)) from exc
            raise
        finally:
            connection.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterator[sqlite3.Connection]:
        """Open a connection and run an explicit ``BEGIN <mode>`` transaction on it.

        ``IMMEDIATE`` takes the write lock up front so a transaction that starts by reading
        never fails later on a lock upgrade.
        """
        mode = mode.upper()
        if mode not in TRANSACTION_MODES:
            raise ValueError(f"Unsupported transaction mode: {mode}")

        connection = self._open(read_only=False, autocommit=True)
        try:
            connection.execute(f"BEGIN {mode};")
            yield connection
            connection.execute("COMMIT;")
        except Exception as exc:
            if connection.in_transaction:
                connection.execute("ROLLBACK;")
            if isinstance(exc, sqlite3.Error):
                raise DatabaseError(str(exc)) from exc
            raise
        finally:
            connection.close()

    def run_in_transaction(
        self,
        operation: Callable[[sqlite3.Connection], T],
        *,
        connection: sqlite3.Connection | None = None,
        mode: str = "IMMEDIATE",
        max_retries: int | None = None,
    ) -> T:
        """Run ``operation`` atomically and return its result.

        When ``connection`` is supplied the caller already owns a transaction; the operation
        runs inside a savepoint on that connection instead of opening a new one. Otherwise a
        fresh transaction is opened and retried with exponential backoff while SQLite reports
        the database as locked.
        """
        if connection is not None:
            return self._run_in_savepoint(connection, operation)

        retries = self.max_busy_retries if max_retries is None else max_retries
        attempt = 0
        while True:
            try:
                with self.transaction(mode=mode) as conn:
                    return operation(conn)
            except DatabaseError as exc:
                if attempt >= retries or not _is_busy(exc):
                    raise
                attempt += 1
                delay = self.busy_retry_delay * (2 ** (attempt - 1))
                LOGGER.warning(
                    "Database busy (attempt %d/%d); retrying in %.2fs.",
                    attempt,
                    retries,
                    delay,
                )
                time.sleep(delay)

    def executescript(self, script: str) -> None:
        """Execute a multi-statement SQL script."""
        with self.connect() as connection:
            connection.executescript(script)

    def execute(self, sql: str, parameters: Sequence[Any] | None = None) -> int:
        """Execute a modifying SQL statement and return the affected row count."""
        with self.connect() as connection:
            cursor = connection.execute(sql, parameters or [])
            return cursor.rowcount

    def fetch_one(self, sql: str, parameters: Sequence[Any] | None = None) -> sqlite3.Row | None:
        """Execute a SELECT and return a single row."""
        with self.connect(read_only=True) as connection:
            cursor = connection.execute(sql, parameters or [])
            row = cursor.fetchone()
            return cast(sqlite3.Row | None, row)

    def fetch_all(self, sql: str, parameters: Sequence[Any] | None = None) -> list[sqlite3.Row]:
        """Execute a SELECT and return all rows."""
        with self.connect(read_only=True) as connection:
            cursor = connection.execute(sql, parameters or [])
            rows = cursor.fetchall()
            return cast(list[sqlite3.Row], rows)

    def run_migrations(self, migrations_dir: str | Path | None = None) -> list[str]:
        """Apply outstanding migrations and return the filenames that were applied."""
        from .migrations import run_migrations  # Local import to avoid cycles

        return run_migrations(self, migrations_dir=migrations_dir)

    def check_integrity(self) -> None:
        """Run SQLite integrity and foreign key checks."""
        with self.connect(read_only=True) as connection:
            integrity = connection.execute("PRAGMA integrity_check;").fetchone()
            if not integrity or integrity[0] != "ok":
                raise DatabaseIntegrityError(f"Integrity check failed: {integrity!r}")

            fk_issues = list(connection.execute("PRAGMA foreign_key_check;"))
            if fk_issues:
                formatted = ", ".join(str(tuple(issue)) for issue in fk_issues)
                raise DatabaseIntegrityError(f"Foreign key violations detected: {formatted}")

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _open(self, *, read_only: bool, autocommit: bool = False) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._build_uri(read_only=read_only),
            uri=True,
            timeout=self.busy_timeout,
            isolation_level=None if autocommit else "",
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def _run_in_savepoint(
        self,
        connection: sqlite3.Connection,
        operation: Callable[[sqlite3.Connection], T],
    ) -> T:
        name = f"sp_{next(self._savepoints)}"
        connection.execute(f"SAVEPOINT {name};")
        try:
            result = operation(connection)
        except Exception:
            connection.execute(f"ROLLBACK TO SAVEPOINT {name};")
            connection.execute(f"RELEASE SAVEPOINT {name};")
            raise
        connection.execute(f"RELEASE SAVEPOINT {name};")
        return result

    def _build_uri(self, *, read_only: bool) -> str:
        """Build the SQLite URI for connections."""
        mode = "ro" if read_only else "rwc"
        return f"file:{self.db_path}?mode={mode}"


def _is_busy(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in BUSY_MARKERS)


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def load_json(value: str | None) -> Any:
    if value is None or value == "":
        return None
    return json.loads(value)
