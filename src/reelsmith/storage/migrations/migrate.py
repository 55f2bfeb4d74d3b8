"""Numbered-SQL migrations for the job store.

Files named ``NNN_description.sql`` next to this module are applied in version order and
recorded in ``schema_migrations``, so running the migrations again is a no-op.
"""

from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from ...utils.logging import get_logger
from ..db import DatabaseError

if TYPE_CHECKING:  # pragma: no cover
    from ..db import SQLiteDatabase

__all__ = ["MIGRATIONS_DIR", "Migration", "applied_migrations", "discover_migrations", "run_migrations"]

LOGGER = get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).parent
_FILENAME = re.compile(r"^(\d{3})_([a-z0-9_]+)\.sql$")


@dataclass(slots=True, frozen=True)
class Migration:
    version: int
    name: str
    path: Path

    @property
    def filename(self) -> str:
        return self.path.name


def discover_migrations(directory: str | Path = MIGRATIONS_DIR) -> list[Migration]:
    """Return the migrations found in ``directory`` ordered by version."""
    found: dict[int, Migration] = {}
    for path in Path(directory).glob("*.sql"):
        match = _FILENAME.match(path.name)
        if match is None:
            LOGGER.warning("Ignoring %s: migration files are named NNN_description.sql", path.name)
            continue
        version = int(match.group(1))
        if version in found:
            raise DatabaseError(
                f"Migrations {found[version].filename} and {path.name} share version {version}."
            )
        found[version] = Migration(version=version, name=match.group(2), path=path)
    return [found[version] for version in sorted(found)]


def applied_migrations(database: SQLiteDatabase) -> set[str]:
    with database.connect() as connection:
        _ensure_schema_table(connection)
        return {row["filename"] for row in connection.execute("SELECT filename FROM schema_migrations;")}


def run_migrations(database: SQLiteDatabase, *, migrations_dir: str | Path | None = None) -> list[str]:
    """Apply pending migrations and return the filenames applied, oldest first."""
    done = applied_migrations(database)
    pending = [
        migration
        for migration in discover_migrations(migrations_dir or MIGRATIONS_DIR)
        if migration.filename not in done
    ]
    for migration in pending:
        with database.connect() as connection:
            connection.executescript(migration.path.read_text(encoding="utf-8"))
            connection.execute(
                "INSERT INTO schema_migrations (version, filename) VALUES (?, ?);",
                (migration.version, migration.filename),
            )
        LOGGER.info("Applied migration %03d (%s)", migration.version, migration.name)
    return [migration.filename for migration in pending]


def _ensure_schema_table(connection: sqlite3.Connection) -> None:
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            filename TEXT NOT NULL UNIQUE,
            applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
        """
    )
