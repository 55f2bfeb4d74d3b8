"""SQLite schema migrations for the job store."""

from __future__ import annotations

from .migrate import Migration, applied_migrations, discover_migrations, run_migrations

__all__ = ["Migration", "applied_migrations", "discover_migrations", "run_migrations"]
