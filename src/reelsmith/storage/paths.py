"""Filesystem locations resolved from the ``paths`` configuration section."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

__all__ = ["PathsConfig", "build_paths"]

# Directories the CLI writes into; all are resolved against ``paths.project_root``.
DIRECTORY_KEYS = ("data_root", "output_root", "temp_dir", "logs_dir")


@dataclass(slots=True, frozen=True)
class PathsConfig:
    """Absolute locations of the job database, scratch media and rendered output."""

    project_root: Path
    data_root: Path
    output_root: Path
    temp_dir: Path
    logs_dir: Path
    database: Path

    def ensure_directories(self) -> list[Path]:
        """Create missing directories and return the ones that had to be created."""
        created: list[Path] = []
        for directory in (*(getattr(self, key) for key in DIRECTORY_KEYS), self.database.parent):
            if not directory.is_dir():
                directory.mkdir(parents=True, exist_ok=True)
                created.append(directory)
        return created


def build_paths(config: Mapping[str, object]) -> PathsConfig:
    section = config.get("paths")
    if not isinstance(section, Mapping):
        raise ValueError("Configuration is missing the 'paths' section.")

    keys = (*DIRECTORY_KEYS, "database")
    missing = [key for key in keys if not section.get(key)]
    if missing:
        raise ValueError(f"Configuration 'paths' is missing: {', '.join(missing)}.")

    root = Path(str(section.get("project_root") or ".")).expanduser().resolve()
    return PathsConfig(project_root=root, **{key: _under(root, section[key]) for key in keys})


def _under(root: Path, value: object) -> Path:
    path = Path(str(value)).expanduser()
    return (path if path.is_absolute() else root / path).resolve()
