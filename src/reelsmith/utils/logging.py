"""Logging setup shared by the CLI and the workflow engine."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from logging import Logger
from pathlib import Path
from typing import Any

__all__ = ["LoggingSettings", "configure_logging", "get_logger"]

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
ROOT_LOGGER_NAME = "reelsmith"

# HTTP-backed collaborators log every connection at INFO through these.
QUIET_LOGGERS = ("urllib3", "requests")


@dataclass(slots=True, frozen=True)
class LoggingSettings:
    level: int = logging.INFO
    file_path: Path | None = None

    @classmethod
    def from_mapping(cls, settings: Mapping[str, Any] | None) -> LoggingSettings:
        settings = settings or {}
        file_section = settings.get("file")
        file_path = None
        if isinstance(file_section, Mapping) and file_section.get("enabled") and file_section.get("path"):
            file_path = Path(str(file_section["path"])).expanduser()
        return cls(level=_coerce_level(settings.get("level")), file_path=file_path)


def configure_logging(settings: Mapping[str, Any] | None = None, *, force: bool = True) -> LoggingSettings:
    """Configure the root logger from the ``logging`` configuration section.

    .. code-block:: yaml

        logging:
          level: INFO
          file:
            enabled: true
            path: data/logs/reelsmith.log

    Console output is always on; the file handler shares its format. Third-party HTTP
    loggers are held at WARNING or above.
    """
    resolved = LoggingSettings.from_mapping(settings)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if resolved.file_path is not None:
        resolved.file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(resolved.file_path, encoding="utf-8"))
    logging.basicConfig(level=resolved.level, format=LOG_FORMAT, handlers=handlers, force=force)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved.level, logging.WARNING))
    return resolved


def get_logger(name: str | None = None) -> Logger:
    return logging.getLogger(name or ROOT_LOGGER_NAME)


def _coerce_level(level: Any) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str) and level:
        resolved = logging.getLevelName(level.upper())
        if isinstance(resolved, int):
            return resolved
    return logging.INFO
