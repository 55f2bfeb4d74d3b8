"""Configuration loading helpers."""

from __future__ import annotations

from .load import load_config
from .settings import build_services, heartbeat_window, job_config_from, timeouts_from

__all__ = [
    "build_services",
    "heartbeat_window",
    "job_config_from",
    "load_config",
    "timeouts_from",
]
