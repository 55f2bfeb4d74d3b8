"""Turn the loaded configuration mapping into runtime objects."""

from __future__ import annotations

import importlib
from collections.abc import Callable, Mapping
from datetime import timedelta
from typing import Any

from ..exceptions import ConfigurationError
from ..storage.paths import PathsConfig
from ..workflow.models import JobConfig
from ..workflow.services import Services, Timeouts

__all__ = [
    "DEFAULT_HEARTBEAT_STALE_MINUTES",
    "build_services",
    "heartbeat_window",
    "job_config_from",
    "resolve_factory",
    "timeouts_from",
]

DEFAULT_HEARTBEAT_STALE_MINUTES = 30

ServicesFactory = Callable[..., Services]

# Keys of the ``workflow`` section that seed JobConfig defaults.
_JOB_DEFAULT_KEYS = (
    "max_concurrent_segments",
    "narration_batch_size",
    "captions_enabled",
    "platform",
    "language",
    "speech_rates",
    "bgm_volume",
)


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Configuration section '{name}' must be a mapping.")
    return value


def job_config_from(config: Mapping[str, Any], overrides: Mapping[str, Any] | None = None) -> JobConfig:
    """Build per-job settings from the ``workflow`` section plus explicit overrides."""
    workflow = _section(config, "workflow")
    data = {key: workflow[key] for key in _JOB_DEFAULT_KEYS if key in workflow}
    data.update({key: value for key, value in (overrides or {}).items() if value is not None})
    return JobConfig.from_mapping(data)


def heartbeat_window(config: Mapping[str, Any]) -> timedelta:
    minutes = _section(config, "workflow").get("heartbeat_stale_minutes", DEFAULT_HEARTBEAT_STALE_MINUTES)
    return timedelta(minutes=float(minutes))


def timeouts_from(config: Mapping[str, Any]) -> Timeouts:
    return Timeouts.from_mapping(dict(_section(config, "timeouts")))


def resolve_factory(reference: str) -> ServicesFactory:
    """Import a ``package.module:callable`` reference."""
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(
            f"services.factory must look like 'package.module:callable', got '{reference}'."
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import services factory module '{module_name}': {exc}") from exc
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ConfigurationError(f"'{reference}' is not a callable.")
    return factory


def build_services(config: Mapping[str, Any], paths: PathsConfig) -> Services:
    """Call the configured factory with the configuration, paths and timeouts."""
    reference = _section(config, "services").get("factory")
    if not reference:
        raise ConfigurationError("services.factory is not configured.")
    services = resolve_factory(str(reference))(
        config=config,
        paths=paths,
        timeouts=timeouts_from(config),
    )
    if not isinstance(services, Services):
        raise ConfigurationError(f"services.factory returned {type(services).__name__}, expected Services.")
    return services
