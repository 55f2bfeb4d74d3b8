"""Layered YAML configuration for Reelsmith."""

from __future__ import annotations

import json
import os
from collections.abc import Iterable, Mapping, MutableMapping
from copy import deepcopy
from pathlib import Path
from typing import Any, cast

import yaml
from jsonschema import Draft7Validator

from ..exceptions import ConfigurationError

__all__ = ["CONFIG_DIR", "ENV_PREFIX", "load_config"]

PROJECT_ROOT = Path(__file__).resolve().parents[3]
CONFIG_DIR = PROJECT_ROOT / "configs"
SCHEMA_PATH = Path(__file__).with_name("schema.json")
ENV_PREFIX = "REELSMITH_"
ENV_SEPARATOR = "__"


def load_config(
    env: str = "dev",
    *,
    config_dir: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    validate: bool = True,
) -> dict[str, Any]:
    """Load the configuration for the requested environment.

    Layers, later ones winning:
        1. ``configs/{env}.yaml`` (or the same file name under ``config_dir``).
        2. The ``overrides`` mapping.
        3. ``REELSMITH_*`` environment variables, ``__`` separating nested keys,
           e.g. ``REELSMITH_WORKFLOW__MAX_CONCURRENT_SEGMENTS=4``.

    The merged result is validated against ``schema.json`` (JSON Schema draft 7).
    """
    base_dir = Path(config_dir) if config_dir is not None else CONFIG_DIR
    config = _read_yaml(_config_path(base_dir, env))

    if overrides:
        config = _deep_merge(config, overrides)
    config = _apply_env_overrides(config, os.environ)

    if validate:
        _validate(config)
    return config


def _config_path(base_dir: Path, env: str) -> Path:
    for suffix in (".yaml", ".yml"):
        candidate = base_dir / f"{env}{suffix}"
        if candidate.exists():
            return candidate
    raise ConfigurationError(f"No configuration for environment '{env}' in {base_dir}.")


def _read_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration root must be a mapping in {path}.")
    return data


def _deep_merge(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge two mappings without mutating either."""
    merged: dict[str, Any] = deepcopy(dict(base))
    for key, value in overrides.items():
        if isinstance(merged.get(key), Mapping) and isinstance(value, Mapping):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def _apply_env_overrides(config: Mapping[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for key, raw_value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        tokens = _env_tokens(key)
        if tokens:
            _set_nested(overrides, tokens, _coerce(raw_value))
    return _deep_merge(config, overrides)


def _env_tokens(key: str) -> list[str]:
    return [
        token.strip().lower().replace("-", "_")
        for token in key[len(ENV_PREFIX) :].split(ENV_SEPARATOR)
        if token.strip()
    ]


def _set_nested(target: MutableMapping[str, Any], keys: Iterable[str], value: Any) -> None:
    *parents, leaf = list(keys)
    current = target
    for key in parents:
        child = current.get(key)
        if not isinstance(child, MutableMapping):
            child = {}
            current[key] = child
        current = child
    current[leaf] = value


def _coerce(raw_value: str) -> Any:
    """Interpret an environment value as YAML so numbers and booleans keep their type."""
    if raw_value == "":
        return ""
    try:
        return yaml.safe_load(raw_value)
    except yaml.YAMLError:
        return raw_value


def _load_schema() -> dict[str, Any]:
    with SCHEMA_PATH.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration schema must be a JSON object.")
    return cast(dict[str, Any], data)


def _validate(config: Mapping[str, Any]) -> None:
    validator = Draft7Validator(_load_schema())
    errors = sorted(validator.iter_errors(config), key=lambda err: list(err.path))
    if not errors:
        return
    lines = [
        f"- {'.'.join(str(piece) for piece in error.path) or '<root>'}: {error.message}"
        for error in errors
    ]
    raise ConfigurationError("Configuration validation failed:\n" + "\n".join(lines)) from errors[0]
