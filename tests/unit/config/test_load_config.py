"""Tests for the configuration loader."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from reelsmith.config.load import ENV_PREFIX, load_config
from reelsmith.exceptions import ConfigurationError

MINIMAL_CONFIG = """\
environment: test
paths:
  data_root: data
  output_root: data/output
  temp_dir: data/tmp
  logs_dir: data/logs
  database: data/db/reelsmith.sqlite
workflow:
  max_concurrent_segments: 2
  platform: ai-studio
"""


@pytest.fixture(autouse=True)
def _clear_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)


def _write_config(tmp_path: Path, name: str, text: str) -> Path:
    config_dir = tmp_path / "configs"
    config_dir.mkdir(exist_ok=True)
    (config_dir / f"{name}.yaml").write_text(text, encoding="utf-8")
    return config_dir


def test_load_config_environment_override(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Environment variables prefixed with REELSMITH_ override YAML values."""
    data_root = tmp_path / "custom"
    monkeypatch.setenv("REELSMITH_LOGGING__LEVEL", "ERROR")
    monkeypatch.setenv("REELSMITH_PATHS__DATA_ROOT", str(data_root))
    monkeypatch.setenv("REELSMITH_WORKFLOW__MAX_CONCURRENT_SEGMENTS", "5")

    config = load_config("dev")

    assert config["logging"]["level"] == "ERROR"
    assert config["paths"]["data_root"] == str(data_root)
    assert config["workflow"]["max_concurrent_segments"] == 5


def test_env_values_keep_yaml_types(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_dir = _write_config(tmp_path, "test", MINIMAL_CONFIG)
    monkeypatch.setenv("REELSMITH_WORKFLOW__CAPTIONS_ENABLED", "true")
    monkeypatch.setenv("REELSMITH_WORKFLOW__HEARTBEAT_STALE_MINUTES", "12.5")

    config = load_config("test", config_dir=config_dir)

    assert config["workflow"]["captions_enabled"] is True
    assert config["workflow"]["heartbeat_stale_minutes"] == 12.5


def test_overrides_merge_into_nested_sections(tmp_path: Path) -> None:
    config_dir = _write_config(tmp_path, "test", MINIMAL_CONFIG)

    config = load_config(
        "test",
        config_dir=config_dir,
        overrides={"workflow": {"narration_batch_size": 4}},
    )

    assert config["workflow"]["narration_batch_size"] == 4
    assert config["workflow"]["max_concurrent_segments"] == 2
    assert config["workflow"]["platform"] == "ai-studio"


def test_env_overrides_win_over_explicit_overrides(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config_dir = _write_config(tmp_path, "test", MINIMAL_CONFIG)
    monkeypatch.setenv("REELSMITH_WORKFLOW__PLATFORM", "vertex")

    config = load_config("test", config_dir=config_dir, overrides={"workflow": {"platform": "ai-studio"}})

    assert config["workflow"]["platform"] == "vertex"


def test_load_config_validation_error(tmp_path: Path) -> None:
    """Schema violations are reported with their dotted path."""
    config_dir = _write_config(
        tmp_path,
        "broken",
        MINIMAL_CONFIG.replace("max_concurrent_segments: 2", "max_concurrent_segments: 12"),
    )

    with pytest.raises(ConfigurationError) as excinfo:
        load_config("broken", config_dir=config_dir)

    message = str(excinfo.value)
    assert message.startswith("Configuration validation failed:")
    assert "workflow.max_concurrent_segments" in message


def test_missing_required_section_fails_validation(tmp_path: Path) -> None:
    config_dir = _write_config(tmp_path, "partial", "environment: test\npaths:\n  data_root: ./data\n")

    with pytest.raises(ConfigurationError, match="validation failed"):
        load_config("partial", config_dir=config_dir)


def test_validation_can_be_skipped(tmp_path: Path) -> None:
    config_dir = _write_config(tmp_path, "partial", "environment: test\n")

    assert load_config("partial", config_dir=config_dir, validate=False) == {"environment": "test"}


def test_unknown_environment(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="No configuration for environment 'staging'"):
        load_config("staging", config_dir=tmp_path)


def test_invalid_yaml(tmp_path: Path) -> None:
    config_dir = _write_config(tmp_path, "bad", "workflow: [unclosed\n")

    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        load_config("bad", config_dir=config_dir)


def test_root_must_be_mapping(tmp_path: Path) -> None:
    config_dir = _write_config(tmp_path, "listy", "- one\n- two\n")

    with pytest.raises(ConfigurationError, match="must be a mapping"):
        load_config("listy", config_dir=config_dir)
