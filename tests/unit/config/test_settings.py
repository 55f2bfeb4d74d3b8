"""Tests for turning configuration mappings into runtime objects."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest
from conftest import StubMedia, StubPrompts, StubSpeech, StubVideoClient, raw_segments

from reelsmith.config.settings import (
    build_services,
    heartbeat_window,
    job_config_from,
    resolve_factory,
    timeouts_from,
)
from reelsmith.exceptions import ConfigurationError
from reelsmith.storage.paths import PathsConfig, build_paths
from reelsmith.workflow.models import Platform
from reelsmith.workflow.services import Services

FACTORY_CALLS: list[dict[str, Any]] = []


def build_stub_services(**kwargs: Any) -> Services:
    FACTORY_CALLS.append(kwargs)
    return Services(
        video_client=StubVideoClient(raw_segments(1)),
        media=StubMedia(),
        speech=StubSpeech(),
        prompts=StubPrompts(),
        timeouts=kwargs["timeouts"],
    )


def build_nothing(**kwargs: Any) -> dict[str, Any]:
    return {}


NOT_CALLABLE = 42


def _config(**sections: Any) -> dict[str, Any]:
    config: dict[str, Any] = {
        "environment": "test",
        "workflow": {
            "max_concurrent_segments": 3,
            "narration_batch_size": 6,
            "captions_enabled": True,
            "platform": "vertex",
            "heartbeat_stale_minutes": 45,
        },
    }
    config.update(sections)
    return config


def _paths(tmp_path: Path) -> PathsConfig:
    return build_paths(
        {
            "paths": {
                "project_root": str(tmp_path),
                "data_root": "data",
                "output_root": "data/output",
                "temp_dir": "data/tmp",
                "logs_dir": "data/logs",
                "database": "data/db/reelsmith.sqlite",
            }
        }
    )


def test_job_config_uses_workflow_defaults() -> None:
    config = job_config_from(_config())

    assert config.max_concurrent_segments == 3
    assert config.narration_batch_size == 6
    assert config.captions_enabled is True
    assert config.platform is Platform.VERTEX


def test_job_config_overrides_win_and_none_is_ignored() -> None:
    config = job_config_from(
        _config(),
        {"max_concurrent_segments": 20, "platform": None, "target_segment_count": 12},
    )

    assert config.max_concurrent_segments == 8
    assert config.platform is Platform.VERTEX
    assert config.target_segment_count == 12


def test_job_config_rejects_unknown_keys() -> None:
    with pytest.raises(ConfigurationError, match="Unknown job configuration keys: music_track"):
        job_config_from(_config(), {"music_track": "lofi.mp3"})


def test_job_config_rejects_unknown_platform() -> None:
    with pytest.raises(ConfigurationError, match="Unknown platform"):
        job_config_from(_config(), {"platform": "desktop"})


@pytest.mark.parametrize("rates", [(1.0, 1.0, 1.0), (0.9, 1.1, 0.9)])
def test_job_config_rejects_repeated_speech_rates(rates) -> None:
    """Each narration variant needs its own speech rate."""
    with pytest.raises(ConfigurationError, match="three distinct values"):
        job_config_from(_config(), {"speech_rates": rates})


def test_job_config_reads_background_music_settings() -> None:
    """The workflow default volume applies and a job may name its own soundtrack."""
    config = job_config_from({"workflow": {"bgm_volume": 0.3}}, {"bgm_url": "bed.mp3"})

    assert (config.bgm_url, config.bgm_volume) == ("bed.mp3", 0.3)
    assert config.to_mapping()["bgm_url"] == "bed.mp3"


def test_job_config_rejects_out_of_range_music_volume() -> None:
    with pytest.raises(ConfigurationError, match="bgm_volume"):
        job_config_from(_config(), {"bgm_volume": 1.5})


def test_heartbeat_window() -> None:
    assert heartbeat_window(_config()) == timedelta(minutes=45)
    assert heartbeat_window({"workflow": {}}) == timedelta(minutes=30)


def test_section_must_be_mapping() -> None:
    with pytest.raises(ConfigurationError, match="'workflow' must be a mapping"):
        heartbeat_window({"workflow": ["not", "a", "mapping"]})


def test_timeouts_from_config() -> None:
    timeouts = timeouts_from(_config(timeouts={"analysis_seconds": 60, "speech_seconds": 15}))

    assert timeouts.analysis == 60.0
    assert timeouts.speech == 15.0
    assert timeouts.narration == 600.0


@pytest.mark.parametrize(
    ("reference", "message"),
    [
        ("no_colon_here", "must look like"),
        (":build", "must look like"),
        ("reelsmith_missing_module:build", "Cannot import"),
        (f"{__name__}:NOT_CALLABLE", "is not a callable"),
        (f"{__name__}:does_not_exist", "is not a callable"),
    ],
)
def test_resolve_factory_errors(reference: str, message: str) -> None:
    with pytest.raises(ConfigurationError, match=message):
        resolve_factory(reference)


def test_build_services_passes_config_paths_and_timeouts(tmp_path: Path) -> None:
    FACTORY_CALLS.clear()
    config = _config(
        services={"factory": f"{__name__}:build_stub_services"},
        timeouts={"media_seconds": 30},
    )
    paths = _paths(tmp_path)

    services = build_services(config, paths)

    assert isinstance(services, Services)
    assert services.timeouts.media == 30.0
    (call,) = FACTORY_CALLS
    assert call["config"] is config
    assert call["paths"] is paths


def test_build_services_requires_factory(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="services.factory is not configured"):
        build_services(_config(), _paths(tmp_path))


def test_build_services_rejects_wrong_return_type(tmp_path: Path) -> None:
    config = _config(services={"factory": f"{__name__}:build_nothing"})

    with pytest.raises(ConfigurationError, match="returned dict, expected Services"):
        build_services(config, _paths(tmp_path))
