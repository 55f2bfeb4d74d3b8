"""Tests for the FFmpeg command wrappers."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path

import pytest

from reelsmith.media.ffmpeg import FFmpeg, FFmpegError, atempo_chain, probe_duration


class FakeCompletedProcess:
    def __init__(self, returncode: int, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture()
def captured_args(monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
    calls: list[list[str]] = []

    def fake_run(self, args, *, timeout=None):
        calls.append(list(args))
        return ""

    monkeypatch.setattr(FFmpeg, "run", fake_run)
    return calls


def test_probe_returns_metadata(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    metadata = {"streams": [], "format": {"duration": "12.5"}}

    def fake_run(*_args, **_kwargs):
        return FakeCompletedProcess(returncode=0, stdout=json.dumps(metadata))

    monkeypatch.setattr("subprocess.run", fake_run)
    ffmpeg = FFmpeg()

    assert ffmpeg.probe(tmp_path / "video.mp4") == metadata
    assert ffmpeg.duration(tmp_path / "video.mp4") == 12.5


def test_probe_failure_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def fake_run(*_args, **_kwargs):
        return FakeCompletedProcess(returncode=1, stderr="No such file or directory")

    monkeypatch.setattr("subprocess.run", fake_run)
    with pytest.raises(FFmpegError, match="ffprobe failed with code 1"):
        FFmpeg().probe(tmp_path / "video.mp4")


def test_timeout_is_reported_as_ffmpeg_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(command, **kwargs):
        raise subprocess.TimeoutExpired(command, kwargs["timeout"])

    monkeypatch.setattr("subprocess.run", fake_run)
    with pytest.raises(FFmpegError, match="timed out after 3"):
        FFmpeg(timeout=3).run(["-i", "in.mp4", "out.mp4"])


def test_run_prefixes_binary_and_overwrite_flags(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, list[str]] = {}

    def fake_run(command, **_kwargs):
        seen["command"] = command
        return FakeCompletedProcess(returncode=0, stderr="log output")

    monkeypatch.setattr("subprocess.run", fake_run)

    assert FFmpeg(ffmpeg_path="/opt/ffmpeg").run(["-i", "in.mp4"]) == "log output"
    assert seen["command"] == ["/opt/ffmpeg", "-hide_banner", "-y", "-i", "in.mp4"]


def test_detect_scene_changes_parses_scdet_output(monkeypatch: pytest.MonkeyPatch) -> None:
    stderr = (
        "[scdet @ 0x1] lavfi.scd.score: 14.201, lavfi.scd.time: 0.467\n"
        "frame=  120 fps=0.0 q=-0.0 size=N/A\n"
        "[scdet @ 0x1] lavfi.scd.score: 9.050, lavfi.scd.time: 4.9\n"
    )
    monkeypatch.setattr(FFmpeg, "run", lambda self, args, timeout=None: stderr)

    changes = FFmpeg().detect_scene_changes("clip.mp4")

    assert [(change.time, change.score) for change in changes] == [(0.467, 14.201), (4.9, 9.05)]


def test_adjust_speed_drops_audio_by_default(captured_args: list[list[str]]) -> None:
    FFmpeg().adjust_speed("in.mp4", "out.mp4", 1.25)

    (args,) = captured_args
    assert args[args.index("-filter:v") + 1] == "setpts=PTS/1.250000"
    assert "-an" in args
    assert args[-1] == "out.mp4"


def test_adjust_speed_can_keep_audio(captured_args: list[list[str]]) -> None:
    FFmpeg().adjust_speed("in.mp4", "out.mp4", 3.0, drop_audio=False)

    (args,) = captured_args
    assert args[args.index("-filter:a") + 1] == "atempo=2.0,atempo=1.500000"
    assert "-an" not in args


def test_adjust_speed_rejects_non_positive_factor(captured_args: list[list[str]]) -> None:
    with pytest.raises(ValueError):
        FFmpeg().adjust_speed("in.mp4", "out.mp4", 0.0)
    assert captured_args == []


def test_loop_repeats_input(captured_args: list[list[str]]) -> None:
    FFmpeg().loop("in.mp4", "out.mp4", count=5, duration=10.0)

    (args,) = captured_args
    assert args[:2] == ["-stream_loop", "4"]
    assert args[args.index("-t") + 1] == "10.000"


def test_merge_limits_duration_and_volume(captured_args: list[list[str]]) -> None:
    FFmpeg().merge("video.mp4", "voice.mp3", "out.mp4", duration=6.5, volume=0.8)

    (args,) = captured_args
    assert args[args.index("-t") + 1] == "6.500"
    assert args[args.index("-filter:a") + 1] == "volume=0.800"
    assert args[args.index("-c:v") + 1] == "copy"


def test_mix_background_music_loops_the_bed_under_original_audio(captured_args: list[list[str]]) -> None:
    """The music bed loops, is attenuated, and the mix stops with the video."""
    FFmpeg().mix_background_music("video.mp4", "bed.mp3", "out.mp4", volume=0.2)

    (args,) = captured_args
    assert args[:6] == ["-i", "video.mp4", "-stream_loop", "-1", "-i", "bed.mp3"]
    assert args[args.index("-filter_complex") + 1] == (
        "[1:a]volume=0.20[bgm];[0:a][bgm]amix=inputs=2:duration=first:dropout_transition=2[aout]"
    )
    assert args[args.index("-c:v") + 1] == "copy"
    assert args[-1] == "out.mp4"


def test_concat_writes_list_file(captured_args: list[list[str]], tmp_path: Path) -> None:
    list_path = tmp_path / "list.txt"
    clips = [tmp_path / "a.mp4", tmp_path / "it's.mp4"]

    FFmpeg().concat(clips, tmp_path / "out.mp4", list_path=list_path)

    lines = list_path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == f"file '{clips[0].resolve()}'"
    assert lines[1].endswith("it'\\''s.mp4'")
    (args,) = captured_args
    assert args[:6] == ["-f", "concat", "-safe", "0", "-i", str(list_path)]


def test_concat_requires_inputs(captured_args: list[list[str]], tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        FFmpeg().concat([], tmp_path / "out.mp4", list_path=tmp_path / "list.txt")


def test_burn_captions_escapes_subtitle_path(captured_args: list[list[str]]) -> None:
    FFmpeg().burn_captions("in.mp4", "C:/subs/segment-1.srt", "out.mp4")

    (args,) = captured_args
    assert args[args.index("-vf") + 1] == "subtitles='C\\:/subs/segment-1.srt'"


@pytest.mark.parametrize(
    ("factor", "expected"),
    [
        (1.5, "atempo=1.500000"),
        (4.0, "atempo=2.0,atempo=2.000000"),
        (0.25, "atempo=0.5,atempo=0.500000"),
    ],
)
def test_atempo_chain_stays_in_filter_range(factor: float, expected: str) -> None:
    assert atempo_chain(factor) == expected


def test_probe_duration_falls_back_to_streams() -> None:
    payload = {"format": {"duration": "N/A"}, "streams": [{"duration": "4.0"}, {"duration": "4.2"}, {}]}

    assert probe_duration(payload) == 4.2


def test_probe_duration_without_any_duration_raises() -> None:
    with pytest.raises(FFmpegError):
        probe_duration({"format": {}, "streams": []})
