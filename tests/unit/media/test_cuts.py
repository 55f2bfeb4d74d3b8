"""Tests for jump-cut boundary analysis."""

from __future__ import annotations

import pytest

from reelsmith.media.cuts import SceneChange, analyze_trim_points, parse_scene_changes


def _changes(*times: float) -> list[SceneChange]:
    return [SceneChange(time=time, score=10.0) for time in times]


def test_parse_scene_changes_ignores_other_lines() -> None:
    stderr = "Input #0, mov\n[scdet @ 0x2] lavfi.scd.score: 8.5, lavfi.scd.time: 1.25\nvideo:0kB\n"

    assert parse_scene_changes(stderr) == [SceneChange(time=1.25, score=8.5)]
    assert parse_scene_changes("") == []


def test_cuts_near_both_edges_are_trimmed() -> None:
    analysis = analyze_trim_points(10.0, _changes(9.2, 0.4, 5.0, 0.9))

    assert analysis.needs_trim
    assert analysis.trim_start == pytest.approx(0.9)
    assert analysis.trim_end == pytest.approx(0.8)
    assert analysis.new_duration == pytest.approx(8.3)
    assert [change.time for change in analysis.scene_changes] == [0.4, 0.9, 5.0, 9.2]


def test_clip_without_edge_cuts_is_left_alone() -> None:
    analysis = analyze_trim_points(10.0, _changes(4.0, 6.0))

    assert not analysis.needs_trim
    assert analysis.new_duration == 10.0
    assert (analysis.trim_start, analysis.trim_end) == (0.0, 0.0)


def test_tiny_cuts_are_ignored() -> None:
    analysis = analyze_trim_points(8.0, _changes(0.03))

    assert not analysis.needs_trim
    assert analysis.trim_start == 0.0


def test_short_results_give_duration_back_to_both_ends() -> None:
    analysis = analyze_trim_points(3.0, _changes(1.2, 1.8), scan_range=1.3, min_duration=2.0)

    assert analysis.needs_trim
    assert analysis.trim_start == pytest.approx(0.5)
    assert analysis.trim_end == pytest.approx(0.5)
    assert analysis.new_duration == pytest.approx(2.0)
