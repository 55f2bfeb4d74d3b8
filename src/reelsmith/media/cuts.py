"""Jump-cut detection at clip boundaries.

Clips cut from AI-suggested timestamps often start or end a few frames into a neighbouring
shot. ``analyze_trim_points`` looks for scene changes close to either edge and proposes
how much to cut so the clip begins and ends on a single shot.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field

__all__ = [
    "DEFAULT_MIN_DURATION",
    "DEFAULT_SCAN_RANGE",
    "DEFAULT_SCDET_THRESHOLD",
    "SceneChange",
    "TrimAnalysis",
    "analyze_trim_points",
    "parse_scene_changes",
]

DEFAULT_SCDET_THRESHOLD = 8.0
DEFAULT_SCAN_RANGE = 1.3
DEFAULT_MIN_DURATION = 2.0
TRIM_TOLERANCE = 0.05

_SCDET_PATTERN = re.compile(r"lavfi\.scd\.score:\s*([\d.]+),\s*lavfi\.scd\.time:\s*([\d.]+)")


@dataclass(slots=True, frozen=True)
class SceneChange:
    time: float
    score: float


@dataclass(slots=True, frozen=True)
class TrimAnalysis:
    original_duration: float
    trim_start: float
    trim_end: float
    new_duration: float
    needs_trim: bool
    scene_changes: tuple[SceneChange, ...] = field(default_factory=tuple)


def parse_scene_changes(stderr: str) -> list[SceneChange]:
    """Extract scene changes from the log output of ffmpeg's ``scdet`` filter."""
    return [
        SceneChange(time=float(match.group(2)), score=float(match.group(1)))
        for match in _SCDET_PATTERN.finditer(stderr)
    ]


def analyze_trim_points(
    duration: float,
    changes: Sequence[SceneChange],
    *,
    scan_range: float = DEFAULT_SCAN_RANGE,
    min_duration: float = DEFAULT_MIN_DURATION,
) -> TrimAnalysis:
    """Compute how much to cut from each end of a clip.

    The last change within ``scan_range`` of the start becomes the new in-point and the
    first change within ``scan_range`` of the end the new out-point. When that would leave
    less than ``min_duration`` the cut is shared back between both ends. Cuts under 50 ms
    are ignored.
    """
    ordered = sorted(changes, key=lambda change: change.time)
    trim_start = 0.0
    trim_end = 0.0

    head = [change for change in ordered if change.time <= scan_range]
    if head:
        trim_start = head[-1].time

    tail = [change for change in ordered if change.time >= duration - scan_range]
    if tail:
        trim_end = duration - tail[0].time

    new_duration = duration - trim_start - trim_end
    if new_duration < min_duration:
        excess = min_duration - new_duration
        if trim_end > 0 and trim_end >= excess / 2:
            trim_end -= excess / 2
        if trim_start > 0 and trim_start >= excess / 2:
            trim_start -= excess / 2
        new_duration = duration - trim_start - trim_end

    needs_trim = trim_start > TRIM_TOLERANCE or trim_end > TRIM_TOLERANCE
    if not needs_trim:
        return TrimAnalysis(
            original_duration=duration,
            trim_start=0.0,
            trim_end=0.0,
            new_duration=duration,
            needs_trim=False,
            scene_changes=tuple(ordered),
        )
    return TrimAnalysis(
        original_duration=duration,
        trim_start=trim_start,
        trim_end=trim_end,
        new_duration=new_duration,
        needs_trim=True,
        scene_changes=tuple(ordered),
    )
