"""Choose the narration candidate whose length best fits a video segment."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from ..exceptions import SpeedMatchError

__all__ = [
    "MAX_SPEED_FACTOR",
    "MIN_SPEED_FACTOR",
    "CandidateScore",
    "SpeedMatch",
    "analyze_candidates",
    "select_best_match",
]

MIN_SPEED_FACTOR = 0.5
MAX_SPEED_FACTOR = 5.0


@dataclass(slots=True, frozen=True)
class CandidateScore:
    index: int
    duration: float
    factor: float

    @property
    def score(self) -> float:
        return abs(self.factor - 1.0)


@dataclass(slots=True, frozen=True)
class SpeedMatch:
    """Selected candidate and the speed factor to apply to the video.

    ``loop_count`` is set when the clip has to be looped before re-timing; ``needs_trim``
    when it has to be cut down to ``trim_duration`` first.
    """

    candidate_index: int
    audio_duration: float
    raw_factor: float
    adjusted_factor: float
    loop_count: int | None = None
    needs_trim: bool = False

    @property
    def trim_duration(self) -> float | None:
        return self.audio_duration * MAX_SPEED_FACTOR if self.needs_trim else None


def analyze_candidates(
    target_duration: float, durations: Sequence[float | None]
) -> list[CandidateScore]:
    """Score every candidate with a usable (> 0) duration, keeping original indices."""
    if target_duration <= 0:
        raise SpeedMatchError(f"Target duration must be positive, got {target_duration}.")
    return [
        CandidateScore(index=index, duration=float(duration), factor=target_duration / duration)
        for index, duration in enumerate(durations)
        if duration is not None and duration > 0
    ]


def select_best_match(target_duration: float, durations: Sequence[float | None]) -> SpeedMatch:
    """Pick the candidate with factor closest to 1.0; ties keep the earliest index."""
    scores = analyze_candidates(target_duration, durations)
    if not scores:
        raise SpeedMatchError("No narration candidate has a valid duration.")

    best = scores[0]
    for candidate in scores[1:]:
        if candidate.score < best.score:
            best = candidate

    factor = best.factor
    if factor < MIN_SPEED_FACTOR:
        loop_count = math.ceil(MIN_SPEED_FACTOR / factor)
        while factor * loop_count < MIN_SPEED_FACTOR:
            loop_count += 1
        return SpeedMatch(
            candidate_index=best.index,
            audio_duration=best.duration,
            raw_factor=factor,
            adjusted_factor=factor * loop_count,
            loop_count=loop_count,
        )
    if factor > MAX_SPEED_FACTOR:
        return SpeedMatch(
            candidate_index=best.index,
            audio_duration=best.duration,
            raw_factor=factor,
            adjusted_factor=MAX_SPEED_FACTOR,
            needs_trim=True,
        )
    return SpeedMatch(
        candidate_index=best.index,
        audio_duration=best.duration,
        raw_factor=factor,
        adjusted_factor=factor,
    )
