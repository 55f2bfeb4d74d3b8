"""Render narration text as SubRip (SRT) captions timed across a segment."""

from __future__ import annotations

from pathlib import Path

__all__ = ["render_srt", "write_srt"]

MAX_WORDS_PER_CUE = 7


def render_srt(text: str, duration: float, *, max_words: int = MAX_WORDS_PER_CUE) -> str:
    """Split ``text`` into cues of at most ``max_words`` words spread evenly over ``duration``.

    Cue lengths are proportional to their word counts so the captions finish exactly when
    the narration does.
    """
    words = text.split()
    if not words or duration <= 0:
        return ""

    chunks = [words[index : index + max_words] for index in range(0, len(words), max_words)]
    per_word = duration / len(words)

    entries: list[str] = []
    cursor = 0.0
    for index, chunk in enumerate(chunks, start=1):
        end = duration if index == len(chunks) else cursor + per_word * len(chunk)
        entries.append(
            f"{index}\n{_format_srt_timestamp(cursor)} --> {_format_srt_timestamp(end)}\n"
            + " ".join(chunk)
        )
        cursor = end
    return "\n\n".join(entries) + "\n"


def write_srt(text: str, duration: float, path: str | Path) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_srt(text, duration), encoding="utf-8")
    return target


def _format_srt_timestamp(value: float) -> str:
    """Format seconds into ``HH:MM:SS,mmm``."""
    total_milliseconds = round(max(value, 0.0) * 1000)
    total_seconds, milliseconds = divmod(total_milliseconds, 1000)
    minutes, seconds = divmod(total_seconds, 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d},{milliseconds:03d}"
