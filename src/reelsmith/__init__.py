"""Reelsmith: orchestration core for narrated short-form video production."""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
