"""Aggregate progress / ETA calculation."""

from __future__ import annotations

import math


def _round_half_up(value: float) -> int:
    # round() is banker's rounding; the UI rounds .5 up
    return math.floor(value + 0.5)


def compute(elapsed: float, total_duration: float) -> tuple[int, int]:
    """
    Map elapsed simulated time to ``(progress_percent, eta_seconds)``.

    progress is clamped to [0, 100], eta never drops below 0. A non-positive
    total counts as finished.
    """
    if total_duration <= 0:
        return 100, 0
    percent = _round_half_up(elapsed / total_duration * 100)
    eta = _round_half_up(total_duration - elapsed)
    return max(0, min(percent, 100)), max(0, eta)
