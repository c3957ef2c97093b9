"""
Timing utilities for survey sessions.

Submissions carry three durations: how long the form took to load, how long
the respondent took to complete it, and how long the save took. This module
provides a context manager for timed blocks and a small stopwatch for
durations that span several callbacks.

Usage:
    from surveybridge.utils.timing import timed_block

    with timed_block("save") as stats:
        db.append_row(table, row)

    print(stats.duration_seconds)
"""

from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass, field
from typing import Dict, Generator, Optional


@dataclass
class TimingStats:
    """
    Container for a single timed block.
    """

    label: str
    start_ts: float = field(default=0.0)
    end_ts: float = field(default=0.0)
    duration_seconds: float = field(default=0.0)


@contextlib.contextmanager
def timed_block(label: str) -> Generator[TimingStats, None, None]:
    """
    Measure wall-clock duration of a block with perf_counter.

    The stats are filled in even when the block raises.
    """
    stats = TimingStats(label=label)
    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.end_ts = time.perf_counter()
        stats.duration_seconds = stats.end_ts - stats.start_ts


class Stopwatch:
    """
    Named marks relative to a start time.

    `mark("loaded")` records seconds since the stopwatch started;
    `between("loaded", "completed")` gives the span between two marks.
    """

    def __init__(self) -> None:
        self._start = time.perf_counter()
        self._marks: Dict[str, float] = {}

    def mark(self, name: str) -> float:
        elapsed = time.perf_counter() - self._start
        self._marks[name] = elapsed
        return elapsed

    def get(self, name: str) -> Optional[float]:
        return self._marks.get(name)

    def between(self, first: str, second: str) -> Optional[float]:
        if first not in self._marks or second not in self._marks:
            return None
        return self._marks[second] - self._marks[first]


def round_duration(value: Optional[float], decimals: int = 3) -> Optional[float]:
    """Round a duration for storage; None stays None."""
    return None if value is None else round(value, decimals)


__all__ = ["TimingStats", "timed_block", "Stopwatch", "round_duration"]
