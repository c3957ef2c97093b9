"""
Utilities package for surveybridge.

Exports shared helpers for logging, timing and query-string parsing.
Keep this package lightweight and free of domain-specific logic.
"""

from surveybridge.utils.logging import configure_logging, get_logger
from surveybridge.utils.query import first_value, parse_query
from surveybridge.utils.timing import Stopwatch, TimingStats, round_duration, timed_block

__all__ = [
    "configure_logging",
    "get_logger",
    "first_value",
    "parse_query",
    "Stopwatch",
    "TimingStats",
    "round_duration",
    "timed_block",
]
