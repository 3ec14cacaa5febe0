"""
Record filters.

A filter is any callable ``record -> bool``. Loggers hold an ordered list
of them; a record passes a logger only when every filter accepts it.
Anywhere a filter is expected, a level token (or ``None``) is also
accepted and turned into a threshold filter:

    to_filter("warning")   # accepts warning, error, fatal
    to_filter(None)        # accepts nothing
"""

from __future__ import annotations

from typing import Callable, Optional, Union

from logtape.records import LogLevel, LogRecord, resolve_level

Filter = Callable[[LogRecord], bool]
FilterLike = Union[Filter, LogLevel, str, None]


def _reject_all(record: LogRecord) -> bool:
    return False


def get_level_filter(level: Optional[LogLevel | str]) -> Filter:
    """Threshold filter: accepts records at or above ``level``."""
    if level is None:
        return _reject_all
    threshold = resolve_level(level)

    def level_filter(record: LogRecord) -> bool:
        return record.level >= threshold

    level_filter.level = threshold  # type: ignore[attr-defined]
    return level_filter


def to_filter(filter: FilterLike) -> Filter:
    """Callables pass through unchanged; anything else is a level threshold."""
    if callable(filter):
        return filter
    return get_level_filter(filter)
