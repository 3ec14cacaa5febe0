"""
Text formatters.

A formatter turns a record into one line of text (newline included). Any
callable ``record -> str`` works where a formatter is expected; the classes
here are the stock ones:

  - text:       "2026-02-12 14:32:05.123 +00:00 [INF] app·db: Connected to 'db-1'"
  - ansi_color: the text format with the level and category coloured
  - json_lines: one JSON object per line for machine parsing
"""

from __future__ import annotations

import json
import math
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable

from logtape.records import LogLevel, LogRecord

TextFormatter = Callable[[LogRecord], str]

LEVEL_ABBREVIATIONS: dict[LogLevel, str] = {
    LogLevel.TRACE: "TRC",
    LogLevel.DEBUG: "DBG",
    LogLevel.INFO: "INF",
    LogLevel.WARNING: "WRN",
    LogLevel.ERROR: "ERR",
    LogLevel.FATAL: "FTL",
}


class LogFormatter(ABC):
    """Base formatter. Transforms LogRecord → string."""

    @abstractmethod
    def format(self, record: LogRecord) -> str: ...

    def __call__(self, record: LogRecord) -> str:
        return self.format(record)


class PlainTextFormatter(LogFormatter):
    """
    Single-line human readable format.
    Example: 2026-02-12 14:32:05.123 +00:00 [INF] app·db: Connected to 'db-1'
    """

    def __init__(
        self,
        category_separator: str = "·",
        value_renderer: Callable[[Any], str] = repr,
        utc: bool = True,
    ):
        self.category_separator = category_separator
        self.value_renderer = value_renderer
        self.utc = utc

    def format(self, record: LogRecord) -> str:
        ts = self.format_timestamp(record.timestamp)
        level = self.format_level(record.level)
        category = self.format_category(record.category or ())
        message = render_message_text(record.message, self.value_renderer)
        return f"{ts} {level} {category}: {message}\n"

    def format_timestamp(self, timestamp: float) -> str:
        if not math.isfinite(timestamp):
            return "-"
        try:
            dt = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return "-"
        if not self.utc:
            dt = dt.astimezone()
        offset = dt.strftime("%z")
        return f"{dt:%Y-%m-%d %H:%M:%S}.{dt.microsecond // 1000:03d} {offset[:3]}:{offset[3:]}"

    def format_level(self, level: LogLevel) -> str:
        return f"[{LEVEL_ABBREVIATIONS[level]}]"

    def format_category(self, category: tuple[str, ...]) -> str:
        return self.category_separator.join(category)


class AnsiColorFormatter(PlainTextFormatter):
    """Text format with ANSI colours for terminal display."""

    COLORS = {
        LogLevel.TRACE: "\033[90m",       # gray
        LogLevel.DEBUG: "\033[36m",       # cyan
        LogLevel.INFO: "\033[32m",        # green
        LogLevel.WARNING: "\033[33m",     # yellow
        LogLevel.ERROR: "\033[31m",       # red
        LogLevel.FATAL: "\033[1;91m",     # bold bright red
    }
    DIM = "\033[2m"
    RESET = "\033[0m"

    def format_timestamp(self, timestamp: float) -> str:
        return f"{self.DIM}{super().format_timestamp(timestamp)}{self.RESET}"

    def format_level(self, level: LogLevel) -> str:
        return f"{self.COLORS[level]}{super().format_level(level)}{self.RESET}"

    def format_category(self, category: tuple[str, ...]) -> str:
        return f"{self.DIM}{super().format_category(category)}{self.RESET}"


class JsonLinesFormatter(LogFormatter):
    """
    Structured JSON for machine parsing.
    One JSON object per line.
    """

    def format(self, record: LogRecord) -> str:
        obj: dict[str, Any] = {
            "@timestamp": _iso_timestamp(record.timestamp),
            "level": record.level.name,
            "message": render_message_text(record.message, _json_value_text),
            "logger": ".".join(record.category or ()),
            "properties": {
                str(k): _serialize_value(v) for k, v in record.properties.items()
            },
        }
        return json.dumps(obj, default=str) + "\n"


def render_message_text(message: tuple[Any, ...], value_renderer: Callable[[Any], str] = repr) -> str:
    """Join a structured message: literals verbatim, values through ``value_renderer``."""
    return "".join(
        part if i % 2 == 0 else value_renderer(part)
        for i, part in enumerate(message)
    )


def _json_value_text(v: Any) -> str:
    return v if isinstance(v, str) else repr(v)


def _iso_timestamp(timestamp: float) -> str | None:
    if not math.isfinite(timestamp):
        return None
    try:
        dt = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return dt.isoformat(timespec="milliseconds")


def _serialize_value(v: Any) -> Any:
    """Make a value JSON-serializable."""
    if isinstance(v, (str, int, float, bool, type(None))):
        return v
    if isinstance(v, (list, tuple)):
        return [_serialize_value(i) for i in v]
    if isinstance(v, Mapping):
        return {str(k): _serialize_value(val) for k, val in v.items()}
    if isinstance(v, BaseException):
        return {"type": type(v).__name__, "message": str(v)}
    return str(v)


# ── Factories (referenced by the declarative loader) ──────────────


def get_text_formatter(**options: Any) -> PlainTextFormatter:
    return PlainTextFormatter(**options)


def get_ansi_color_formatter(**options: Any) -> AnsiColorFormatter:
    return AnsiColorFormatter(**options)


def get_json_lines_formatter() -> JsonLinesFormatter:
    return JsonLinesFormatter()


default_text_formatter = PlainTextFormatter()
