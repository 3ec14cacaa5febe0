"""
Log records and level definitions.

Six standard levels with Python-logging compatible values, the immutable
record every sink receives, and the two small wrappers used to postpone
work until a sink actually reads a record:

    Deferred   realize-once thunk backing a record field
    LazyValue  property value evaluated when the record's properties are read
"""

from __future__ import annotations

import threading
import time
from collections.abc import Mapping, Sequence
from enum import IntEnum
from types import MappingProxyType
from typing import Any, Callable

from logtape.template import parse_message_template


class LogLevel(IntEnum):
    """Standard log levels, Python-compatible numeric values."""
    TRACE = 5        # Below DEBUG, extreme detail
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    FATAL = 50

    @property
    def token(self) -> str:
        """Canonical lowercase token, e.g. ``"warning"``."""
        return self.name.lower()

    def __str__(self) -> str:
        return self.token

    @classmethod
    def from_name(cls, name: str) -> "LogLevel":
        """Resolve level from string name, case-insensitive."""
        if not isinstance(name, str):
            raise TypeError(f"Expected str, got {type(name).__name__}")
        try:
            return cls[name.upper()]
        except KeyError:
            raise TypeError(
                f"Invalid log level: {name!r}. "
                f"Valid levels: {', '.join(m.token for m in cls)}"
            ) from None


# Map for display: level → token string
LEVEL_NAMES: dict[int, str] = {member.value: member.token for member in LogLevel}

_POSITIONS: dict[LogLevel, int] = {member: i for i, member in enumerate(LogLevel)}
_TOKENS: dict[str, LogLevel] = {member.token: member for member in LogLevel}


def get_log_levels() -> list[LogLevel]:
    """All levels, lowest severity first."""
    return list(LogLevel)


def is_log_level(value: Any) -> bool:
    """True for a ``LogLevel`` member or its exact lowercase token."""
    if isinstance(value, LogLevel):
        return True
    return isinstance(value, str) and value in _TOKENS


def resolve_level(value: Any) -> LogLevel:
    """
    Strict conversion to ``LogLevel``.

    Accepts members and exact lowercase tokens only. Integers, booleans and
    differently-cased strings raise ``TypeError``; use ``parse_log_level``
    for user input.
    """
    if isinstance(value, LogLevel):
        return value
    if isinstance(value, str) and value in _TOKENS:
        return _TOKENS[value]
    raise TypeError(f"Invalid log level: {value!r}.")


def parse_log_level(text: str) -> LogLevel:
    """Parse a level name typed by a human (``"WARNING"``, ``"Info"``)."""
    return LogLevel.from_name(text)


def compare_log_level(a: Any, b: Any) -> int:
    """Negative, zero or positive as ``a`` is below, equal to or above ``b``."""
    return _POSITIONS[resolve_level(a)] - _POSITIONS[resolve_level(b)]


def level_name(level: int) -> str:
    """Get display name for a level value. Falls back to numeric string."""
    return LEVEL_NAMES.get(level, str(level))


# ── Deferred values ───────────────────────────────────────────────


class Deferred:
    """
    A value computed on first read and cached afterwards.

    Thread-safe: concurrent readers observe a single evaluation. A getter
    that raises is not cached, so the error surfaces on every read.
    """

    __slots__ = ("_getter", "_value", "_done", "_lock")

    def __init__(self, getter: Callable[[], Any]) -> None:
        self._getter = getter
        self._value: Any = None
        self._done = False
        self._lock = threading.Lock()

    def get(self) -> Any:
        if not self._done:
            with self._lock:
                if not self._done:
                    self._value = self._getter()
                    self._done = True
                    self._getter = None
        return self._value

    @property
    def realized(self) -> bool:
        return self._done

    def __repr__(self) -> str:
        if self._done:
            return f"Deferred({self._value!r})"
        return "Deferred(<pending>)"


def _realize(value: Any) -> Any:
    return value.get() if isinstance(value, Deferred) else value


class LazyValue:
    """Property value whose getter runs when the record's properties are read."""

    __slots__ = ("getter",)

    def __init__(self, getter: Callable[[], Any]) -> None:
        if not callable(getter):
            raise TypeError(f"Expected a callable, got {type(getter).__name__}")
        self.getter = getter

    def __repr__(self) -> str:
        return f"LazyValue({self.getter!r})"


def lazy(getter: Callable[[], Any]) -> LazyValue:
    """
    Mark a property as lazily evaluated.

    Usage:
        log = get_logger("app").bind(user=lazy(lambda: current_user.name))
        log.info("Checkout")   # getter runs when a sink reads the record
    """
    return LazyValue(getter)


def is_lazy(value: Any) -> bool:
    return isinstance(value, LazyValue)


def has_lazy(properties: Mapping[str, Any]) -> bool:
    return any(isinstance(v, LazyValue) for v in properties.values())


def resolve_lazy(properties: Mapping[str, Any]) -> dict[str, Any]:
    """Copy of ``properties`` with every ``LazyValue`` replaced by its result."""
    return {
        key: value.getter() if isinstance(value, LazyValue) else value
        for key, value in properties.items()
    }


# ── Records ───────────────────────────────────────────────────────

Category = tuple[str, ...]

_FIELDS = ("category", "level", "message", "raw_message", "timestamp", "properties")


class LogRecord:
    """
    Immutable log record. Created by a logger node, fanned out to sinks.

    ``message`` alternates literal text and substituted values, always
    starting and ending with a literal. ``message``, ``raw_message`` and
    ``properties`` may be backed by a ``Deferred``; reading the attribute
    realizes it once. ``category`` of ``None`` marks an unstamped record,
    which takes the category of the logger that emits it.
    """

    __slots__ = ("_category", "_level", "_message", "_raw_message", "_timestamp", "_properties")

    def __init__(
        self,
        *,
        category: Sequence[str] | None,
        level: LogLevel | str,
        message: Sequence[Any] | Deferred,
        raw_message: str | Sequence[str] | Deferred,
        timestamp: float,
        properties: Mapping[str, Any] | Deferred | None = None,
    ) -> None:
        if category is not None:
            category = tuple(category)
        if not isinstance(message, Deferred):
            message = tuple(message)
        if not isinstance(raw_message, (str, Deferred)):
            raw_message = tuple(raw_message)
        if properties is None:
            properties = {}
        elif not isinstance(properties, Deferred):
            properties = dict(properties)
        set_ = object.__setattr__
        set_(self, "_category", category)
        set_(self, "_level", resolve_level(level))
        set_(self, "_message", message)
        set_(self, "_raw_message", raw_message)
        set_(self, "_timestamp", timestamp)
        set_(self, "_properties", properties)

    @classmethod
    def create(
        cls,
        level: LogLevel | str,
        message: str = "",
        category: Sequence[str] | None = (),
        timestamp: float | None = None,
        **properties: Any,
    ) -> "LogRecord":
        """Factory with auto-timestamp and template parsing."""
        return cls(
            category=category,
            level=level,
            message=parse_message_template(message, properties),
            raw_message=message,
            timestamp=time.time() * 1000 if timestamp is None else timestamp,
            properties=properties,
        )

    @property
    def category(self) -> Category | None:
        return self._category

    @property
    def level(self) -> LogLevel:
        return self._level

    @property
    def message(self) -> tuple[Any, ...]:
        return _realize(self._message)

    @property
    def raw_message(self) -> str | tuple[str, ...]:
        return _realize(self._raw_message)

    @property
    def timestamp(self) -> float:
        return self._timestamp

    @property
    def properties(self) -> Mapping[str, Any]:
        """Read-only view; eager and deferred properties alike."""
        return MappingProxyType(_realize(self._properties))

    def replace(self, **changes: Any) -> "LogRecord":
        """Copy with some fields changed. Untouched deferred fields stay deferred."""
        unknown = set(changes) - set(_FIELDS)
        if unknown:
            raise TypeError(f"Unknown LogRecord fields: {', '.join(sorted(unknown))}")
        values = {name: getattr(self, "_" + name) for name in _FIELDS}
        values.update(changes)
        return LogRecord(**values)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"LogRecord is immutable; cannot set {name!r}")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"LogRecord is immutable; cannot delete {name!r}")

    def __repr__(self) -> str:
        raw = self._raw_message
        shown = "<deferred>" if isinstance(raw, Deferred) else repr(raw)
        return (
            f"LogRecord(category={self._category!r}, level={self._level.token!r}, "
            f"raw_message={shown}, timestamp={self._timestamp!r})"
        )
