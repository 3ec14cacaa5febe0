"""
Logger hierarchy and emission pipeline.

Loggers form one process-wide tree keyed by category. Each node owns its
sinks, filters and level threshold. A record emitted at a node is checked
against the node's threshold, then the filters of the nearest node (itself
or an ancestor) that has any, and is finally handed to the root's sinks,
then each ancestor's, then the node's own; a node with
``parent_sinks = "override"`` cuts the inherited part off.

A sink that raises never reaches the caller: the failure is reported as a
FATAL record on the ``("logtape", "meta")`` logger, bypassing the sink
that failed.

Usage:
    log = get_logger(["app", "db"])
    log.info("Connected to {host}", host="db-1")
    log.bind(request_id=rid).debug("Query took {ms} ms", {"ms": 12})
    log.error("Query failed", exc)
"""

from __future__ import annotations

import inspect
import threading
import time
import weakref
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any, Callable, Iterator, Optional, Union

from logtape.filters import Filter
from logtape.records import (
    Deferred,
    LogLevel,
    LogRecord,
    has_lazy,
    resolve_lazy,
    resolve_level,
)
from logtape.sinks import Sink
from logtape.template import parse_message_template, render_message

META_CATEGORY: tuple[str, ...] = ("logtape", "meta")

Properties = Mapping[str, Any]
PropertiesLike = Union[Properties, Callable[[], Properties], None]


def _now() -> float:
    return time.time() * 1000


def normalize_category(category: str | Sequence[Any]) -> tuple[str, ...]:
    """Flatten a string or (nested) sequence of strings into a category tuple."""
    if isinstance(category, str):
        if not category:
            raise ValueError("Category segments must be non-empty strings")
        return (category,)
    if not isinstance(category, Sequence):
        raise TypeError(f"Invalid category: {category!r}")
    flat: list[str] = []
    for item in category:
        flat.extend(normalize_category(item))
    return tuple(flat)


def _merge_properties(base: Properties, properties: PropertiesLike) -> Properties | Deferred:
    """
    Layer ``properties`` over ``base``.

    Eager when everything is already a plain value, deferred (evaluated once
    on first read) when a thunk or lazy value is involved.
    """
    if callable(properties):
        thunk = properties
        return Deferred(lambda: resolve_lazy({**base, **thunk()}))
    merged = {**base, **(properties or {})}
    if has_lazy(merged):
        return Deferred(lambda: resolve_lazy(merged))
    return merged


# ── Call shapes ───────────────────────────────────────────────────


class CallShape(Enum):
    """How the first argument of a level method is interpreted."""
    TEMPLATE = "template"      # ["Hello, ", "!"], *values
    MESSAGE = "message"        # "Hello, {name}!", props
    PROPERTIES = "properties"  # {"name": ...} rendered as "{*}"
    CALLBACK = "callback"      # lambda l: l(["Hello, ", "!"], name)
    ERROR = "error"            # exception instance


def classify_call(message: Any) -> CallShape:
    if isinstance(message, str):
        return CallShape.MESSAGE
    if isinstance(message, BaseException):
        return CallShape.ERROR
    if isinstance(message, Mapping):
        return CallShape.PROPERTIES
    if callable(message):
        return CallShape.CALLBACK
    if isinstance(message, (list, tuple)) and all(isinstance(f, str) for f in message):
        return CallShape.TEMPLATE
    raise TypeError(f"Unsupported log message type: {type(message).__name__}")


class _LevelMethods(ABC):
    """
    ``trace`` .. ``fatal`` for both plain and context-bound loggers.

    Every level method accepts the same call shapes:

        log.info("User {id} signed in", {"id": 7})
        log.info("User {id} signed in", id=7)
        log.info("User {id} signed in", lambda: {"id": compute()})
        log.info(["User ", " signed in"], user_id)
        log.info(lambda l: l(["User ", " signed in"], expensive()))
        log.info({"event": "sign-in", "id": 7})
        log.error(exc)
        log.error("Payment failed", exc)

    An ``async def`` properties thunk makes the call return a coroutine,
    which must be awaited for the record to be emitted.

    An exception passed on its own is logged with the raw message
    ``"{error}"`` and the exception under the ``error`` property. Python
    exceptions carry no ``.message`` attribute, so the placeholder names
    the exception itself and renders through ``str()``.
    """

    @abstractmethod
    def log(self, level, raw_message, properties=None, bypass_sinks=None): ...

    @abstractmethod
    def log_lazily(self, level, callback, properties=None): ...

    @abstractmethod
    def log_template(self, level, fragments, values, properties=None): ...

    @abstractmethod
    def is_enabled_for(self, level) -> bool: ...

    def trace(self, message: Any, /, *args: Any, **kwargs: Any) -> Any:
        return self._dispatch(LogLevel.TRACE, message, args, kwargs)

    def debug(self, message: Any, /, *args: Any, **kwargs: Any) -> Any:
        return self._dispatch(LogLevel.DEBUG, message, args, kwargs)

    def info(self, message: Any, /, *args: Any, **kwargs: Any) -> Any:
        return self._dispatch(LogLevel.INFO, message, args, kwargs)

    def warning(self, message: Any, /, *args: Any, **kwargs: Any) -> Any:
        return self._dispatch(LogLevel.WARNING, message, args, kwargs)

    warn = warning

    def error(self, message: Any, /, *args: Any, **kwargs: Any) -> Any:
        return self._dispatch(LogLevel.ERROR, message, args, kwargs)

    def fatal(self, message: Any, /, *args: Any, **kwargs: Any) -> Any:
        return self._dispatch(LogLevel.FATAL, message, args, kwargs)

    def _dispatch(self, level: LogLevel, message: Any, args: tuple, kwargs: dict) -> Any:
        shape = classify_call(message)

        if shape is CallShape.TEMPLATE:
            return self.log_template(level, message, args, kwargs or None)

        if args and shape is not CallShape.MESSAGE:
            raise TypeError(f"Unexpected positional arguments for a {shape.value} call")

        if shape is CallShape.CALLBACK:
            return self.log_lazily(level, message, kwargs or None)
        if shape is CallShape.PROPERTIES:
            return self.log(level, "{*}", {**message, **kwargs})
        if shape is CallShape.ERROR:
            return self.log(level, "{error}", {**kwargs, "error": message})

        if len(args) > 1:
            raise TypeError("Expected at most one properties argument")
        extra = args[0] if args else None

        if extra is None:
            return self.log(level, message, kwargs)
        if isinstance(extra, BaseException):
            return self.log(level, message, {**kwargs, "error": extra})
        if isinstance(extra, Mapping):
            return self.log(level, message, {**extra, **kwargs})
        if inspect.iscoroutinefunction(extra):
            return self._log_async(level, message, extra, kwargs)
        if callable(extra):
            if kwargs:
                return self.log(level, message, lambda: {**extra(), **kwargs})
            return self.log(level, message, extra)
        raise TypeError(f"Unsupported properties type: {type(extra).__name__}")

    def _log_async(self, level: LogLevel, message: str, thunk: Callable, extra: dict):
        enabled = self.is_enabled_for(level)

        async def emit_when_resolved() -> None:
            if not enabled:
                return
            properties = await thunk()
            self.log(level, message, {**properties, **extra})

        return emit_when_resolved()


# ── Logger nodes ──────────────────────────────────────────────────


class LoggerImpl(_LevelMethods):
    """
    One node of the category tree.

    Obtain nodes through ``get_logger()``; the constructor is internal.
    Children are held weakly, so an unreferenced, unconfigured subtree is
    reclaimed and transparently re-created on the next lookup.
    """

    _root: Optional["LoggerImpl"] = None
    _lock = threading.Lock()

    def __init__(self, parent: Optional["LoggerImpl"], category: tuple[str, ...]) -> None:
        self.parent = parent
        self.category = category
        self.children: weakref.WeakValueDictionary[str, LoggerImpl] = weakref.WeakValueDictionary()
        self.sinks: list[Sink] = []
        self.filters: list[Filter] = []
        self._parent_sinks = "inherit"
        self._lowest_level: Optional[LogLevel] = LogLevel.TRACE
        self.context_local_storage: Any = None

    @classmethod
    def get_logger(cls, category: str | Sequence[Any] = ()) -> "LoggerImpl":
        """Get or create the node for ``category`` (root for ``()``)."""
        if cls._root is None:
            with cls._lock:
                if cls._root is None:
                    cls._root = cls(None, ())
        return cls._root.get_child(category)

    # ── Configuration state ───────────────────────────────────────

    @property
    def lowest_level(self) -> Optional[LogLevel]:
        return self._lowest_level

    @lowest_level.setter
    def lowest_level(self, value: Optional[LogLevel | str]) -> None:
        self._lowest_level = None if value is None else resolve_level(value)

    @property
    def parent_sinks(self) -> str:
        return self._parent_sinks

    @parent_sinks.setter
    def parent_sinks(self, value: str) -> None:
        if value not in ("inherit", "override"):
            raise ValueError(f"parent_sinks must be 'inherit' or 'override', got {value!r}")
        self._parent_sinks = value

    def reset(self) -> None:
        """Restore defaults on this node only."""
        self.sinks.clear()
        self.filters.clear()
        self._parent_sinks = "inherit"
        self._lowest_level = LogLevel.TRACE

    def reset_descendants(self) -> None:
        """Restore defaults on this node and every live descendant."""
        for child in list(self.children.values()):
            child.reset_descendants()
        self.reset()

    # ── Navigation ────────────────────────────────────────────────

    def get_child(self, subcategory: str | Sequence[Any]) -> "LoggerImpl":
        node = self
        for name in normalize_category(subcategory):
            node = node._child(name)
        return node

    def _child(self, name: str) -> "LoggerImpl":
        child = self.children.get(name)
        if child is None:
            with LoggerImpl._lock:
                child = self.children.get(name)
                if child is None:
                    child = LoggerImpl(self, self.category + (name,))
                    self.children[name] = child
        return child

    def bind(self, properties: Optional[Properties] = None, **kwargs: Any) -> "ContextLogger":
        """Logger that adds ``properties`` to every record it emits."""
        return ContextLogger(self, {**(properties or {}), **kwargs})

    # ── Resolution ────────────────────────────────────────────────

    def filter(self, record: LogRecord) -> bool:
        for f in self.filters:
            if not f(record):
                return False
        if self.filters:
            return True
        return self.parent.filter(record) if self.parent is not None else True

    def get_sinks(self, level: LogLevel | str) -> Iterator[Sink]:
        """Sinks a record at ``level`` would reach: inherited first, then own."""
        level = resolve_level(level)
        if self._lowest_level is None or level < self._lowest_level:
            return
        if self.parent is not None and self._parent_sinks == "inherit":
            yield from self.parent.get_sinks(level)
        yield from tuple(self.sinks)

    def is_enabled_for(self, level: LogLevel | str) -> bool:
        for _ in self.get_sinks(level):
            return True
        return False

    def _admits(self, level: LogLevel) -> bool:
        return self._lowest_level is not None and level >= self._lowest_level

    # ── Emission ──────────────────────────────────────────────────

    def emit(self, record: LogRecord, bypass_sinks: Optional[Sequence[Sink]] = None) -> None:
        """Deliver a prebuilt record through this node's pipeline."""
        if record.category is None:
            record = record.replace(category=self.category)
        if not self._admits(record.level) or not self.filter(record):
            return

        for sink in self.get_sinks(record.level):
            if bypass_sinks and any(sink is skipped for skipped in bypass_sinks):
                continue
            try:
                sink(record)
            except Exception as error:
                # Never let sink failure crash the caller
                _report_sink_failure(sink, error, record, bypass_sinks)

    def log(
        self,
        level: LogLevel | str,
        raw_message: str,
        properties: PropertiesLike = None,
        bypass_sinks: Optional[Sequence[Sink]] = None,
    ) -> None:
        """Parse ``raw_message`` against ``properties`` and emit the record."""
        level = resolve_level(level)
        if not self._admits(level):
            return
        merged = _merge_properties(_implicit_context(), properties)
        if isinstance(merged, Deferred):
            message: Any = Deferred(
                lambda: tuple(parse_message_template(raw_message, merged.get()))
            )
        else:
            message = parse_message_template(raw_message, merged)

        record = LogRecord(
            category=self.category,
            level=level,
            message=message,
            raw_message=raw_message,
            timestamp=_now(),
            properties=merged,
        )
        self.emit(record, bypass_sinks)

    def log_lazily(
        self,
        level: LogLevel | str,
        callback: Callable[[Callable[..., list]], Sequence[Any]],
        properties: Optional[Properties] = None,
    ) -> None:
        """
        Emit a record whose message is built only when a sink reads it.

        ``callback`` receives ``prefix(fragments, *values)`` and returns its
        result:

            log.log_lazily("debug", lambda l: l(["State: ", ""], dump(state)))
        """
        level = resolve_level(level)
        if not self._admits(level):
            return

        def build() -> tuple[tuple[Any, ...], tuple[str, ...]]:
            captured: list[tuple[str, ...]] = []

            def prefix(fragments: Sequence[str], *values: Any) -> list[Any]:
                captured.append(tuple(fragments))
                return render_message(fragments, values)

            message = callback(prefix)
            if not captured:
                raise TypeError("No log record was made.")
            return tuple(message), captured[-1]

        built = Deferred(build)
        record = LogRecord(
            category=self.category,
            level=level,
            message=Deferred(lambda: built.get()[0]),
            raw_message=Deferred(lambda: built.get()[1]),
            timestamp=_now(),
            properties=_merge_properties(_implicit_context(), properties),
        )
        self.emit(record)

    def log_template(
        self,
        level: LogLevel | str,
        fragments: Sequence[str],
        values: Sequence[Any],
        properties: Optional[Properties] = None,
    ) -> None:
        """
        Emit fragments interleaved with positional values, no placeholder parsing.

        Raises ``TypeError`` unless there is exactly one more fragment than
        values, whether or not the level is enabled.
        """
        level = resolve_level(level)
        message = render_message(fragments, values)
        if not self._admits(level):
            return
        record = LogRecord(
            category=self.category,
            level=level,
            message=message,
            raw_message=tuple(fragments),
            timestamp=_now(),
            properties=_merge_properties(_implicit_context(), properties),
        )
        self.emit(record)

    def __repr__(self) -> str:
        return f"LoggerImpl(category={self.category!r})"


# ── Context-bound loggers ─────────────────────────────────────────


class ContextLogger(_LevelMethods):
    """
    A logger node plus a fixed property bag.

    Bound properties sit underneath every record's own properties; the
    record's keys win on conflict. Lazy values in the bag are evaluated per
    record, when a sink reads the properties.
    """

    def __init__(self, logger: LoggerImpl, properties: Properties) -> None:
        self.logger = logger
        self.properties = dict(properties)

    @property
    def category(self) -> tuple[str, ...]:
        return self.logger.category

    @property
    def parent(self) -> Optional[LoggerImpl]:
        return self.logger.parent

    def get_child(self, subcategory: str | Sequence[Any]) -> "ContextLogger":
        return ContextLogger(self.logger.get_child(subcategory), self.properties)

    def bind(self, properties: Optional[Properties] = None, **kwargs: Any) -> "ContextLogger":
        return ContextLogger(self.logger, {**self.properties, **(properties or {}), **kwargs})

    def is_enabled_for(self, level: LogLevel | str) -> bool:
        return self.logger.is_enabled_for(level)

    def log(
        self,
        level: LogLevel | str,
        raw_message: str,
        properties: PropertiesLike = None,
        bypass_sinks: Optional[Sequence[Sink]] = None,
    ) -> None:
        bound = self.properties
        if callable(properties):
            thunk = properties
            self.logger.log(level, raw_message, lambda: {**bound, **thunk()}, bypass_sinks)
        else:
            self.logger.log(level, raw_message, {**bound, **(properties or {})}, bypass_sinks)

    def log_lazily(self, level, callback, properties: Optional[Properties] = None) -> None:
        self.logger.log_lazily(level, callback, {**self.properties, **(properties or {})})

    def log_template(self, level, fragments, values, properties: Optional[Properties] = None) -> None:
        self.logger.log_template(
            level, fragments, values, {**self.properties, **(properties or {})}
        )

    def emit(self, record: LogRecord, bypass_sinks: Optional[Sequence[Sink]] = None) -> None:
        bound = self.properties
        original = record
        stamped = record.replace(
            properties=Deferred(lambda: {**resolve_lazy(bound), **original.properties})
        )
        self.logger.emit(stamped, bypass_sinks)

    def __repr__(self) -> str:
        return f"ContextLogger(category={self.category!r}, properties={self.properties!r})"


Logger = Union[LoggerImpl, ContextLogger]


# ── Module-level helpers ──────────────────────────────────────────


def get_logger(category: str | Sequence[Any] = ()) -> LoggerImpl:
    """
    The logger for ``category``.

        get_logger()                 # root
        get_logger("app")            # ("app",)
        get_logger(["app", "db"])    # ("app", "db")
    """
    return LoggerImpl.get_logger(category)


def get_meta_logger() -> LoggerImpl:
    """The logger the library reports its own problems on."""
    return LoggerImpl.get_logger(META_CATEGORY)


def _implicit_context() -> Properties:
    storage = LoggerImpl.get_logger().context_local_storage
    if storage is None:
        return {}
    return storage.get_store() or {}


def _report_sink_failure(
    sink: Sink,
    error: Exception,
    record: LogRecord,
    bypass_sinks: Optional[Sequence[Sink]],
) -> None:
    bypass = (*(bypass_sinks or ()), sink)
    get_meta_logger().log(
        LogLevel.FATAL,
        "Failed to emit a log record to sink {sink}: {error}",
        {"sink": sink, "error": error, "record": record},
        bypass,
    )
