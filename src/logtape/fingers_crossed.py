"""
Fingers-crossed buffering sink.

Keeps low-severity records in memory and forwards nothing until a record
at or above the trigger level arrives; then the buffered history is
flushed ahead of the trigger and the buffer switches to pass-through.
Quiet runs cost a bounded buffer, failing runs get the full story.

Usage:
    sink = fingers_crossed(get_console_sink(), trigger_level="error")

    # one buffer per request, expired after a minute of silence
    sink = fingers_crossed(
        console,
        isolate_by_category="descendant",
        isolate_by_context=ContextIsolation(["request_id"], buffer_ttl_ms=60_000),
    )
    ...
    sink.close()
"""

from __future__ import annotations

import heapq
import math
import threading
import time
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from logtape.records import LogLevel, LogRecord, resolve_level
from logtape.sinks import Sink

CategoryMatcher = Callable[[Sequence[str], Sequence[str]], bool]
IsolationMode = Union[str, CategoryMatcher]

_monotonic = time.monotonic


@dataclass(frozen=True)
class ContextIsolation:
    """Per-context buffering: one bucket per distinct projection of ``keys``."""
    keys: tuple[str, ...]
    buffer_ttl_ms: Optional[float] = None
    cleanup_interval_ms: float = 30000
    max_contexts: Optional[int] = None

    def __post_init__(self) -> None:
        keys = (self.keys,) if isinstance(self.keys, str) else tuple(self.keys)
        object.__setattr__(self, "keys", keys)

    @property
    def has_ttl(self) -> bool:
        return self.buffer_ttl_ms is not None and self.buffer_ttl_ms > 0

    @property
    def has_lru(self) -> bool:
        return self.max_contexts is not None and self.max_contexts > 0


@dataclass
class _Bucket:
    category: tuple[str, ...]
    context: tuple
    records: deque
    last_access: float = field(default_factory=lambda: _monotonic())


# ── Category matching ─────────────────────────────────────────────


def is_descendant(parent: Sequence[str], child: Sequence[str]) -> bool:
    """``child`` equals ``parent`` or lies below it. Empty categories never match."""
    if not parent or not child or len(parent) > len(child):
        return False
    return tuple(child[:len(parent)]) == tuple(parent)


def is_ancestor(child: Sequence[str], parent: Sequence[str]) -> bool:
    """``parent`` equals ``child`` or lies above it. Empty categories never match."""
    return is_descendant(parent, child)


_MATCHERS: dict[str, CategoryMatcher] = {
    "descendant": is_descendant,
    "ancestor": is_ancestor,
    "both": lambda trigger, buffered: (
        is_descendant(trigger, buffered) or is_ancestor(trigger, buffered)
    ),
}


# ── Context projection ────────────────────────────────────────────

_ABSENT = ("absent",)


def canonical_value(value: Any, _active: Optional[set[int]] = None) -> tuple:
    """
    Hashable, type-tagged projection of a property value.

    Structurally equal values map to equal projections; ``0``, ``False``,
    ``""`` and ``None`` all stay distinct. A container reached again while
    it is still being projected becomes a ``("cycle", type)`` marker.
    """
    if value is None:
        return ("none",)
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return ("nan",)
        return ("number", value)
    if isinstance(value, str):
        return ("str", value)

    attrs = None
    if not isinstance(value, (Mapping, list, tuple)):
        attrs = getattr(value, "__dict__", None)
        if not isinstance(attrs, Mapping):
            return ("repr", type(value).__qualname__, repr(value))

    if _active is None:
        _active = set()
    marker = id(value)
    if marker in _active:
        return ("cycle", type(value).__qualname__)
    _active.add(marker)
    try:
        if isinstance(value, Mapping):
            items = sorted((str(k), canonical_value(v, _active)) for k, v in value.items())
            return ("map", tuple(items))
        if isinstance(value, (list, tuple)):
            return ("seq", tuple(canonical_value(v, _active) for v in value))
        return ("object", type(value).__qualname__, canonical_value(attrs, _active))
    finally:
        _active.discard(marker)


def _context_projection(properties: Mapping[str, Any], keys: Sequence[str]) -> tuple:
    return tuple(
        canonical_value(properties[key]) if key in properties else _ABSENT
        for key in keys
    )


def _chronological(record: LogRecord) -> tuple[bool, float]:
    ts = record.timestamp
    return (math.isnan(ts), 0.0 if math.isnan(ts) else ts)


# ── Sink ──────────────────────────────────────────────────────────


class FingersCrossedSink:
    """
    The buffering engine behind ``fingers_crossed()``.

    Without isolation there is a single bucket. With category and/or
    context isolation each (category, context) pair gets its own bucket
    and trigger state; a trigger also flushes the buckets its isolation
    mode relates to it, in timestamp order.
    """

    def __init__(
        self,
        sink: Sink,
        trigger_level: LogLevel,
        buffer_level: Optional[LogLevel],
        max_buffer_size: int,
        category_matcher: Optional[CategoryMatcher],
        context_isolation: Optional[ContextIsolation],
    ):
        self.sink = sink
        self.trigger_level = trigger_level
        self.buffer_level = buffer_level
        self.max_buffer_size = max_buffer_size
        self.category_matcher = category_matcher
        self.context_isolation = context_isolation
        self._isolated = category_matcher is not None or context_isolation is not None
        self._buckets: dict[tuple, _Bucket] = {}
        self._triggered: set[tuple] = set()
        self._lock = threading.RLock()

    def __call__(self, record: LogRecord) -> None:
        with self._lock:
            key = self._bucket_key(record)

            if key in self._triggered:
                self.sink(record)
                return

            if record.level >= self.trigger_level:
                history = self._take_history(record, key)
                self._triggered.add(key)
                for buffered in history:
                    self.sink(buffered)
                self.sink(record)
                return

            if self.buffer_level is not None and record.level > self.buffer_level:
                self.sink(record)
                return

            self._buffer(key, record)

    # ── Internals ─────────────────────────────────────────────────

    def _bucket_key(self, record: LogRecord) -> tuple:
        if not self._isolated:
            return ()
        category = record.category or ()
        if self.context_isolation is None:
            return (category,)
        return (category, _context_projection(record.properties, self.context_isolation.keys))

    def _take_history(self, record: LogRecord, key: tuple) -> list[LogRecord]:
        """Remove and return every bucket the trigger flushes. Must hold self._lock."""
        if not self._isolated:
            bucket = self._buckets.pop(key, None)
            return list(bucket.records) if bucket is not None else []

        trigger_category = record.category or ()
        trigger_context = key[1] if self.context_isolation is not None else None
        history: list[LogRecord] = []
        for bucket_key, bucket in list(self._buckets.items()):
            if bucket_key != key and not self._related(trigger_category, trigger_context, bucket):
                continue
            history.extend(bucket.records)
            del self._buckets[bucket_key]
            self._triggered.add(bucket_key)
        history.sort(key=_chronological)
        return history

    def _related(self, trigger_category: tuple, trigger_context: Any, bucket: _Bucket) -> bool:
        if self.context_isolation is not None and bucket.context != trigger_context:
            return False
        if self.category_matcher is None:
            return True
        try:
            return bool(self.category_matcher(trigger_category, bucket.category))
        except Exception:
            return False  # a broken matcher only loses this candidate

    def _buffer(self, key: tuple, record: LogRecord) -> None:
        now = _monotonic()
        bucket = self._buckets.get(key)
        if bucket is None:
            isolation = self.context_isolation
            if isolation is not None and isolation.has_lru and len(self._buckets) >= isolation.max_contexts:
                self._evict(len(self._buckets) - isolation.max_contexts + 1)
            bucket = _Bucket(
                category=key[0] if key else (),
                context=key[1] if len(key) > 1 else (),
                records=deque(maxlen=self.max_buffer_size),
                last_access=now,
            )
            self._buckets[key] = bucket
        else:
            bucket.last_access = now
        bucket.records.append(record)

    def _evict(self, count: int) -> None:
        """Drop the ``count`` least recently touched buckets. Must hold self._lock."""
        oldest = heapq.nsmallest(count, self._buckets.items(), key=lambda kv: kv[1].last_access)
        for key, _ in oldest:
            del self._buckets[key]

    # ── Inspection ────────────────────────────────────────────────

    @property
    def bucket_count(self) -> int:
        with self._lock:
            return len(self._buckets)

    @property
    def buffered_count(self) -> int:
        with self._lock:
            return sum(len(b.records) for b in self._buckets.values())


class DisposableFingersCrossedSink(FingersCrossedSink):
    """
    Fingers-crossed sink with TTL expiry and/or LRU eviction of context buckets.

    A daemon thread discards buckets untouched for longer than the TTL.
    ``close()`` stops it; buffered records are dropped, not flushed.
    """

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._stop = threading.Event()
        self._reaper: Optional[threading.Thread] = None
        isolation = self.context_isolation
        if isolation is not None and isolation.has_ttl:
            self._reaper = threading.Thread(
                target=self._reap_loop,
                name="logtape-fingers-crossed-reaper",
                daemon=True,
            )
            self._reaper.start()

    def _reap_loop(self) -> None:
        interval = self.context_isolation.cleanup_interval_ms / 1000
        while not self._stop.wait(interval):
            self.cleanup_expired()

    def cleanup_expired(self) -> int:
        """Discard buckets idle for longer than the TTL. Returns how many."""
        isolation = self.context_isolation
        if isolation is None or not isolation.has_ttl:
            return 0
        ttl = isolation.buffer_ttl_ms / 1000
        now = _monotonic()
        with self._lock:
            expired = [k for k, b in self._buckets.items() if now - b.last_access > ttl]
            for key in expired:
                del self._buckets[key]
        return len(expired)

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    def close(self) -> None:
        """Stop the reaper thread. Idempotent."""
        if self._stop.is_set():
            return
        self._stop.set()
        reaper = self._reaper
        if reaper is not None and reaper is not threading.current_thread():
            reaper.join(timeout=1.0)

    def __enter__(self) -> "DisposableFingersCrossedSink":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def fingers_crossed(
    sink: Sink,
    *,
    trigger_level: LogLevel | str = LogLevel.ERROR,
    buffer_level: LogLevel | str | None = None,
    max_buffer_size: int = 1000,
    isolate_by_category: Optional[IsolationMode] = None,
    isolate_by_context: ContextIsolation | Mapping[str, Any] | None = None,
) -> FingersCrossedSink:
    """
    Wrap ``sink`` so records below ``trigger_level`` wait for a trigger.

    ``buffer_level`` narrows what waits: records at or below it are
    buffered, records between it and the trigger go straight through.
    ``None`` buffers everything below the trigger.

    Raises:
        TypeError: ``trigger_level`` or ``buffer_level`` is not a level.
        ValueError: ``buffer_level`` is not below ``trigger_level``, or
            ``isolate_by_category`` names an unknown mode.
    """
    try:
        trigger = resolve_level(trigger_level)
    except TypeError as e:
        raise TypeError(f"Invalid trigger_level: {trigger_level!r}. {e}") from None

    buffered: Optional[LogLevel] = None
    if buffer_level is not None:
        try:
            buffered = resolve_level(buffer_level)
        except TypeError as e:
            raise TypeError(f"Invalid buffer_level: {buffer_level!r}. {e}") from None
        if buffered >= trigger:
            raise ValueError(
                f"buffer_level ({buffered.token}) must be lower than "
                f"trigger_level ({trigger.token})."
            )

    matcher: Optional[CategoryMatcher] = None
    if isolate_by_category is not None:
        if callable(isolate_by_category):
            matcher = isolate_by_category
        elif isolate_by_category in _MATCHERS:
            matcher = _MATCHERS[isolate_by_category]
        else:
            raise ValueError(
                f"Unknown isolate_by_category mode: {isolate_by_category!r}. "
                f"Valid modes: {', '.join(_MATCHERS)}"
            )

    isolation = isolate_by_context
    if isinstance(isolation, Mapping):
        isolation = ContextIsolation(**isolation)

    options = dict(
        sink=sink,
        trigger_level=trigger,
        buffer_level=buffered,
        max_buffer_size=max(0, max_buffer_size),
        category_matcher=matcher,
        context_isolation=isolation,
    )
    if isolation is not None and (isolation.has_ttl or isolation.has_lru):
        return DisposableFingersCrossedSink(**options)
    return FingersCrossedSink(**options)
