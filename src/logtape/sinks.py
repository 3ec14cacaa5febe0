"""
Sinks (output destinations) and sink combinators.

A sink is any callable ``record -> None``. It may also expose ``close()``
and/or ``aclose()``; the configuration installer disposes configured sinks
exactly once on reset.

Stock sinks:
  - ConsoleSink:    formatted lines, ERROR+ to stderr, the rest to stdout
  - StreamSink:     formatted lines to any text stream
  - RingBufferSink: last N records in memory, for inspection and tests

Combinators:
  - with_filter(sink, filter):   drop records the filter rejects
  - from_async_sink(coroutine):  sequential delivery to an async handler
"""

from __future__ import annotations

import asyncio
import sys
import threading
from collections import deque
from typing import Any, Awaitable, Callable, Mapping, Optional, TextIO

from logtape.filters import FilterLike, to_filter
from logtape.formatters import TextFormatter, default_text_formatter
from logtape.records import LogLevel, LogRecord, resolve_level

Sink = Callable[[LogRecord], None]
AsyncSink = Callable[[LogRecord], Awaitable[None]]


def with_filter(sink: Sink, filter: FilterLike) -> Sink:
    """Sink that forwards only the records ``filter`` accepts."""
    predicate = to_filter(filter)

    def filtered_sink(record: LogRecord) -> None:
        if predicate(record):
            sink(record)

    return filtered_sink


# ── Async adapter ─────────────────────────────────────────────────


class AsyncSinkAdapter:
    """
    Synchronous face of an asynchronous sink.

    Inside a running event loop every record is scheduled as a task that
    first waits for the previous record's task, so the handler sees records
    one at a time and in arrival order. Outside a loop each record is run to
    completion before the call returns. Handler exceptions are discarded.

    Usage:
        sink = from_async_sink(post_to_collector)
        ...
        await sink.aclose()   # waits for everything scheduled so far
    """

    def __init__(self, async_sink: AsyncSink) -> None:
        self._async_sink = async_sink
        self._last: Optional[asyncio.Future] = None

    def __call__(self, record: LogRecord) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._deliver(None, record))
            return
        self._last = loop.create_task(self._deliver(self._last, record))

    async def _deliver(self, previous: Optional[asyncio.Future], record: LogRecord) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            await self._async_sink(record)
        except Exception:
            pass  # delivery is best effort

    async def aclose(self) -> None:
        """Wait until every scheduled record has been handled. Idempotent."""
        while self._last is not None and not self._last.done():
            await asyncio.wait([self._last])

    async def __aenter__(self) -> "AsyncSinkAdapter":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def from_async_sink(async_sink: AsyncSink) -> AsyncSinkAdapter:
    return AsyncSinkAdapter(async_sink)


# ── Console / stream sinks ────────────────────────────────────────


class ConsoleSink:
    """
    Writes formatted records to stdout/stderr.
    ERROR+ goes to stderr, everything else to stdout, unless ``streams``
    maps levels elsewhere.
    """

    def __init__(
        self,
        formatter: TextFormatter | None = None,
        stderr_level: LogLevel | str = LogLevel.ERROR,
        streams: Mapping[LogLevel | str, TextIO] | None = None,
    ):
        self.formatter = formatter or default_text_formatter
        self.stderr_level = resolve_level(stderr_level)
        self.streams = {resolve_level(k): v for k, v in (streams or {}).items()}

    def __call__(self, record: LogRecord) -> None:
        formatted = self.formatter(record)
        print(formatted.rstrip("\n"), file=self._stream_for(record.level), flush=True)

    def _stream_for(self, level: LogLevel) -> TextIO:
        if level in self.streams:
            return self.streams[level]
        # Resolved per call so redirected sys.stdout/sys.stderr are honoured
        return sys.stderr if level >= self.stderr_level else sys.stdout


def get_console_sink(
    formatter: TextFormatter | None = None,
    stderr_level: LogLevel | str = LogLevel.ERROR,
    streams: Mapping[LogLevel | str, TextIO] | None = None,
) -> ConsoleSink:
    return ConsoleSink(formatter=formatter, stderr_level=stderr_level, streams=streams)


class StreamSink:
    """Writes formatted records to a text stream. ``close()`` flushes it."""

    def __init__(self, stream: TextIO, formatter: TextFormatter | None = None):
        self.stream = stream
        self.formatter = formatter or default_text_formatter
        self._lock = threading.Lock()

    def __call__(self, record: LogRecord) -> None:
        formatted = self.formatter(record)
        with self._lock:
            self.stream.write(formatted)

    def close(self) -> None:
        with self._lock:
            self.stream.flush()


def get_stream_sink(stream: TextIO, formatter: TextFormatter | None = None) -> StreamSink:
    return StreamSink(stream, formatter=formatter)


# ── In-memory sink ────────────────────────────────────────────────


class RingBufferSink:
    """
    Ring buffer of the last N records.
    Does not grow unbounded; the oldest record is dropped first.
    """

    def __init__(self, capacity: int = 10000):
        self._buffer: deque[LogRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def __call__(self, record: LogRecord) -> None:
        with self._lock:
            self._buffer.append(record)

    def get_recent(self, n: int = 100, level: LogLevel | str | None = None) -> list[LogRecord]:
        """Most recent ``n`` records, optionally only those at or above ``level``."""
        with self._lock:
            records = list(self._buffer)

        if level is not None:
            threshold = resolve_level(level)
            records = [r for r in records if r.level >= threshold]

        return records[-n:] if n > 0 else []

    @property
    def records(self) -> list[LogRecord]:
        with self._lock:
            return list(self._buffer)

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    @property
    def count(self) -> int:
        return len(self._buffer)
