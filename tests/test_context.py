"""
Tests for ambient context properties.

Covers:
- with_context() merging into records
- Nesting and precedence against explicit properties
- Isolation between asyncio tasks and threads
- Warning when no storage is configured
"""

import asyncio
import threading

import pytest

from logtape.config import configure_sync
from logtape.context import ContextLocalStorage, with_context
from logtape.core import get_logger, get_meta_logger
from logtape.records import LogLevel, lazy
from logtape.sinks import RingBufferSink


@pytest.fixture
def ring():
    ring = RingBufferSink()
    configure_sync({
        "sinks": {"ring": ring},
        "loggers": [
            {"category": "app", "sinks": ["ring"]},
            {"category": ["logtape", "meta"], "sinks": [], "lowest_level": "warning"},
        ],
        "context_local_storage": ContextLocalStorage(),
    })
    return ring


class TestContextLocalStorage:
    def test_empty_by_default(self):
        assert ContextLocalStorage().get_store() is None

    def test_run(self):
        storage = ContextLocalStorage()
        seen = storage.run({"a": 1}, storage.get_store)
        assert seen == {"a": 1}
        assert storage.get_store() is None

    def test_scope_copies_store(self):
        storage = ContextLocalStorage()
        store = {"a": 1}
        with storage.scope(store):
            store["a"] = 2
            assert storage.get_store() == {"a": 1}


class TestWithContext:
    def test_properties_merged(self, ring):
        log = get_logger("app")
        with with_context(request_id="r1"):
            log.info("Handling {request_id}")
        record = ring.records[0]
        assert record.properties == {"request_id": "r1"}
        assert record.message == ("Handling ", "r1", "")

    def test_cleared_after_block(self, ring):
        log = get_logger("app")
        with with_context(request_id="r1"):
            pass
        log.info("outside")
        assert ring.records[0].properties == {}

    def test_nesting(self, ring):
        log = get_logger("app")
        with with_context({"a": 1, "b": 1}):
            with with_context(b=2, c=3):
                log.info("inner")
            log.info("outer")
        inner, outer = ring.records
        assert inner.properties == {"a": 1, "b": 2, "c": 3}
        assert outer.properties == {"a": 1, "b": 1}

    def test_explicit_properties_win(self, ring):
        log = get_logger("app")
        with with_context(user="ambient", trace="t1"):
            log.info("x", user="explicit")
        assert ring.records[0].properties == {"user": "explicit", "trace": "t1"}

    def test_bound_properties_win_over_ambient(self, ring):
        log = get_logger("app").bind(user="bound")
        with with_context(user="ambient"):
            log.info("x")
        assert ring.records[0].properties["user"] == "bound"

    def test_lazy_ambient_values(self, ring):
        log = get_logger("app")
        with with_context(now=lazy(lambda: "resolved")):
            log.info("{now}")
        assert ring.records[0].message == ("", "resolved", "")

    def test_thread_starts_without_context(self, ring):
        log = get_logger("app")

        def worker():
            log.info("from thread")

        with with_context(request_id="r1"):
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join()
        assert ring.records[0].properties == {}

    @pytest.mark.asyncio
    async def test_task_isolation(self, ring):
        log = get_logger("app")

        async def handle(request_id, delay):
            with with_context(request_id=request_id):
                await asyncio.sleep(delay)
                log.info("done")

        await asyncio.gather(handle("a", 0.02), handle("b", 0.01))
        assert [r.properties["request_id"] for r in ring.records] == ["b", "a"]


class TestWithoutStorage:
    def test_warns_on_meta_logger(self):
        meta = get_meta_logger()
        ring = RingBufferSink()
        meta.sinks.append(ring)

        log = get_logger("app")
        log.sinks.append(RingBufferSink())
        with with_context(request_id="r1"):
            log.info("no context")

        assert len(ring.records) == 1
        warning = ring.records[0]
        assert warning.level is LogLevel.WARNING
        assert "Context-local storage is not configured" in warning.raw_message
