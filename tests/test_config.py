"""
Tests for the configuration installer.

Covers:
- Config / LoggerConfig validation
- configure_sync / configure installation
- Reconfiguration guard and reset flag
- Error paths leave the tree reset
- Disposal exactly once, sync and async
- Default meta logger sink
"""

import gc

import pytest

from logtape.config import (
    Config,
    ConfigError,
    LoggerConfig,
    configure,
    configure_sync,
    dispose,
    get_config,
    reset,
    reset_sync,
)
from logtape.core import get_logger, get_meta_logger
from logtape.records import LogLevel
from logtape.sinks import ConsoleSink, RingBufferSink


class ClosingSink(RingBufferSink):
    def __init__(self):
        super().__init__()
        self.closed = 0

    def close(self):
        self.closed += 1


class AsyncClosingSink(RingBufferSink):
    def __init__(self):
        super().__init__()
        self.aclosed = 0

    async def aclose(self):
        self.aclosed += 1


class DualClosingSink(ClosingSink):
    def __init__(self):
        super().__init__()
        self.aclosed = 0

    async def aclose(self):
        self.aclosed += 1


# ═══════════════════════════════════════════════════════════════════
#  Schemas
# ═══════════════════════════════════════════════════════════════════

class TestSchemas:
    def test_logger_config_defaults(self):
        cfg = LoggerConfig(category="app")
        assert cfg.category == ("app",)
        assert cfg.sinks == []
        assert cfg.parent_sinks == "inherit"
        assert cfg.lowest_level is LogLevel.TRACE

    def test_nested_category(self):
        assert LoggerConfig(category=["a", ["b"]]).category == ("a", "b")

    def test_lowest_level_strict(self):
        assert LoggerConfig(category="a", lowest_level="error").lowest_level is LogLevel.ERROR
        assert LoggerConfig(category="a", lowest_level=None).lowest_level is None
        with pytest.raises(ValueError):
            LoggerConfig(category="a", lowest_level=40)
        with pytest.raises(ValueError):
            LoggerConfig(category="a", lowest_level="ERROR")

    def test_parent_sinks_values(self):
        with pytest.raises(ValueError):
            LoggerConfig(category="a", parent_sinks="replace")

    def test_sinks_must_be_callable(self):
        with pytest.raises(ValueError):
            Config(sinks={"bad": "not a sink"})

    def test_filters_accept_levels_and_callables(self):
        config = Config(sinks={}, filters={"lvl": "info", "fn": lambda r: True, "off": None})
        assert set(config.filters) == {"lvl", "fn", "off"}
        with pytest.raises(ValueError):
            Config(sinks={}, filters={"bad": 42})


# ═══════════════════════════════════════════════════════════════════
#  Installation
# ═══════════════════════════════════════════════════════════════════

class TestConfigureSync:
    def test_installs_sinks_and_levels(self):
        ring = RingBufferSink()
        configure_sync({
            "sinks": {"ring": ring},
            "loggers": [{"category": ["app", "db"], "sinks": ["ring"], "lowest_level": "info"}],
        })

        log = get_logger(["app", "db"])
        log.debug("hidden")
        log.info("shown")
        assert [r.raw_message for r in ring.records] == ["shown"]
        assert log.lowest_level is LogLevel.INFO

    def test_accepts_config_instance(self):
        ring = RingBufferSink()
        configure_sync(Config(sinks={"ring": ring}, loggers=[{"category": "app", "sinks": ["ring"]}]))
        get_logger("app").info("x")
        assert ring.count == 1
        assert isinstance(get_config(), Config)

    def test_parent_sinks_override(self):
        outer, inner = RingBufferSink(), RingBufferSink()
        configure_sync({
            "sinks": {"outer": outer, "inner": inner},
            "loggers": [
                {"category": "app", "sinks": ["outer"]},
                {"category": ["app", "quiet"], "sinks": ["inner"], "parent_sinks": "override"},
            ],
        })
        get_logger(["app", "quiet"]).info("x")
        assert outer.count == 0
        assert inner.count == 1

    def test_filters_by_token_and_callable(self):
        ring = RingBufferSink()
        configure_sync({
            "sinks": {"ring": ring},
            "filters": {
                "warnings": "warning",
                "no_secrets": lambda r: "secret" not in r.properties,
            },
            "loggers": [{"category": "app", "sinks": ["ring"], "filters": ["warnings", "no_secrets"]}],
        })
        log = get_logger("app")
        log.info("too low")
        log.error("leak", secret=1)
        log.error("kept")
        assert [r.raw_message for r in ring.records] == ["kept"]

    def test_configured_nodes_survive_collection(self):
        ring = RingBufferSink()
        configure_sync({"sinks": {"ring": ring}, "loggers": [{"category": ["deep", "node"], "sinks": ["ring"]}]})
        gc.collect()
        get_logger(["deep", "node"]).info("x")
        assert ring.count == 1

    def test_already_configured(self):
        configure_sync({"sinks": {}})
        with pytest.raises(ConfigError, match="Already configured"):
            configure_sync({"sinks": {}})

    def test_reset_flag(self):
        first, second = RingBufferSink(), RingBufferSink()
        configure_sync({"sinks": {"s": first}, "loggers": [{"category": "app", "sinks": ["s"]}]})
        configure_sync({"sinks": {"s": second}, "loggers": [{"category": "app", "sinks": ["s"]}], "reset": True})
        get_logger("app").info("x")
        assert first.count == 0
        assert second.count == 1

    def test_invalid_shape_is_config_error(self):
        with pytest.raises(ConfigError):
            configure_sync({"sinks": {}, "loggers": [{"category": "app", "lowest_level": 20}]})


class TestConfigErrors:
    def test_unknown_sink(self):
        with pytest.raises(ConfigError, match="Sink not found: missing."):
            configure_sync({"sinks": {}, "loggers": [{"category": "app", "sinks": ["missing"]}]})

    def test_unknown_filter(self):
        with pytest.raises(ConfigError, match="Filter not found: missing."):
            configure_sync({"sinks": {}, "loggers": [{"category": "app", "filters": ["missing"]}]})

    def test_duplicate_category(self):
        with pytest.raises(ConfigError, match="Duplicate logger configuration"):
            configure_sync({
                "sinks": {},
                "loggers": [{"category": ["a", "b"]}, {"category": ["a", "b"]}],
            })

    def test_failed_install_is_rolled_back(self):
        ring = RingBufferSink()
        with pytest.raises(ConfigError):
            configure_sync({
                "sinks": {"ring": ring},
                "loggers": [
                    {"category": "app", "sinks": ["ring"]},
                    {"category": "other", "sinks": ["missing"]},
                ],
            })
        log = get_logger("app")
        assert log.sinks == []
        assert get_config() is None
        # a fresh configuration is accepted without reset=True
        configure_sync({"sinks": {}})

    def test_async_disposable_rejected_in_sync_mode(self):
        with pytest.raises(ConfigError, match="Async disposables cannot be used"):
            configure_sync({"sinks": {"async": AsyncClosingSink()}})


# ═══════════════════════════════════════════════════════════════════
#  Disposal
# ═══════════════════════════════════════════════════════════════════

class TestDisposal:
    def test_close_called_once(self):
        sink = ClosingSink()
        configure_sync({
            "sinks": {"a": sink, "b": sink},
            "loggers": [{"category": "app", "sinks": ["a", "b"]}],
        })
        reset_sync()
        reset_sync()
        assert sink.closed == 1

    def test_filters_disposed(self):
        class ClosingFilter:
            closed = 0

            def __call__(self, record):
                return True

            def close(self):
                self.closed += 1

        f = ClosingFilter()
        configure_sync({"sinks": {}, "filters": {"f": f}})
        reset_sync()
        assert f.closed == 1

    @pytest.mark.asyncio
    async def test_async_prefers_aclose(self):
        sink = DualClosingSink()
        await configure({"sinks": {"s": sink}})
        await reset()
        assert sink.aclosed == 1
        assert sink.closed == 0

    @pytest.mark.asyncio
    async def test_async_only_sink(self):
        sink = AsyncClosingSink()
        await configure({"sinks": {"s": sink}, "loggers": [{"category": "app", "sinks": ["s"]}]})
        get_logger("app").info("x")
        assert sink.count == 1

        with pytest.raises(ConfigError, match="Async disposables are still active"):
            reset_sync()
        await dispose()
        await dispose()
        assert sink.aclosed == 1
        await reset()

    @pytest.mark.asyncio
    async def test_configure_sync_after_async(self):
        await configure({"sinks": {"s": AsyncClosingSink()}})
        with pytest.raises(ConfigError, match="Already configured"):
            configure_sync({"sinks": {}})
        with pytest.raises(ConfigError, match="still active"):
            configure_sync({"sinks": {}, "reset": True})
        await reset()

    @pytest.mark.asyncio
    async def test_async_reconfigure_guard(self):
        await configure({"sinks": {}})
        with pytest.raises(ConfigError, match="Already configured"):
            await configure({"sinks": {}})
        await configure({"sinks": {}, "reset": True})
        await reset()

    def test_dispose_error_reported_after_all_disposers(self):
        class Broken:
            def __call__(self, record):
                pass

            def close(self):
                raise RuntimeError("close failed")

        healthy = ClosingSink()
        configure_sync({"sinks": {"broken": Broken(), "healthy": healthy}})
        with pytest.raises(RuntimeError, match="close failed"):
            reset_sync()
        assert healthy.closed == 1
        reset_sync()


# ═══════════════════════════════════════════════════════════════════
#  Meta logger
# ═══════════════════════════════════════════════════════════════════

class TestMetaLogger:
    def test_default_console_sink(self):
        configure_sync({"sinks": {}})
        meta = get_meta_logger()
        assert meta.lowest_level is LogLevel.WARNING
        assert len(meta.sinks) == 1
        assert isinstance(meta.sinks[0], ConsoleSink)

    def test_explicit_meta_configuration(self):
        ring = RingBufferSink()
        configure_sync({
            "sinks": {"ring": ring},
            "loggers": [{"category": ["logtape", "meta"], "sinks": ["ring"]}],
        })
        meta = get_meta_logger()
        assert meta.sinks == [ring]
        assert meta.lowest_level is LogLevel.TRACE

    def test_root_configuration_counts_as_meta(self):
        ring = RingBufferSink()
        configure_sync({"sinks": {"ring": ring}, "loggers": [{"category": [], "sinks": ["ring"]}]})
        assert get_meta_logger().sinks == []

    def test_sink_failure_reported(self, capsys):
        def broken(record):
            raise RuntimeError("disk full")

        configure_sync({"sinks": {"broken": broken}, "loggers": [{"category": "app", "sinks": ["broken"]}]})
        get_logger("app").info("x")
        err = capsys.readouterr().err
        assert "[FTL] logtape·meta: Failed to emit a log record to sink" in err
        assert "disk full" in err
