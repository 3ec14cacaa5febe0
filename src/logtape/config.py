"""
Configuration installer.

Validates a configuration with pydantic, then wires it into the logger
tree: sinks and filters are attached to the configured categories and
registered for disposal, which happens exactly once on reset (and at
interpreter exit).

Usage:
    configure_sync({
        "sinks": {"console": get_console_sink(), "memory": RingBufferSink()},
        "filters": {"no_debug": "info"},
        "loggers": [
            {"category": "app", "sinks": ["console"], "lowest_level": "debug"},
            {"category": ["app", "audit"], "sinks": ["memory"], "filters": ["no_debug"]},
        ],
    })

    await configure(config)   # async variant; disposes async sinks with aclose()
"""

from __future__ import annotations

import asyncio
import atexit
import threading
from collections.abc import Mapping
from typing import Any, Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from logtape.core import META_CATEGORY, LoggerImpl, get_meta_logger, normalize_category
from logtape.filters import to_filter
from logtape.records import LogLevel, is_log_level, resolve_level
from logtape.sinks import get_console_sink


class ConfigError(Exception):
    """Raised when a configuration cannot be installed."""


# ═══════════════════════════════════════════════════════════════════
#  Schemas
# ═══════════════════════════════════════════════════════════════════

class LoggerConfig(BaseModel):
    """One category's sinks, filters and threshold."""
    category: tuple[str, ...]
    sinks: list[str] = Field(default_factory=list)
    filters: list[str] = Field(default_factory=list)
    parent_sinks: Literal["inherit", "override"] = "inherit"
    lowest_level: Optional[LogLevel] = LogLevel.TRACE

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value: Any) -> tuple[str, ...]:
        try:
            return normalize_category(value)
        except TypeError as e:
            raise ValueError(str(e)) from e

    @field_validator("lowest_level", mode="before")
    @classmethod
    def _strict_level(cls, value: Any) -> Optional[LogLevel]:
        if value is None:
            return None
        try:
            return resolve_level(value)
        except TypeError as e:
            raise ValueError(str(e)) from e


class Config(BaseModel):
    """
    Complete logging configuration.

    ``sinks`` and ``filters`` map ids to callables; loggers refer to them
    by id. A filter entry may also be a level token (or ``None``).
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    sinks: dict[str, Any]
    filters: dict[str, Any] = Field(default_factory=dict)
    loggers: list[LoggerConfig] = Field(default_factory=list)
    context_local_storage: Optional[Any] = None
    reset: bool = False

    @field_validator("sinks")
    @classmethod
    def _callable_sinks(cls, value: dict[str, Any]) -> dict[str, Any]:
        for sink_id, sink in value.items():
            if not callable(sink):
                raise ValueError(f"Sink {sink_id!r} is not callable")
        return value

    @field_validator("filters")
    @classmethod
    def _filter_like(cls, value: dict[str, Any]) -> dict[str, Any]:
        for filter_id, f in value.items():
            if f is not None and not callable(f) and not is_log_level(f):
                raise ValueError(f"Filter {filter_id!r} is neither callable nor a log level")
        return value

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Config":
        """Load and validate from a dict."""
        return cls.model_validate(dict(data))


# ═══════════════════════════════════════════════════════════════════
#  Installer state
# ═══════════════════════════════════════════════════════════════════

_state_lock = threading.RLock()
_current_config: Optional[Config] = None
_strong_refs: list[LoggerImpl] = []     # configured nodes stay alive
_disposables: list[Any] = []            # disposed with close()
_async_disposables: list[Any] = []      # disposed with aclose()
_atexit_registered = False


def get_config() -> Optional[Config]:
    """The installed configuration, or ``None``."""
    return _current_config


def _coerce(config: Config | Mapping[str, Any]) -> Config:
    if isinstance(config, Config):
        return config
    try:
        return Config.from_dict(config)
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def _add_unique(registry: list[Any], obj: Any) -> None:
    # Identity, not equality: bound methods and lambdas are valid sinks
    if not any(existing is obj for existing in registry):
        registry.append(obj)


def _is_meta_category(category: tuple[str, ...]) -> bool:
    return category in ((), ("logtape",), META_CATEGORY)


# ── Install ───────────────────────────────────────────────────────


async def configure(config: Config | Mapping[str, Any]) -> None:
    """
    Install ``config``.

    Raises:
        ConfigError: already configured without ``reset=True``, unknown
            sink or filter id, or duplicate category.
    """
    config = _coerce(config)
    if _current_config is not None and not config.reset:
        raise ConfigError(
            "Already configured; if you want to reset, turn on the reset flag."
        )
    await reset()
    try:
        _install(config, allow_async=True)
    except ConfigError:
        await reset()
        raise


def configure_sync(config: Config | Mapping[str, Any]) -> None:
    """
    Install ``config`` without an event loop.

    Raises:
        ConfigError: as ``configure()``, and also when a sink or filter can
            only be disposed asynchronously, or async disposables from an
            earlier ``configure()`` are still registered.
    """
    config = _coerce(config)
    if _current_config is not None and not config.reset:
        raise ConfigError(
            "Already configured; if you want to reset, turn on the reset flag."
        )
    if _async_disposables:
        raise ConfigError(
            "Previously configured async disposables are still active. "
            "Use configure() instead or explicitly dispose them using dispose()."
        )
    reset_sync()
    try:
        _install(config, allow_async=False)
    except ConfigError:
        reset_sync()
        raise


def _install(config: Config, allow_async: bool) -> None:
    global _current_config, _atexit_registered

    with _state_lock:
        _current_config = config
        meta_configured = False
        seen: set[tuple[str, ...]] = set()

        for cfg in config.loggers:
            if _is_meta_category(cfg.category):
                meta_configured = True
            if cfg.category in seen:
                raise ConfigError(
                    f"Duplicate logger configuration for category: {list(cfg.category)}. "
                    f"Each category can only be configured once."
                )
            seen.add(cfg.category)

            logger = LoggerImpl.get_logger(cfg.category)
            for sink_id in cfg.sinks:
                if sink_id not in config.sinks:
                    raise ConfigError(f"Sink not found: {sink_id}.")
                logger.sinks.append(config.sinks[sink_id])
            logger.parent_sinks = cfg.parent_sinks
            logger.lowest_level = cfg.lowest_level
            for filter_id in cfg.filters:
                if filter_id not in config.filters:
                    raise ConfigError(f"Filter not found: {filter_id}.")
                logger.filters.append(to_filter(config.filters[filter_id]))
            _strong_refs.append(logger)

        LoggerImpl.get_logger().context_local_storage = config.context_local_storage

        _register_disposables(config.sinks.values(), allow_async)
        _register_disposables(config.filters.values(), allow_async)

        if not _atexit_registered:
            atexit.register(_dispose_at_exit)
            _atexit_registered = True

        if not meta_configured:
            meta = get_meta_logger()
            meta.sinks.append(get_console_sink())
            meta.lowest_level = LogLevel.WARNING
            _strong_refs.append(meta)


def _register_disposables(objects: Iterable[Any], allow_async: bool) -> None:
    for obj in objects:
        if obj is None or isinstance(obj, str):
            continue
        has_close = callable(getattr(obj, "close", None))
        has_aclose = callable(getattr(obj, "aclose", None))
        if has_aclose and not has_close and not allow_async:
            raise ConfigError(
                "Async disposables cannot be used with configure_sync()."
            )
        if allow_async and has_aclose:
            _add_unique(_async_disposables, obj)
        elif has_close:
            _add_unique(_disposables, obj)


# ── Reset & dispose ───────────────────────────────────────────────


async def reset() -> None:
    """Dispose everything configured and restore every logger's defaults."""
    await dispose()
    _reset_tree()


def reset_sync() -> None:
    """
    Synchronous ``reset()``.

    Raises:
        ConfigError: async-only disposables are registered.
    """
    dispose_sync()
    _reset_tree()


def _reset_tree() -> None:
    global _current_config
    with _state_lock:
        root = LoggerImpl.get_logger()
        root.reset_descendants()
        root.context_local_storage = None
        _strong_refs.clear()
        _current_config = None


async def dispose() -> None:
    """
    Dispose every registered sink and filter exactly once.

    Every disposer runs; the first error is re-raised afterwards.
    """
    errors = _dispose_sync_disposables()
    with _state_lock:
        pending = list(_async_disposables)
        _async_disposables.clear()
    results = await asyncio.gather(
        *(_aclose(obj) for obj in pending), return_exceptions=True
    )
    errors.extend(r for r in results if isinstance(r, BaseException))
    if errors:
        raise errors[0]


def dispose_sync() -> None:
    """
    Dispose every synchronously disposable sink and filter exactly once.

    Raises:
        ConfigError: async-only disposables are registered.
    """
    if _async_disposables:
        raise ConfigError(
            "Async disposables are still active. Use dispose() or reset() instead."
        )
    errors = _dispose_sync_disposables()
    if errors:
        raise errors[0]


def _dispose_sync_disposables() -> list[BaseException]:
    with _state_lock:
        pending = list(_disposables)
        _disposables.clear()
    errors: list[BaseException] = []
    for obj in pending:
        try:
            obj.close()
        except Exception as e:
            errors.append(e)
    return errors


async def _aclose(obj: Any) -> None:
    await obj.aclose()


def _dispose_at_exit() -> None:
    if _async_disposables:
        asyncio.run(dispose())
    else:
        dispose_sync()
