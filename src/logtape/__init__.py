"""
logtape: structured logging facade.

Libraries log through a category tree; applications decide, once, where
records go. Nothing is printed until ``configure()`` attaches sinks.
"""

from logtape.records import (
    Deferred,
    LazyValue,
    LogLevel,
    LogRecord,
    compare_log_level,
    get_log_levels,
    is_lazy,
    is_log_level,
    lazy,
    level_name,
    parse_log_level,
)
from logtape.template import parse_message_template, render_message
from logtape.filters import Filter, FilterLike, get_level_filter, to_filter
from logtape.core import (
    CallShape,
    ContextLogger,
    Logger,
    LoggerImpl,
    META_CATEGORY,
    get_logger,
    get_meta_logger,
)
from logtape.sinks import (
    AsyncSink,
    AsyncSinkAdapter,
    ConsoleSink,
    RingBufferSink,
    Sink,
    StreamSink,
    from_async_sink,
    get_console_sink,
    get_stream_sink,
    with_filter,
)
from logtape.fingers_crossed import (
    ContextIsolation,
    DisposableFingersCrossedSink,
    FingersCrossedSink,
    fingers_crossed,
)
from logtape.formatters import (
    AnsiColorFormatter,
    JsonLinesFormatter,
    LogFormatter,
    PlainTextFormatter,
    default_text_formatter,
    get_ansi_color_formatter,
    get_json_lines_formatter,
    get_text_formatter,
)
from logtape.context import ContextLocalStorage, with_context
from logtape.config import (
    Config,
    ConfigError,
    LoggerConfig,
    configure,
    configure_sync,
    dispose,
    dispose_sync,
    get_config,
    reset,
    reset_sync,
)
from logtape.loader import (
    DEFAULT_SHORTHANDS,
    build_config,
    configure_from_object,
    configure_from_object_sync,
    create_filter,
    create_sink,
    expand_env_vars,
    load_config_file,
    load_config_string,
    merge_shorthands,
    parse_module_reference,
)

__all__ = [
    "Deferred",
    "LazyValue",
    "LogLevel",
    "LogRecord",
    "compare_log_level",
    "get_log_levels",
    "is_lazy",
    "is_log_level",
    "lazy",
    "level_name",
    "parse_log_level",
    "parse_message_template",
    "render_message",
    "Filter",
    "FilterLike",
    "get_level_filter",
    "to_filter",
    "CallShape",
    "ContextLogger",
    "Logger",
    "LoggerImpl",
    "META_CATEGORY",
    "get_logger",
    "get_meta_logger",
    "AsyncSink",
    "AsyncSinkAdapter",
    "ConsoleSink",
    "RingBufferSink",
    "Sink",
    "StreamSink",
    "from_async_sink",
    "get_console_sink",
    "get_stream_sink",
    "with_filter",
    "ContextIsolation",
    "DisposableFingersCrossedSink",
    "FingersCrossedSink",
    "fingers_crossed",
    "AnsiColorFormatter",
    "JsonLinesFormatter",
    "LogFormatter",
    "PlainTextFormatter",
    "default_text_formatter",
    "get_ansi_color_formatter",
    "get_json_lines_formatter",
    "get_text_formatter",
    "ContextLocalStorage",
    "with_context",
    "Config",
    "ConfigError",
    "LoggerConfig",
    "configure",
    "configure_sync",
    "dispose",
    "dispose_sync",
    "get_config",
    "reset",
    "reset_sync",
    "DEFAULT_SHORTHANDS",
    "build_config",
    "configure_from_object",
    "configure_from_object_sync",
    "create_filter",
    "create_sink",
    "expand_env_vars",
    "load_config_file",
    "load_config_string",
    "merge_shorthands",
    "parse_module_reference",
]
