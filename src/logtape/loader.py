"""
Declarative configuration.

Builds a ``Config`` from plain data (a dict, or a YAML file) in which
sinks, filters and formatters are named by module reference instead of
being live objects:

    sinks:
      console:
        type: "#console()"
        formatter: "#ansi_color()"
      audit:
        type: myapp.logging:make_audit_sink()
        path: ${AUDIT_LOG:/var/log/audit.log}
    filters:
      quiet:
        type: "#level()"
        level: warning
    loggers:
      - category: myapp
        sinks: [console]
        lowest_level: debug
      - category: [myapp, audit]
        sinks: [audit]
        filters: [quiet]

Reference syntax:
    "pkg.module:attr"   attribute of an importable module
    "pkg.module.attr"   same, split at the last dot
    "#name"             shorthand from the registry (see DEFAULT_SHORTHANDS)
    trailing "()"       call the target with the entry's other keys as kwargs

Usage:
    await configure_from_object(load_config_file("logging.yaml"))
"""

from __future__ import annotations

import importlib
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from logtape.config import Config, ConfigError, configure, configure_sync
from logtape.core import get_meta_logger
from logtape.filters import Filter
from logtape.sinks import Sink

InvalidConfigMode = Literal["raise", "warn"]

ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]+))?\}")

DEFAULT_SHORTHANDS: dict[str, dict[str, str]] = {
    "sinks": {
        "console": "logtape.sinks:get_console_sink",
        "ring_buffer": "logtape.sinks:RingBufferSink",
    },
    "filters": {
        "level": "logtape.filters:get_level_filter",
    },
    "formatters": {
        "text": "logtape.formatters:get_text_formatter",
        "ansi_color": "logtape.formatters:get_ansi_color_formatter",
        "json_lines": "logtape.formatters:get_json_lines_formatter",
    },
}

_KINDS = ("sinks", "filters", "formatters")


# ═══════════════════════════════════════════════════════════════════
#  Environment expansion
# ═══════════════════════════════════════════════════════════════════

def expand_env_vars(obj: Any, environ: Optional[Mapping[str, str]] = None) -> Any:
    """
    Replace ``${NAME}`` / ``${NAME:default}`` in every string of ``obj``.

    Unset variables without a default expand to the empty string.
    Returns a new structure; ``obj`` is not modified.
    """
    env = os.environ if environ is None else environ

    def replace(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        value = env.get(name)
        if value is not None:
            return value
        return default if default is not None else ""

    def walk(value: Any) -> Any:
        if isinstance(value, str):
            return ENV_PATTERN.sub(replace, value)
        if isinstance(value, list):
            return [walk(v) for v in value]
        if isinstance(value, Mapping):
            return {k: walk(v) for k, v in value.items()}
        return value

    return walk(obj)


# ═══════════════════════════════════════════════════════════════════
#  Module references
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ModuleReference:
    """A parsed ``type`` string."""
    is_shorthand: bool
    is_factory: bool
    shorthand_name: Optional[str] = None
    module_path: Optional[str] = None
    attribute: Optional[str] = None


def parse_module_reference(reference: str) -> ModuleReference:
    """
    Parse a reference string.

        parse_module_reference("#console()")
        → ModuleReference(is_shorthand=True, is_factory=True, shorthand_name="console")
        parse_module_reference("myapp.sinks:make()")
        → ModuleReference(False, True, module_path="myapp.sinks", attribute="make")
    """
    is_factory = reference.endswith("()")
    clean = reference[:-2] if is_factory else reference

    if clean.startswith("#"):
        return ModuleReference(True, is_factory, shorthand_name=clean[1:])

    if ":" in clean:
        module_path, attribute = clean.split(":", 1)
    elif "." in clean:
        module_path, attribute = clean.rsplit(".", 1)
    else:
        module_path, attribute = clean, None
    return ModuleReference(False, is_factory, module_path=module_path or None, attribute=attribute or None)


def merge_shorthands(
    defaults: Mapping[str, Mapping[str, str]],
    custom: Optional[Mapping[str, Mapping[str, str]]] = None,
) -> dict[str, dict[str, str]]:
    """Registry with ``custom`` entries layered over ``defaults`` per kind."""
    merged = {kind: dict(defaults.get(kind, {})) for kind in _KINDS}
    for kind, entries in (custom or {}).items():
        merged.setdefault(kind, {}).update(entries)
    return merged


def load_reference(
    parsed: ModuleReference,
    shorthands: Mapping[str, Mapping[str, str]],
    kind: str,
) -> Any:
    """Import and return the object a reference points at."""
    if parsed.is_shorthand:
        target = shorthands.get(kind, {}).get(parsed.shorthand_name)
        if target is None:
            raise ConfigError(f"Unknown {kind[:-1]} shorthand: #{parsed.shorthand_name}")
        return load_reference(parse_module_reference(target), shorthands, kind)

    if not parsed.module_path or not parsed.attribute:
        raise ConfigError(f"Incomplete module reference: {parsed.module_path or ''!r}")

    try:
        module = importlib.import_module(parsed.module_path)
    except ImportError as e:
        raise ConfigError(f"Failed to load module {parsed.module_path}: {e}") from e

    try:
        return getattr(module, parsed.attribute)
    except AttributeError:
        raise ConfigError(
            f"Module {parsed.module_path} does not have attribute '{parsed.attribute}'"
        ) from None


def _instantiate(reference: str, options: dict[str, Any], shorthands, kind: str) -> Any:
    parsed = parse_module_reference(reference)
    target = load_reference(parsed, shorthands, kind)
    if not parsed.is_factory:
        return target
    if not callable(target):
        raise ConfigError(f"{reference} is not callable, but invoked as factory")
    return target(**options)


# ═══════════════════════════════════════════════════════════════════
#  Component factories
# ═══════════════════════════════════════════════════════════════════

class ComponentSpec(BaseModel):
    """``type`` plus arbitrary factory options."""
    model_config = ConfigDict(extra="allow")
    type: str

    @property
    def options(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


def _spec(data: Mapping[str, Any] | ComponentSpec) -> ComponentSpec:
    if isinstance(data, ComponentSpec):
        return data
    try:
        return ComponentSpec.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def create_formatter(value: str | Mapping[str, Any], shorthands: Mapping[str, Mapping[str, str]]) -> Any:
    if isinstance(value, str):
        return _instantiate(value, {}, shorthands, "formatters")
    spec = _spec(value)
    return _instantiate(spec.type, spec.options, shorthands, "formatters")


def create_sink(data: Mapping[str, Any], shorthands: Optional[Mapping[str, Mapping[str, str]]] = None) -> Sink:
    """Sink from ``{"type": ref, **options}``; a ``formatter`` option is resolved too."""
    shorthands = shorthands if shorthands is not None else DEFAULT_SHORTHANDS
    spec = _spec(data)
    options = spec.options
    if options.get("formatter") is not None:
        options["formatter"] = create_formatter(options["formatter"], shorthands)
    return _instantiate(spec.type, options, shorthands, "sinks")


def create_filter(data: Mapping[str, Any], shorthands: Optional[Mapping[str, Mapping[str, str]]] = None) -> Filter:
    """Filter from ``{"type": ref, **options}``."""
    shorthands = shorthands if shorthands is not None else DEFAULT_SHORTHANDS
    spec = _spec(data)
    return _instantiate(spec.type, spec.options, shorthands, "filters")


# ═══════════════════════════════════════════════════════════════════
#  Documents
# ═══════════════════════════════════════════════════════════════════

class LoggingDocument(BaseModel):
    """Top-level shape of a declarative configuration."""
    sinks: dict[str, ComponentSpec] = Field(default_factory=dict)
    filters: dict[str, ComponentSpec] = Field(default_factory=dict)
    loggers: list[dict[str, Any]] = Field(default_factory=list)
    reset: bool = False


def _describe_category(category: Any) -> str:
    return ".".join(category) if isinstance(category, (list, tuple)) else str(category)


def build_config(
    document: Mapping[str, Any],
    shorthands: Optional[Mapping[str, Mapping[str, str]]] = None,
    on_invalid_config: InvalidConfigMode = "raise",
) -> tuple[Config, list[str]]:
    """
    Turn a declarative document into a ``Config``.

    In ``"warn"`` mode broken sinks, filters and references are left out
    and described in the returned warnings instead of raising.
    """
    if on_invalid_config not in ("raise", "warn"):
        raise ValueError(f"on_invalid_config must be 'raise' or 'warn', got {on_invalid_config!r}")
    registry = merge_shorthands(DEFAULT_SHORTHANDS, shorthands)
    try:
        doc = LoggingDocument.model_validate(dict(document))
    except ValidationError as e:
        raise ConfigError(str(e)) from e

    warnings: list[str] = []

    def fail(message: str, cause: Optional[BaseException] = None) -> None:
        if on_invalid_config == "raise":
            if isinstance(cause, ConfigError):
                raise cause
            raise ConfigError(message) from cause
        warnings.append(message)

    sinks: dict[str, Any] = {}
    for name, spec in doc.sinks.items():
        try:
            sinks[name] = create_sink(spec, registry)
        except Exception as e:
            fail(f"Failed to create sink '{name}': {e}", e)

    filters: dict[str, Any] = {}
    for name, spec in doc.filters.items():
        try:
            filters[name] = create_filter(spec, registry)
        except Exception as e:
            fail(f"Failed to create filter '{name}': {e}", e)

    loggers: list[dict[str, Any]] = []
    for entry in doc.loggers:
        entry = dict(entry)
        label = _describe_category(entry.get("category"))
        valid_sinks = []
        for sink_name in entry.get("sinks") or []:
            if sink_name in sinks:
                valid_sinks.append(sink_name)
            else:
                fail(f"Logger '{label}' references unknown or failed sink '{sink_name}'")
        valid_filters = []
        for filter_name in entry.get("filters") or []:
            if filter_name in filters:
                valid_filters.append(filter_name)
            else:
                fail(f"Logger '{label}' references unknown or failed filter '{filter_name}'")
        entry["sinks"] = valid_sinks
        entry["filters"] = valid_filters
        loggers.append(entry)

    try:
        config = Config(sinks=sinks, filters=filters, loggers=loggers, reset=doc.reset)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
    return config, warnings


def _report(warnings: list[str]) -> None:
    meta = get_meta_logger()
    for warning in warnings:
        meta.warning(warning.replace("{", "{{").replace("}", "}}"))


async def configure_from_object(
    document: Mapping[str, Any],
    shorthands: Optional[Mapping[str, Mapping[str, str]]] = None,
    on_invalid_config: InvalidConfigMode = "raise",
) -> None:
    """Build and install a declarative configuration."""
    config, warnings = build_config(document, shorthands, on_invalid_config)
    await configure(config)
    _report(warnings)


def configure_from_object_sync(
    document: Mapping[str, Any],
    shorthands: Optional[Mapping[str, Mapping[str, str]]] = None,
    on_invalid_config: InvalidConfigMode = "raise",
) -> None:
    """Synchronous ``configure_from_object()``."""
    config, warnings = build_config(document, shorthands, on_invalid_config)
    configure_sync(config)
    _report(warnings)


def load_config_string(text: str, environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """Parse a YAML document and expand environment variables in it."""
    data = yaml.safe_load(text) or {}
    if not isinstance(data, Mapping):
        raise ConfigError("Logging configuration must be a mapping at the top level")
    return expand_env_vars(data, environ)


def load_config_file(path: str | Path, environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """Load and expand a YAML configuration file."""
    path = Path(path)
    return load_config_string(path.read_text(encoding="utf-8"), environ)
