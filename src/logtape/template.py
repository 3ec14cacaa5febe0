"""
Message template parsing.

A template is plain text with ``{placeholders}``. Parsing produces the
structured message carried by every record: literal text and substituted
values alternating, starting and ending with a literal.

    parse_message_template("Hello, {user.name}!", {"user": {"name": "Ada"}})
    → ["Hello, ", "Ada", "!"]

Placeholders may walk into nested data: ``{a.b}``, ``{items[0]}``,
``{map["key with spaces"]}``, ``{maybe?.value}``. Only own members are
reachable (mapping keys, instance ``__dict__`` entries); dunder names and
``__proto__`` / ``prototype`` / ``constructor`` are refused at every depth.
Anything that cannot be resolved becomes ``None``. The parser never raises.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from typing import Any

_MISSING = object()

_BLOCKED_KEYS = frozenset({"__proto__", "prototype", "constructor"})

_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "0": "\0",
    "\\": "\\",
    '"': '"',
    "'": "'",
}

_HEX4 = re.compile(r"[0-9A-Fa-f]{4}")
_INTEGER = re.compile(r"\s*[+-]?\d+\s*")


# ── Public API ────────────────────────────────────────────────────


def parse_message_template(template: str, properties: Mapping[str, Any]) -> list[Any]:
    """Split ``template`` into literals and resolved placeholder values."""
    length = len(template)
    if length == 0:
        return [""]
    if "{" not in template:
        return [template]

    message: list[Any] = []
    start = 0
    i = 0
    while i < length:
        char = template[i]
        if char == "{":
            if i + 1 < length and template[i + 1] == "{":
                i += 2
                continue
            close = template.find("}", i + 1)
            if close == -1:
                i += 1
                continue
            message.append(_unescape(template[start:i]))
            message.append(_resolve_placeholder(template[i + 1:close], properties))
            i = close + 1
            start = i
        elif char == "}" and i + 1 < length and template[i + 1] == "}":
            i += 2
        else:
            i += 1

    message.append(_unescape(template[start:]))
    return message


def render_message(fragments: Sequence[str], values: Sequence[Any]) -> list[Any]:
    """
    Interleave literal fragments with positional values.

    ``fragments`` must hold exactly one more entry than ``values``; an empty
    template with no values renders as ``[""]``.

    Raises:
        TypeError: the fragment count does not match the value count.
    """
    if not fragments and not values:
        return [""]
    if len(fragments) != len(values) + 1:
        raise TypeError(
            f"Expected {len(values) + 1} template fragments for "
            f"{len(values)} values, got {len(fragments)}"
        )
    message: list[Any] = [fragments[0]]
    for value, fragment in zip(values, fragments[1:]):
        message.append(value)
        message.append(fragment)
    return message


# ── Placeholder resolution ────────────────────────────────────────


def _unescape(text: str) -> str:
    return text.replace("{{", "{").replace("}}", "}")


def _resolve_placeholder(key: str, properties: Mapping[str, Any]) -> Any:
    try:
        trimmed = key.strip()
        if trimmed == "*":
            if key in properties:
                return properties[key]
            if "*" in properties:
                return properties["*"]
            return properties

        if key in properties:
            value = properties[key]
        elif key != trimmed and trimmed in properties:
            value = properties[trimmed]
        else:
            value = _MISSING

        if value is _MISSING and _is_nested_access(trimmed):
            value = resolve_property_path(properties, trimmed)
        return None if value is _MISSING else value
    except Exception:
        # Hostile __eq__/__hash__/__contains__ in user data must not break logging.
        return None


def _is_nested_access(key: str) -> bool:
    return "." in key or "[" in key or "?." in key


def resolve_property_path(obj: Any, path: str) -> Any:
    """Walk ``path`` from ``obj``; ``None`` when any step cannot be resolved."""
    if obj is None or not path or path.endswith("."):
        return None

    current = obj
    length = len(path)
    i = 0
    while i < length:
        if path.startswith("?.", i):
            i += 2
            if current is None:
                return None
        elif current is None:
            return None

        parsed = _parse_next_segment(path, i)
        if parsed is None:
            return None
        segment, i = parsed

        current = _access_property(current, segment)
        if current is _MISSING:
            return None

    return current


def _parse_next_segment(path: str, start: int) -> tuple[str | int | float, int] | None:
    length = len(path)
    i = start
    if i >= length:
        return None

    segment: str | int | float
    if path[i] == "[":
        i += 1
        if i >= length:
            return None

        if path[i] in "\"'":
            quote = path[i]
            i += 1
            chars: list[str] = []
            while i < length and path[i] != quote:
                if path[i] == "\\":
                    i += 1
                    if i < length:
                        escaped = path[i]
                        digits = path[i + 1:i + 5]
                        if escaped == "u" and i + 4 < length and _HEX4.fullmatch(digits):
                            chars.append(chr(int(digits, 16)))
                            i += 4
                        else:
                            chars.append(_ESCAPES.get(escaped, escaped))
                        i += 1
                else:
                    chars.append(path[i])
                    i += 1
            if i >= length:
                return None  # unterminated quote
            segment = "".join(chars)
            i += 1
        else:
            begin = i
            while i < length and path[i] not in "]'\"":
                i += 1
            if i >= length:
                return None
            index_text = path[begin:i]
            if not index_text:
                return None
            segment = _parse_index(index_text)

        while i < length and path[i] != "]":
            i += 1
        if i < length:
            i += 1
    else:
        begin = i
        while i < length and path[i] not in ".[?":
            i += 1
        segment = path[begin:i]
        if not segment:
            return None

    if i < length and path[i] == ".":
        i += 1

    return segment, i


def _parse_index(text: str) -> str | int | float:
    """Integer, non-integer number, or (failing both) a string key."""
    if _INTEGER.fullmatch(text):
        return int(text)
    try:
        number = float(text)
    except ValueError:
        return text
    if math.isnan(number):
        return text
    if number.is_integer():
        return int(number)
    return number


def _access_property(obj: Any, segment: str | int | float) -> Any:
    if isinstance(segment, str):
        return _get_own_property(obj, segment)
    if (
        isinstance(obj, (list, tuple))
        and isinstance(segment, int)
        and 0 <= segment < len(obj)
    ):
        return obj[segment]
    return _MISSING


def _get_own_property(obj: Any, key: str) -> Any:
    if key in _BLOCKED_KEYS or (key.startswith("__") and key.endswith("__")):
        return _MISSING
    if isinstance(obj, Mapping):
        return obj[key] if key in obj else _MISSING
    if isinstance(obj, (str, bytes, list, tuple)):
        return _MISSING
    attrs = getattr(obj, "__dict__", None)
    if isinstance(attrs, Mapping) and key in attrs:
        return attrs[key]
    return _MISSING
