"""Closed value type for resource inputs and outputs.

A Value is one of:
- a literal: str, int, float, bool, list of Values, dict of str -> Value
- Reference(node_id, output): an output of another node
- Sensitive(value): a Value that must never be displayed or logged
- Template(format, args): string interpolation over Values

check_value() is the validation pass that rejects anything else before
a graph is built. resolve() turns declared Values into concrete data once
the referenced nodes are applied. Sensitivity survives resolution: a
resolved value built from a sensitive component is itself Sensitive.
"""

from __future__ import annotations

import math
import string
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

REDACTED = "(sensitive value)"
UNKNOWN_DISPLAY = "(known after apply)"

# Marker key for sensitive leaves in a persisted snapshot
SENSITIVE_MARKER = "__sensitive__"


@dataclass(frozen=True)
class Reference:
    """Reference to an output of another node."""

    node_id: str
    output: str

    def __str__(self) -> str:
        return f"${{{self.node_id}.{self.output}}}"


@dataclass(frozen=True, repr=False)
class Sensitive:
    """A value that is redacted everywhere it could be displayed."""

    value: Any

    def __repr__(self) -> str:
        return f"Sensitive({REDACTED})"

    def __str__(self) -> str:
        return REDACTED


@dataclass(frozen=True)
class Template:
    """A string built from a format string and named Value arguments.

    Example:
        Template("{server}:5432", {"server": Reference("postgres_server", "fqdn")})
    """

    format: str
    args: Mapping[str, Any] = field(default_factory=dict)

    def placeholders(self) -> set[str]:
        """Names used by the format string."""
        return {name for _, name, _, _ in string.Formatter().parse(self.format) if name}


class _Unknown:
    """Placeholder for a value that will only be known after apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return UNKNOWN_DISPLAY

    def __str__(self) -> str:
        return UNKNOWN_DISPLAY


UNKNOWN = _Unknown()

Lookup = Callable[[Reference], Any]


def check_value(value: Any, path: str = "value") -> list[str]:
    """Validate that a value belongs to the closed Value type.

    Args:
        value: The value to check.
        path: Dotted location used in error messages.

    Returns:
        List of error messages (empty if valid).
    """
    errors: list[str] = []

    match value:
        case bool() | str():
            pass
        case int():
            pass
        case float():
            if math.isnan(value) or math.isinf(value):
                errors.append(f"{path}: number must be finite")
        case Reference(node_id=node_id, output=output):
            if not node_id or not output:
                errors.append(f"{path}: reference must name a node and an output")
        case Sensitive(value=inner):
            errors.extend(check_value(inner, path))
        case Template():
            missing = value.placeholders() - set(value.args)
            if missing:
                errors.append(f"{path}: template arguments missing: {sorted(missing)}")
            for name, arg in value.args.items():
                if isinstance(arg, list | dict):
                    errors.append(f"{path}.{name}: template arguments must be scalar")
                else:
                    errors.extend(check_value(arg, f"{path}.{name}"))
        case list():
            for index, item in enumerate(value):
                errors.extend(check_value(item, f"{path}[{index}]"))
        case dict():
            for key, item in value.items():
                if not isinstance(key, str):
                    errors.append(f"{path}: map keys must be strings, got {type(key).__name__}")
                    continue
                errors.extend(check_value(item, f"{path}.{key}"))
        case None:
            errors.append(f"{path}: null is not a valid value")
        case _:
            errors.append(f"{path}: unsupported value type {type(value).__name__}")

    return errors


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference contained in a value."""
    match value:
        case Reference():
            yield value
        case Sensitive(value=inner):
            yield from iter_references(inner)
        case Template(args=args):
            for arg in args.values():
                yield from iter_references(arg)
        case list():
            for item in value:
                yield from iter_references(item)
        case dict():
            for item in value.values():
                yield from iter_references(item)


def resolve(value: Any, lookup: Lookup) -> Any:
    """Resolve references and templates in a declared value.

    Args:
        value: Declared value.
        lookup: Returns the realized value for a reference. May return a
            Sensitive wrapper or UNKNOWN.

    Returns:
        Concrete data, with Sensitive wrappers kept at sensitive leaves and
        UNKNOWN where an upstream output is not known yet.
    """
    match value:
        case Reference():
            return lookup(value)
        case Sensitive(value=inner):
            resolved = resolve(inner, lookup)
            if resolved is UNKNOWN or isinstance(resolved, Sensitive):
                return resolved
            return Sensitive(reveal(resolved))
        case Template(format=fmt, args=args):
            resolved_args = {name: resolve(arg, lookup) for name, arg in args.items()}
            if any(contains_unknown(arg) for arg in resolved_args.values()):
                return UNKNOWN
            text = fmt.format(**{name: reveal(arg) for name, arg in resolved_args.items()})
            if any(is_sensitive(arg) for arg in resolved_args.values()):
                return Sensitive(text)
            return text
        case list():
            return [resolve(item, lookup) for item in value]
        case dict():
            return {key: resolve(item, lookup) for key, item in value.items()}
        case _:
            return value


def is_sensitive(value: Any) -> bool:
    """Check whether a value has any sensitive component."""
    match value:
        case Sensitive():
            return True
        case Template(args=args):
            return any(is_sensitive(arg) for arg in args.values())
        case list():
            return any(is_sensitive(item) for item in value)
        case dict():
            return any(is_sensitive(item) for item in value.values())
        case _:
            return False


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved value still has unknown parts."""
    if value is UNKNOWN:
        return True
    match value:
        case Sensitive(value=inner):
            return contains_unknown(inner)
        case list():
            return any(contains_unknown(item) for item in value)
        case dict():
            return any(contains_unknown(item) for item in value.values())
        case _:
            return False


def reveal(value: Any) -> Any:
    """Strip Sensitive wrappers. Only for values handed to a provider."""
    match value:
        case Sensitive(value=inner):
            return reveal(inner)
        case list():
            return [reveal(item) for item in value]
        case dict():
            return {key: reveal(item) for key, item in value.items()}
        case _:
            return value


def redact(value: Any) -> Any:
    """Return a display-safe copy of a value.

    Sensitive leaves become REDACTED, unknowns become UNKNOWN_DISPLAY and
    references/templates are shown symbolically.
    """
    if value is UNKNOWN:
        return UNKNOWN_DISPLAY
    match value:
        case Sensitive():
            return REDACTED
        case Reference():
            return str(value)
        case Template():
            if is_sensitive(value):
                return REDACTED
            return value.format.format(
                **{name: redact(arg) for name, arg in value.args.items()}
            )
        case list():
            return [redact(item) for item in value]
        case dict():
            return {key: redact(item) for key, item in value.items()}
        case _:
            return value


def encode(value: Any) -> Any:
    """Encode a resolved value as JSON-compatible data for the snapshot."""
    match value:
        case Sensitive(value=inner):
            return {SENSITIVE_MARKER: reveal(inner)}
        case list():
            return [encode(item) for item in value]
        case dict():
            return {key: encode(item) for key, item in value.items()}
        case _:
            return value


def decode(data: Any) -> Any:
    """Inverse of encode(): re-tag sensitive leaves loaded from a snapshot."""
    match data:
        case {"__sensitive__": inner} if len(data) == 1:
            return Sensitive(inner)
        case list():
            return [decode(item) for item in data]
        case dict():
            return {key: decode(item) for key, item in data.items()}
        case _:
            return data
