"""Typed context values and their lossless JSON encoding.

Context variables hold strings, numbers, booleans, dates or sets of strings.
Plain JSON would turn dates and sets into strings and lists, so persisted
values are tagged: ``{"type": "date", "value": "2024-05-01"}``.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict

from .errors import TypeMismatch


class ValueKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    SET = "set"


# Kinds that compare with each other
_COMPARABLE_KIND = {
    ValueKind.DATETIME: ValueKind.DATE,
}


def value_kind(value: Any) -> ValueKind:
    """Classify a context value. Raises TypeMismatch for unsupported types."""
    # bool before number: bool is an int subclass
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, datetime):
        return ValueKind.DATETIME
    if isinstance(value, date):
        return ValueKind.DATE
    if isinstance(value, (set, frozenset)):
        return ValueKind.SET
    raise TypeMismatch(
        f"Unsupported context value type: {type(value).__name__}",
        expected="string|number|boolean|date|set",
        actual=type(value).__name__,
    )


def comparison_kind(value: Any) -> ValueKind:
    """Kind used when comparing values (datetimes compare as dates)."""
    kind = value_kind(value)
    return _COMPARABLE_KIND.get(kind, kind)


def as_comparable(value: Any) -> Any:
    """Reduce datetimes to dates so mixed date/datetime operands order cleanly."""
    if isinstance(value, datetime):
        return value.date()
    return value


def normalize_value(value: Any) -> Any:
    """Coerce container inputs to the canonical frozenset and validate the rest."""
    if isinstance(value, (list, tuple, set, frozenset)):
        items = frozenset(value)
        for item in items:
            if not isinstance(item, str):
                raise TypeMismatch(
                    f"Set values must contain strings, got {type(item).__name__}",
                    expected="string",
                    actual=type(item).__name__,
                )
        return items
    value_kind(value)
    return value


def encode_value(value: Any) -> Any:
    """Encode a context value for JSON. Scalars that JSON keeps exact stay plain."""
    if value is None:
        return None
    kind = value_kind(value)
    if kind in (ValueKind.STRING, ValueKind.NUMBER, ValueKind.BOOLEAN):
        return value
    if kind == ValueKind.SET:
        return {"type": kind.value, "value": sorted(value)}
    return {"type": kind.value, "value": value.isoformat()}


def decode_value(data: Any) -> Any:
    """Inverse of encode_value. Plain lists decode to sets."""
    if isinstance(data, list):
        return normalize_value(data)
    if not isinstance(data, dict):
        return data
    kind = data.get("type")
    raw = data.get("value")
    if kind == ValueKind.SET.value:
        return normalize_value(raw or [])
    if kind == ValueKind.DATE.value:
        return raw if isinstance(raw, date) else date.fromisoformat(raw)
    if kind == ValueKind.DATETIME.value:
        return raw if isinstance(raw, datetime) else datetime.fromisoformat(raw)
    if kind in (ValueKind.STRING.value, ValueKind.NUMBER.value, ValueKind.BOOLEAN.value):
        return raw
    raise TypeMismatch(f"Unknown encoded value type: {kind!r}", actual=str(kind))


def encode_mapping(values: Dict[str, Any]) -> Dict[str, Any]:
    return {name: encode_value(v) for name, v in sorted(values.items())}


def decode_mapping(data: Dict[str, Any]) -> Dict[str, Any]:
    return {name: decode_value(v) for name, v in (data or {}).items()}
