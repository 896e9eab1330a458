"""
Tagged value codec for dynamic cells.

Every column has an explicit kind in the catalog. Values are encoded for
SQLite according to that kind and decoded back by the same kind, so a text
cell that happens to start with '{' is still returned as text.

Coercion rules on write:
    integer  - ints, whole floats and numeric strings. A fractional number is
               stored losslessly and reads back as a float; the column keeps
               its integer kind.
    real     - any number or numeric string, stored as float
    boolean  - bools, 0/1 and "true"/"false"/"yes"/"no", stored as 0/1
    text     - strings as-is; numbers and bools stringified; structures as JSON
    json     - any JSON-serializable value, stored as compact JSON text

Anything else raises ValidationError before a write is attempted.
"""

from __future__ import annotations

import json
from typing import Any

from ..errors import ValidationError
from ..schema.types import ColumnKind

_TRUE_STRINGS = frozenset({"true", "1", "yes", "y"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "n", ""})


def dumps(value: Any) -> str:
    """Compact JSON encoding shared by the json kind and the audit log."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _reject(kind: ColumnKind, value: Any, column: str | None) -> ValidationError:
    where = f" for column '{column}'" if column else ""
    return ValidationError(
        f"Cannot store {type(value).__name__} value{where} of kind {kind.value}",
        details={"column": column, "kind": kind.value, "value": repr(value)[:100]},
    )


def _parse_number(value: str) -> int | float | None:
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return None


def encode(kind: ColumnKind, value: Any, column: str | None = None) -> Any:
    """Encode a cell value into its SQLite representation.

    Raises:
        ValidationError: If the value cannot be stored as kind
    """
    if value is None:
        return None

    if kind == ColumnKind.BOOLEAN:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)) and value in (0, 1):
            return int(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return 1
            if lowered in _FALSE_STRINGS:
                return 0
        raise _reject(kind, value, column)

    if kind == ColumnKind.INTEGER:
        number = _parse_number(value) if isinstance(value, str) else value
        if isinstance(number, bool):
            return int(number)
        if isinstance(number, int):
            return number
        if isinstance(number, float):
            return int(number) if number.is_integer() else number
        raise _reject(kind, value, column)

    if kind == ColumnKind.REAL:
        number = _parse_number(value) if isinstance(value, str) else value
        if isinstance(number, (int, float)):
            return float(number)
        raise _reject(kind, value, column)

    if kind == ColumnKind.TEXT:
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, (dict, list, tuple)):
            return dumps(value)
        raise _reject(kind, value, column)

    # JSON
    try:
        return dumps(value)
    except (TypeError, ValueError) as e:
        raise _reject(kind, value, column) from e


def decode(kind: ColumnKind, raw: Any) -> Any:
    """Decode a stored SQLite value by its column kind."""
    if raw is None:
        return None
    if kind == ColumnKind.BOOLEAN:
        return bool(raw)
    if kind == ColumnKind.INTEGER:
        if isinstance(raw, float) and raw.is_integer():
            return int(raw)
        return raw
    if kind == ColumnKind.REAL:
        return float(raw) if isinstance(raw, (int, float)) else raw
    if kind == ColumnKind.TEXT:
        return raw if isinstance(raw, str) else str(raw)
    # JSON
    return json.loads(raw) if isinstance(raw, str) else raw


def normalize(kind: ColumnKind, value: Any, column: str | None = None) -> Any:
    """Value as it would read back after being written."""
    return decode(kind, encode(kind, value, column))


def encode_key(key_kind: ColumnKind, key: Any, table: str | None = None) -> int | str:
    """Coerce a row key to the table's key kind.

    Raises:
        ValidationError: If the key is empty or not coercible
    """
    if key_kind == ColumnKind.INTEGER:
        if isinstance(key, bool):
            raise ValidationError(f"Invalid key {key!r} for table '{table}'")
        if isinstance(key, int):
            return key
        if isinstance(key, float) and key.is_integer():
            return int(key)
        if isinstance(key, str):
            number = _parse_number(key)
            if isinstance(number, int):
                return number
            if isinstance(number, float) and number.is_integer():
                return int(number)
        raise ValidationError(
            f"Key {key!r} is not an integer for table '{table}'",
            details={"table": table, "key": repr(key)},
        )

    if isinstance(key, bool) or key is None:
        raise ValidationError(f"Invalid key {key!r} for table '{table}'")
    if isinstance(key, (int, float)):
        key = str(int(key)) if isinstance(key, float) and key.is_integer() else str(key)
    if not isinstance(key, str) or not key:
        raise ValidationError(
            f"Key must be a non-empty string for table '{table}'",
            details={"table": table, "key": repr(key)},
        )
    return key


def is_new_key(key_kind: ColumnKind, key: Any) -> bool:
    """Whether key asks the server to assign one (integer-keyed tables only).

    None, "", 0 and negative numbers mean "new row".
    """
    if key_kind != ColumnKind.INTEGER:
        return False
    if key is None or key == "":
        return True
    if isinstance(key, bool):
        return False
    if isinstance(key, (int, float)):
        return key <= 0
    if isinstance(key, str):
        number = _parse_number(key)
        return isinstance(number, (int, float)) and number <= 0
    return False
