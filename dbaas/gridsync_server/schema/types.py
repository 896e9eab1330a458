"""
Column and table definitions for GridSync dynamic tables.

Tables are created lazily from incoming data, so column kinds are inferred
from the first value observed for each column and then stored explicitly in
the catalog. Reads always decode by the stored kind.

Invariants:
    - A column's kind never changes after it is first recorded
    - The key column of a table never changes
    - Reserved columns (row_version, updated_at, deleted) are never user cells

How to change safely:
    - Add new kinds at the end of ColumnKind and teach storage/codec.py about them
    - Keep to_dict()/from_dict() stable; the catalog fingerprint depends on them
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

RESERVED_COLUMNS: tuple[str, ...] = ("row_version", "updated_at", "deleted")


class ColumnKind(Enum):
    """Supported cell kinds.

    These map to SQLite storage classes and codec rules.
    """

    INTEGER = "integer"
    REAL = "real"
    BOOLEAN = "boolean"  # Stored as 0/1
    TEXT = "text"
    JSON = "json"  # Compact JSON text, always parsed on read

    @classmethod
    def from_str(cls, value: str) -> ColumnKind:
        """Convert string representation to ColumnKind.

        Raises:
            ValueError: If value is not a valid kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid column kind '{value}'. Valid kinds: {valid}")

    @property
    def sql_type(self) -> str:
        return _SQL_TYPES[self]


_SQL_TYPES = {
    ColumnKind.INTEGER: "INTEGER",
    ColumnKind.REAL: "REAL",
    ColumnKind.BOOLEAN: "INTEGER",
    ColumnKind.TEXT: "TEXT",
    ColumnKind.JSON: "TEXT",
}

KEY_KINDS = (ColumnKind.INTEGER, ColumnKind.TEXT)


def infer_kind(value: Any) -> ColumnKind | None:
    """Infer a column kind from a sample value.

    Returns:
        The inferred kind, or None for a null sample (no evidence)
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return ColumnKind.BOOLEAN
    if isinstance(value, int):
        return ColumnKind.INTEGER
    if isinstance(value, float):
        return ColumnKind.INTEGER if value.is_integer() else ColumnKind.REAL
    if isinstance(value, (dict, list, tuple)):
        return ColumnKind.JSON
    return ColumnKind.TEXT


def infer_key_kind(key: Any) -> ColumnKind:
    """Key kind for a table created by its first written key.

    Missing, integral and numeric-string keys give INTEGER; anything else TEXT.
    """
    if key is None or key == "":
        return ColumnKind.INTEGER
    if isinstance(key, bool):
        return ColumnKind.TEXT
    if isinstance(key, int):
        return ColumnKind.INTEGER
    if isinstance(key, float):
        return ColumnKind.INTEGER if key.is_integer() else ColumnKind.TEXT
    if isinstance(key, str):
        try:
            int(key.strip())
        except ValueError:
            return ColumnKind.TEXT
        return ColumnKind.INTEGER
    return ColumnKind.TEXT


@dataclass(frozen=True)
class ColumnDef:
    """Definition of a single cell column.

    Attributes:
        name: Column name (SQL identifier)
        kind: Stored kind, fixed once recorded
        not_null: Reject null writes to this column
        check: Optional SQL CHECK expression over this column only
    """

    name: str
    kind: ColumnKind
    not_null: bool = False
    check: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Column name cannot be empty")

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "kind": self.kind.value}
        if self.not_null:
            result["not_null"] = True
        if self.check:
            result["check"] = self.check
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ColumnDef:
        return cls(
            name=data["name"],
            kind=ColumnKind.from_str(data["kind"]),
            not_null=bool(data.get("not_null", False)),
            check=data.get("check") or None,
        )


@dataclass(frozen=True)
class TableDef:
    """Definition of a logical table.

    Attributes:
        name: Table name (also the physical SQLite table name)
        key_column: Name of the key column
        key_kind: INTEGER (server can assign keys) or TEXT
        columns: Cell columns in creation order

    Example:
        >>> t = TableDef("orders", "id", ColumnKind.INTEGER,
        ...              (ColumnDef("qty", ColumnKind.INTEGER),))
        >>> t.get_column("QTY").name
        'qty'
    """

    name: str
    key_column: str
    key_kind: ColumnKind = ColumnKind.INTEGER
    columns: tuple[ColumnDef, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.key_kind not in KEY_KINDS:
            raise ValueError(
                f"key_kind must be integer or text for table '{self.name}', "
                f"got {self.key_kind.value}"
            )

    def get_column(self, name: str) -> ColumnDef | None:
        """Look up a cell column, case-insensitively like SQLite does."""
        lowered = name.lower()
        for col in self.columns:
            if col.name.lower() == lowered:
                return col
        return None

    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def is_reserved(self, name: str) -> bool:
        """Whether name is the key column or a reserved bookkeeping column."""
        lowered = name.lower()
        return lowered == self.key_column.lower() or lowered in RESERVED_COLUMNS

    def with_columns(self, columns: tuple[ColumnDef, ...]) -> TableDef:
        return TableDef(self.name, self.key_column, self.key_kind, columns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "key_column": self.key_column,
            "key_kind": self.key_kind.value,
            "columns": [c.to_dict() for c in self.columns],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TableDef:
        return cls(
            name=data["name"],
            key_column=data["key_column"],
            key_kind=ColumnKind.from_str(data.get("key_kind", "integer")),
            columns=tuple(ColumnDef.from_dict(c) for c in data.get("columns", [])),
        )
