"""
Row query builder for snapshot reads.

Clients may filter and order table snapshots by arbitrary columns. Instead
of splicing client text into SQL, RowQuery only accepts column names that
the table's definition knows about (cells, the key column and the reserved
bookkeeping columns), quotes them, and binds every value as a parameter
encoded by the column's kind.

Example:
    >>> sql, params = (
    ...     RowQuery(table_def)
    ...     .where("qty", "gt", 3)
    ...     .order_by(parse_order_by("qty DESC"))
    ...     .limit(50)
    ...     .build()
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..errors import ValidationError
from ..schema.types import ColumnKind, TableDef
from . import codec
from .sql import quote_ident

# op name -> SQL operator; symbols are accepted as aliases
_OPERATORS = {
    "eq": "=",
    "ne": "!=",
    "lt": "<",
    "le": "<=",
    "gt": ">",
    "ge": ">=",
    "like": "LIKE",
    "in": "IN",
    "is_null": "IS NULL",
    "not_null": "IS NOT NULL",
}
_ALIASES = {
    "=": "eq",
    "==": "eq",
    "!=": "ne",
    "<>": "ne",
    "<": "lt",
    "<=": "le",
    ">": "gt",
    ">=": "ge",
}

_RESERVED_KINDS = {
    "row_version": ColumnKind.INTEGER,
    "updated_at": ColumnKind.INTEGER,
    "deleted": ColumnKind.BOOLEAN,
}


@dataclass(frozen=True)
class Filter:
    """A single column predicate."""

    column: str
    op: str = "eq"
    value: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Filter:
        if "column" not in data:
            raise ValidationError("Filter requires 'column'", details={"filter": data})
        return cls(column=data["column"], op=data.get("op", "eq"), value=data.get("value"))


@dataclass(frozen=True)
class OrderTerm:
    column: str
    descending: bool = False


def parse_order_by(text: str | None) -> list[OrderTerm]:
    """Parse "col [ASC|DESC], col2 ..." into order terms.

    Column names are validated later against the table definition.
    """
    if not text:
        return []
    terms = []
    for part in text.split(","):
        tokens = part.split()
        if not tokens or len(tokens) > 2:
            raise ValidationError(f"Invalid order_by clause: {part.strip()!r}")
        direction = tokens[1].upper() if len(tokens) == 2 else "ASC"
        if direction not in ("ASC", "DESC"):
            raise ValidationError(f"Invalid sort direction: {tokens[1]!r}")
        terms.append(OrderTerm(tokens[0], direction == "DESC"))
    return terms


class RowQuery:
    """SELECT builder restricted to one table's known columns."""

    def __init__(self, table: TableDef, include_deleted: bool = False) -> None:
        self.table = table
        self.include_deleted = include_deleted
        self._filters: list[Filter] = []
        self._order: list[OrderTerm] = []
        self._limit: int | None = None
        self._offset = 0

    def _resolve(self, column: str) -> tuple[str, ColumnKind, bool]:
        """Return (quoted name, kind, is_key) for a referenced column."""
        lowered = column.lower() if isinstance(column, str) else column
        if lowered == self.table.key_column.lower():
            return quote_ident(self.table.key_column), self.table.key_kind, True
        if lowered in _RESERVED_KINDS:
            return quote_ident(lowered), _RESERVED_KINDS[lowered], False
        col = self.table.get_column(column) if isinstance(column, str) else None
        if col is None:
            raise ValidationError(
                f"Unknown column '{column}' in table '{self.table.name}'",
                details={"table": self.table.name, "column": column},
            )
        return quote_ident(col.name), col.kind, False

    def _bind(self, kind: ColumnKind, is_key: bool, value: Any) -> Any:
        if is_key:
            return codec.encode_key(kind, value, self.table.name)
        if isinstance(value, str) and kind in (ColumnKind.TEXT, ColumnKind.JSON):
            return value
        return codec.encode(kind, value)

    def where(self, column: str, op: str = "eq", value: Any = None) -> RowQuery:
        self._filters.append(Filter(column, op, value))
        return self

    def filter(self, filters: list[Filter]) -> RowQuery:
        self._filters.extend(filters)
        return self

    def order_by(self, terms: list[OrderTerm]) -> RowQuery:
        self._order.extend(terms)
        return self

    def limit(self, limit: int | None, offset: int = 0) -> RowQuery:
        if limit is not None and limit < 0:
            raise ValidationError("limit must be non-negative")
        if offset < 0:
            raise ValidationError("offset must be non-negative")
        self._limit = limit
        self._offset = offset
        return self

    def build(self) -> tuple[str, list[Any]]:
        """Render SQL text and bound parameters."""
        clauses: list[str] = []
        params: list[Any] = []

        if not self.include_deleted:
            clauses.append('"deleted" = 0')

        for f in self._filters:
            op = _ALIASES.get(f.op, f.op)
            if op not in _OPERATORS:
                raise ValidationError(
                    f"Unsupported filter operator: {f.op!r}",
                    details={"supported": sorted(_OPERATORS)},
                )
            name, kind, is_key = self._resolve(f.column)
            if op in ("is_null", "not_null"):
                clauses.append(f"{name} {_OPERATORS[op]}")
            elif op == "in":
                values = f.value if isinstance(f.value, (list, tuple)) else [f.value]
                if not values:
                    clauses.append("0")
                    continue
                clauses.append(f"{name} IN ({', '.join('?' for _ in values)})")
                params.extend(self._bind(kind, is_key, v) for v in values)
            elif op == "like":
                clauses.append(f"{name} LIKE ?")
                params.append(str(f.value))
            else:
                clauses.append(f"{name} {_OPERATORS[op]} ?")
                params.append(self._bind(kind, is_key, f.value))

        sql = f"SELECT * FROM {quote_ident(self.table.name)}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)

        order = [
            f"{self._resolve(t.column)[0]} {'DESC' if t.descending else 'ASC'}" for t in self._order
        ]
        order.append('"row_version" ASC')
        sql += " ORDER BY " + ", ".join(order)

        if self._limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([self._limit, self._offset])
        elif self._offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(self._offset)

        return sql, params
