"""
Value types shared by the sync engine and its transports.

These are plain dataclasses with to_dict() helpers; the HTTP layer and the
change stream serialize them as JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Row:
    """Full projection of a stored row.

    Attributes:
        table: Logical table name
        key: Row key (int or str, per the table's key kind)
        row_version: Version stamped by the last mutation
        updated_at: Last mutation time (Unix ms)
        deleted: Tombstone flag
        cells: Every cell column of the table, decoded by kind
    """

    table: str
    key: int | str
    row_version: int
    updated_at: int
    deleted: bool
    cells: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Patch representation sent to clients."""
        return {
            "table": self.table,
            "key": self.key,
            "row_version": self.row_version,
            "updated_at": self.updated_at,
            "deleted": self.deleted,
            "cells": self.cells,
        }


@dataclass(frozen=True)
class Conflict:
    """A per-column divergence found during an optimistic write.

    Attributes:
        table: Logical table name
        key: Row key
        column: Diverging column ('deleted' when the row was tombstoned)
        server_value: Current stored value
        server_version: Current row_version
        proposed_value: Value the client tried to write
    """

    table: str
    key: int | str
    column: str
    server_value: Any
    server_version: int
    proposed_value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "key": self.key,
            "column": self.column,
            "server_value": self.server_value,
            "server_version": self.server_version,
            "proposed_value": self.proposed_value,
        }


@dataclass(frozen=True)
class CellEdit:
    """One cell write in an upsert_cells batch.

    A key of None, "", 0 or a negative number asks the server to assign a
    key (integer-keyed tables only); distinct temporary keys ("-1", "-2")
    create distinct rows.
    """

    table: str
    key: Any
    column: str
    value: Any
    base_version: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CellEdit:
        return cls(
            table=data["table"],
            key=data.get("key"),
            column=data["column"],
            value=data.get("value"),
            base_version=data.get("base_version"),
        )


@dataclass(frozen=True)
class RowEdit:
    """One row write in an upsert_rows batch."""

    key: Any
    cells: dict[str, Any]
    base_version: int | None = None


@dataclass(frozen=True)
class AssignedKey:
    """Server-assigned key for a row submitted with a temporary key."""

    table: str
    temp_key: Any
    key: int

    def to_dict(self) -> dict[str, Any]:
        return {"table": self.table, "temp_key": self.temp_key, "key": self.key}


@dataclass
class WriteResult:
    """Outcome of an upsert batch.

    Attributes:
        applied_count: Rows written
        conflicts: Per-column conflicts of the rows that were skipped
        max_row_version: Counter value after the batch committed
        assigned: Keys assigned to new rows
        rows: Post-write projections of the applied rows
    """

    applied_count: int
    conflicts: list[Conflict]
    max_row_version: int
    assigned: list[AssignedKey] = field(default_factory=list)
    rows: list[Row] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied_count": self.applied_count,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "max_row_version": self.max_row_version,
            "assigned": [a.to_dict() for a in self.assigned],
            "rows": [r.to_dict() for r in self.rows],
        }


@dataclass
class DeleteResult:
    """Outcome of a delete batch."""

    max_row_version: int
    deleted_count: int
    missing: list[Any] = field(default_factory=list)
    rows: list[Row] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_row_version": self.max_row_version,
            "deleted_count": self.deleted_count,
            "missing": self.missing,
            "rows": [r.to_dict() for r in self.rows],
        }


@dataclass
class ReadResult:
    """Rows changed since a cursor.

    max_row_version is the cursor to use for the next read. It is the
    global counter, or the last returned version when has_more is set.
    """

    max_row_version: int
    patches: list[Row]
    has_more: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_row_version": self.max_row_version,
            "patches": [p.to_dict() for p in self.patches],
            "has_more": self.has_more,
        }


@dataclass(frozen=True)
class ChangeEvent:
    """Published after a write batch commits, one per touched table."""

    table: str
    max_row_version: int
    patches: tuple[Row, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "max_row_version": self.max_row_version,
            "patches": [p.to_dict() for p in self.patches],
        }
