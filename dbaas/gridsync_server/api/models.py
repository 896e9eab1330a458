"""
Request bodies accepted by the HTTP API.

Bodies are parsed into these pydantic models before reaching the service,
so shape errors surface as 400 responses with field-level details.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from ..schema.types import ColumnDef, ColumnKind
from ..sync.models import CellEdit, RowEdit


class CreateTableRequest(BaseModel):
    """Create (strict) or ensure a table."""

    table: str = Field(..., description="Table name")
    key_column: str | None = Field(None, description="Key column for a new table")
    key_kind: str | None = Field(None, description="integer or text")
    strict: bool = Field(False, description="Fail if the table exists with another key column")


class ColumnSpec(BaseModel):
    name: str = Field(..., description="Column name")
    kind: str = Field(..., description="integer, real, boolean, text or json")
    not_null: bool = False
    check: str | None = Field(None, description="CHECK expression over this column")

    def to_column_def(self) -> ColumnDef:
        return ColumnDef(
            name=self.name,
            kind=ColumnKind.from_str(self.kind),
            not_null=self.not_null,
            check=self.check,
        )


class AddColumnsRequest(BaseModel):
    columns: list[ColumnSpec] = Field(..., min_length=1)


class DropColumnsRequest(BaseModel):
    columns: list[str] = Field(..., min_length=1, description="Columns to drop with their data")


class RenameColumnRequest(BaseModel):
    old: str = Field(..., description="Current column name")
    new: str = Field(..., description="New column name")


class CellEditModel(BaseModel):
    table: str
    key: Any = None
    column: str
    value: Any = None
    base_version: int | None = None

    def to_edit(self) -> CellEdit:
        return CellEdit(
            table=self.table,
            key=self.key,
            column=self.column,
            value=self.value,
            base_version=self.base_version,
        )


class UpsertCellsRequest(BaseModel):
    """Batch of cell edits across tables."""

    edits: list[CellEditModel] = Field(..., description="Cell edits")
    actor: str | None = Field(None, description="Fallback when X-Actor is absent")


class RowEditModel(BaseModel):
    key: Any = None
    cells: dict[str, Any] = Field(default_factory=dict)
    base_version: int | None = None

    def to_edit(self) -> RowEdit:
        return RowEdit(key=self.key, cells=dict(self.cells), base_version=self.base_version)


class UpsertRowsRequest(BaseModel):
    """Batch of whole-row edits to one table."""

    rows: list[RowEditModel] = Field(..., description="Row edits")
    key_column: str | None = Field(None, description="Declared key column")
    actor: str | None = None


class DeleteRowsRequest(BaseModel):
    keys: list[Any] = Field(..., description="Keys to tombstone")
    actor: str | None = None


class PresenceRequest(BaseModel):
    actor: str | None = None
    location: str | None = Field(None, description="Where the actor is, e.g. Sheet1!B7")


class LockRequest(BaseModel):
    resource_key: str = Field(..., description="e.g. cell:Sheet1/A1 or column:orders/qty")
    actor: str | None = None
    ttl_sec: float | None = Field(None, gt=0, description="Lock lifetime in seconds")


class ReleaseAllRequest(BaseModel):
    actor: str | None = None
