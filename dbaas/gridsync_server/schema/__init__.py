"""
Schema module for GridSync.

This module provides the dynamic table catalog, including:
- Column and table definitions (ColumnDef, TableDef, ColumnKind)
- Kind inference from incoming values
- The persisted SchemaRegistry with lazy table/column provisioning

Invariants:
    - A table's key column never changes
    - Column kinds are fixed by the first value observed (first write wins)
    - Columns are only removed by the explicit, destructive drop

How to change safely:
    - Add columns, never reinterpret existing ones
    - Treat drop_columns as data deletion; it cannot be undone
"""

from .registry import SchemaRegistry
from .types import (
    RESERVED_COLUMNS,
    ColumnDef,
    ColumnKind,
    TableDef,
    infer_key_kind,
    infer_kind,
)

__all__ = [
    "ColumnDef",
    "ColumnKind",
    "TableDef",
    "RESERVED_COLUMNS",
    "infer_kind",
    "infer_key_kind",
    "SchemaRegistry",
]
