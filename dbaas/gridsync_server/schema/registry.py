"""
Schema Registry for GridSync.

The SchemaRegistry is the central authority for table definitions.
It provides:
- Lazy creation of tables and columns from incoming data shapes
- Explicit administrative add/drop/rename of columns
- A persisted catalog (_schema_tables/_schema_columns) with an in-memory cache
- Schema fingerprinting, persisted as _meta.schema_hash

Invariants:
    - Once a table's key column is set it never changes; re-declaring a
      different key column raises KeyMismatchError
    - ensure_columns never changes the kind of an existing column
    - Catalog rows and physical DDL are written on the same transaction
    - The cache mirrors committed state; after a rolled-back transaction
      call reload()

How to change safely:
    - Pass the caller's connection when provisioning as part of a write batch
    - drop_columns destroys data irreversibly; keep it out of automatic paths

Example:
    >>> registry = SchemaRegistry(db)
    >>> registry.load()
    >>> registry.ensure_table("orders")
    'id'
    >>> registry.ensure_columns("orders", {"qty": 3, "price": 2.5})
    [ColumnDef(name='qty', kind=<ColumnKind.INTEGER: 'integer'>, ...), ...]
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from ..errors import KeyMismatchError, NotFoundError, ValidationError
from ..storage.database import Database
from ..storage.sql import (
    quote_ident,
    validate_check_expression,
    validate_identifier,
    validate_table_name,
)
from .types import KEY_KINDS, RESERVED_COLUMNS, ColumnDef, ColumnKind, TableDef, infer_kind

logger = logging.getLogger(__name__)

SCHEMA_HASH_KEY = "schema_hash"


class SchemaRegistry:
    """Persisted catalog of logical tables and their typed columns.

    Thread-safety:
        - Mutations hold an internal lock
        - Lookups read the cache and return immutable TableDef values

    Attributes:
        default_key_column: Key column used when ensure_table gets no hint
        fingerprint: SHA-256 hash of the catalog
    """

    def __init__(self, db: Database, default_key_column: str = "id") -> None:
        self.db = db
        self.default_key_column = validate_identifier(default_key_column, "key column")
        self._tables: dict[str, TableDef] = {}
        self._fingerprint: str | None = None
        self._lock = threading.RLock()

    @property
    def fingerprint(self) -> str:
        """Schema fingerprint of the cached catalog."""
        if self._fingerprint is None:
            self._fingerprint = self._compute_fingerprint()
        return self._fingerprint

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Load the catalog from the database into the cache."""
        with self.db.connect() as conn:
            tables = self._read_catalog(conn)
        with self._lock:
            self._tables = tables
            self._fingerprint = None
        logger.info(
            f"Schema registry loaded: {len(tables)} tables, fingerprint={self.fingerprint}"
        )

    def reload(self) -> None:
        """Discard the cache and re-read committed state."""
        with self.db.connect() as conn:
            tables = self._read_catalog(conn)
        with self._lock:
            self._tables = tables
            self._fingerprint = None

    @staticmethod
    def _read_catalog(conn: sqlite3.Connection) -> dict[str, TableDef]:
        columns: dict[str, list[ColumnDef]] = {}
        for row in conn.execute(
            "SELECT table_name, name, kind, not_null, check_expr FROM _schema_columns "
            "ORDER BY table_name, position"
        ):
            columns.setdefault(row["table_name"], []).append(
                ColumnDef(
                    name=row["name"],
                    kind=ColumnKind.from_str(row["kind"]),
                    not_null=bool(row["not_null"]),
                    check=row["check_expr"],
                )
            )

        tables = {}
        for row in conn.execute("SELECT name, key_column, key_kind FROM _schema_tables"):
            tables[row["name"].lower()] = TableDef(
                name=row["name"],
                key_column=row["key_column"],
                key_kind=ColumnKind.from_str(row["key_kind"]),
                columns=tuple(columns.get(row["name"], [])),
            )
        return tables

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_table(self, name: str) -> TableDef | None:
        """Look up a table definition (case-insensitive)."""
        if not isinstance(name, str):
            return None
        return self._tables.get(name.lower())

    def require_table(self, name: str) -> TableDef:
        """Look up a table definition or raise NotFoundError."""
        table = self.get_table(name)
        if table is None:
            raise NotFoundError(f"Table not found: {name}", details={"table": name})
        return table

    def tables(self) -> Iterator[TableDef]:
        """Iterate over all table definitions, sorted by name."""
        for key in sorted(self._tables):
            yield self._tables[key]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @contextmanager
    def _writing(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        """Use the caller's transaction, or open one and reload on failure."""
        if conn is not None:
            yield conn
            return
        try:
            with self.db.transaction() as own:
                yield own
        except Exception:
            self.reload()
            raise

    def default_key_kind(self, key_column: str) -> ColumnKind:
        return ColumnKind.INTEGER if key_column.lower() == "id" else ColumnKind.TEXT

    def ensure_table(
        self,
        name: str,
        key_column_hint: str | None = None,
        key_kind: ColumnKind | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> str:
        """Create a table if unknown and return its key column.

        If the table already exists the hint is ignored.

        Args:
            name: Table name
            key_column_hint: Key column for a new table (default_key_column if None)
            key_kind: INTEGER or TEXT; inferred from the key column name if None
            conn: Open write transaction to provision on

        Returns:
            The table's key column
        """
        validate_table_name(name)
        existing = self.get_table(name)
        if existing is not None:
            return existing.key_column
        key_column = key_column_hint or self.default_key_column
        return self._create(name, key_column, key_kind, conn).key_column

    def create_table(
        self,
        name: str,
        key_column: str,
        key_kind: ColumnKind | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> TableDef:
        """Create a table with an explicit key column.

        Idempotent when the table exists with the same key column.

        Raises:
            KeyMismatchError: If the table exists with a different key column
        """
        validate_table_name(name)
        validate_identifier(key_column, "key column")
        existing = self.get_table(name)
        if existing is not None:
            if existing.key_column.lower() != key_column.lower():
                raise KeyMismatchError(name, existing.key_column, key_column)
            return existing
        return self._create(name, key_column, key_kind, conn)

    def _create(
        self,
        name: str,
        key_column: str,
        key_kind: ColumnKind | None,
        conn: sqlite3.Connection | None,
    ) -> TableDef:
        validate_identifier(key_column, "key column")
        if key_column.lower() in RESERVED_COLUMNS:
            raise ValidationError(
                f"Key column '{key_column}' collides with a reserved column",
                details={"reserved": list(RESERVED_COLUMNS)},
            )
        kind = key_kind or self.default_key_kind(key_column)
        if kind not in KEY_KINDS:
            raise ValidationError(
                f"Key kind must be integer or text, got {kind.value}",
                details={"table": name, "key_kind": kind.value},
            )
        table = TableDef(name=name, key_column=key_column, key_kind=kind)

        key_sql = (
            "INTEGER PRIMARY KEY" if kind == ColumnKind.INTEGER else "TEXT PRIMARY KEY NOT NULL"
        )
        with self._lock, self._writing(conn) as c:
            c.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {quote_ident(name)} (
                    {quote_ident(key_column)} {key_sql},
                    "row_version" INTEGER NOT NULL,
                    "updated_at" INTEGER NOT NULL,
                    "deleted" INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            c.execute(
                f'CREATE INDEX IF NOT EXISTS "idx_{name}_row_version" '
                f'ON {quote_ident(name)}("row_version")'
            )
            c.execute(
                "INSERT INTO _schema_tables (name, key_column, key_kind, created_at) "
                "VALUES (?, ?, ?, ?)",
                (name, key_column, kind.value, int(time.time() * 1000)),
            )
            self._tables[name.lower()] = table
            self._persist_fingerprint(c)

        logger.info(
            "Created table",
            extra={"table": name, "key_column": key_column, "key_kind": kind.value},
        )
        return table

    def ensure_columns(
        self,
        name: str,
        sample_values: dict[str, Any],
        conn: sqlite3.Connection | None = None,
    ) -> list[ColumnDef]:
        """Add columns for sample keys the table doesn't have yet.

        Kinds are inferred from the sample values. Existing columns keep
        their kind regardless of the sample; null samples add nothing.

        Returns:
            The columns that were added
        """
        table = self.require_table(name)
        new_defs = []
        seen: set[str] = set()
        for column, value in sample_values.items():
            validate_identifier(column, "column")
            if table.is_reserved(column):
                raise ValidationError(
                    f"Column '{column}' is reserved in table '{table.name}'",
                    details={"table": table.name, "column": column},
                )
            if table.get_column(column) is not None or column.lower() in seen:
                continue
            kind = infer_kind(value)
            if kind is None:
                continue
            seen.add(column.lower())
            new_defs.append(ColumnDef(name=column, kind=kind))

        if not new_defs:
            return []
        return self._add(table, new_defs, conn)

    def add_columns(
        self,
        name: str,
        defs: list[ColumnDef],
        conn: sqlite3.Connection | None = None,
    ) -> list[ColumnDef]:
        """Explicitly add typed columns; existing names are skipped.

        Raises:
            ValidationError: On bad names, reserved names or unsafe CHECK text
        """
        table = self.require_table(name)
        new_defs = []
        seen: set[str] = set()
        for col in defs:
            validate_identifier(col.name, "column")
            if table.is_reserved(col.name):
                raise ValidationError(
                    f"Column '{col.name}' is reserved in table '{table.name}'",
                    details={"table": table.name, "column": col.name},
                )
            if col.check:
                validate_check_expression(col.check, col.name)
            if table.get_column(col.name) is not None or col.name.lower() in seen:
                continue
            seen.add(col.name.lower())
            new_defs.append(col)

        if not new_defs:
            return []
        return self._add(table, new_defs, conn)

    def _add(
        self,
        table: TableDef,
        new_defs: list[ColumnDef],
        conn: sqlite3.Connection | None,
    ) -> list[ColumnDef]:
        with self._lock, self._writing(conn) as c:
            position = len(table.columns)
            for col in new_defs:
                ddl = (
                    f"ALTER TABLE {quote_ident(table.name)} "
                    f"ADD COLUMN {quote_ident(col.name)} {col.kind.sql_type}"
                )
                if col.check:
                    ddl += f" CHECK ({col.check})"
                c.execute(ddl)
                c.execute(
                    "INSERT INTO _schema_columns "
                    "(table_name, name, kind, not_null, check_expr, position) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (table.name, col.name, col.kind.value, int(col.not_null), col.check, position),
                )
                position += 1
            self._tables[table.name.lower()] = table.with_columns(table.columns + tuple(new_defs))
            self._persist_fingerprint(c)

        logger.info(
            "Added columns",
            extra={
                "table": table.name,
                "columns": {c.name: c.kind.value for c in new_defs},
            },
        )
        return new_defs

    def drop_columns(
        self,
        name: str,
        names: list[str],
        conn: sqlite3.Connection | None = None,
    ) -> list[str]:
        """Drop columns and their data. DESTRUCTIVE AND IRREVERSIBLE.

        There is no soft-delete and no undo: the cell values of every row in
        these columns are gone once the transaction commits. Audit history
        keeps the old values that were recorded before the drop.

        Raises:
            NotFoundError: If the table does not exist
            ValidationError: If a column is unknown, the key, or reserved
        """
        table = self.require_table(name)
        to_drop = []
        for column in names:
            if table.is_reserved(column):
                raise ValidationError(
                    f"Cannot drop key or reserved column '{column}'",
                    details={"table": table.name, "column": column},
                )
            col = table.get_column(column)
            if col is None:
                raise ValidationError(
                    f"Unknown column '{column}' in table '{table.name}'",
                    details={"table": table.name, "column": column},
                )
            if col not in to_drop:
                to_drop.append(col)

        if not to_drop:
            return []

        with self._lock, self._writing(conn) as c:
            for col in to_drop:
                c.execute(
                    f"ALTER TABLE {quote_ident(table.name)} DROP COLUMN {quote_ident(col.name)}"
                )
                c.execute(
                    "DELETE FROM _schema_columns WHERE table_name = ? AND name = ?",
                    (table.name, col.name),
                )
            remaining = tuple(col for col in table.columns if col not in to_drop)
            self._tables[table.name.lower()] = table.with_columns(remaining)
            self._persist_fingerprint(c)

        dropped = [col.name for col in to_drop]
        logger.warning("Dropped columns", extra={"table": table.name, "columns": dropped})
        return dropped

    def rename_column(
        self,
        name: str,
        old: str,
        new: str,
        conn: sqlite3.Connection | None = None,
    ) -> TableDef:
        """Rename a cell column, keeping its kind and data.

        Raises:
            ValidationError: If old is unknown or new is taken, reserved or malformed
        """
        table = self.require_table(name)
        col = table.get_column(old)
        if col is None:
            raise ValidationError(
                f"Unknown column '{old}' in table '{table.name}'",
                details={"table": table.name, "column": old},
            )
        validate_identifier(new, "column")
        if table.is_reserved(new):
            raise ValidationError(f"Column '{new}' is reserved in table '{table.name}'")
        existing = table.get_column(new)
        if existing is not None and existing is not col:
            raise ValidationError(
                f"Column '{new}' already exists in table '{table.name}'",
                details={"table": table.name, "column": new},
            )

        check = col.check
        if check:
            check = re.sub(rf"\b{re.escape(col.name)}\b", new, check, flags=re.IGNORECASE)
        renamed = ColumnDef(name=new, kind=col.kind, not_null=col.not_null, check=check)

        with self._lock, self._writing(conn) as c:
            c.execute(
                f"ALTER TABLE {quote_ident(table.name)} "
                f"RENAME COLUMN {quote_ident(col.name)} TO {quote_ident(new)}"
            )
            c.execute(
                "UPDATE _schema_columns SET name = ?, check_expr = ? "
                "WHERE table_name = ? AND name = ?",
                (new, check, table.name, col.name),
            )
            columns = tuple(renamed if c_ is col else c_ for c_ in table.columns)
            updated = table.with_columns(columns)
            self._tables[table.name.lower()] = updated
            self._persist_fingerprint(c)

        logger.info(
            "Renamed column", extra={"table": table.name, "old": col.name, "new": new}
        )
        return updated

    # ------------------------------------------------------------------
    # Fingerprint / serialization
    # ------------------------------------------------------------------

    def _persist_fingerprint(self, conn: sqlite3.Connection) -> None:
        self._fingerprint = self._compute_fingerprint()
        Database.set_meta(conn, SCHEMA_HASH_KEY, self._fingerprint)

    def _compute_fingerprint(self) -> str:
        """Compute SHA-256 fingerprint of the catalog.

        The fingerprint is computed from a canonical JSON representation
        of all tables, sorted by name for determinism.

        Returns:
            Fingerprint string in format 'sha256:<hash>'
        """
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        hash_bytes = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"sha256:{hash_bytes}"

    def to_dict(self) -> dict:
        """Convert the catalog to a dictionary, tables sorted by name."""
        return {"tables": [t.to_dict() for t in self.tables()]}

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)
