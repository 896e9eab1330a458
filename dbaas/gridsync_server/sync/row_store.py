"""
Versioned row store for GridSync tables.

Each logical table is one SQLite table holding the key column, the three
bookkeeping columns (row_version, updated_at, deleted) and the dynamic cell
columns registered in the SchemaRegistry. Write helpers run on the
caller's open transaction so that version stamping, the row write and the
audit append commit together.

Invariants:
    - Every write stamps a fresh version from the VersionCounter
    - Deletion is a tombstone (deleted=1); cell values are kept
    - An upsert clears the tombstone
    - Only columns whose value actually changed are audited
    - Reads decode cells by their registered kind, never by content

How to change safely:
    - Keep all write helpers transaction-scoped (take conn, never commit)
    - Add read paths through RowQuery so identifiers stay validated
"""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any

from ..errors import ValidationError
from ..schema.types import TableDef
from ..storage import codec
from ..storage.query import Filter, OrderTerm, RowQuery
from ..storage.sql import quote_ident
from ..storage.version_counter import VersionCounter
from .audit import AuditEntry, AuditLog
from .models import Row

logger = logging.getLogger(__name__)


class RowStore:
    """Row reads and transaction-scoped row writes.

    Example:
        >>> with db.transaction() as conn:
        ...     current = store.load(conn, table, 7)
        ...     row = store.upsert(conn, table, 7, {"qty": 3}, "alice", current)
        >>> row.row_version
        1
    """

    def __init__(self, counter: VersionCounter, audit: AuditLog) -> None:
        self.counter = counter
        self.audit = audit

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def to_row(table: TableDef, record: sqlite3.Row) -> Row:
        """Decode a SQLite record into a Row projection."""
        return Row(
            table=table.name,
            key=record[table.key_column],
            row_version=record["row_version"],
            updated_at=record["updated_at"],
            deleted=bool(record["deleted"]),
            cells={col.name: codec.decode(col.kind, record[col.name]) for col in table.columns},
        )

    def load(self, conn: sqlite3.Connection, table: TableDef, key: int | str) -> Row | None:
        """Read one row (tombstones included) by key."""
        record = conn.execute(
            f"SELECT * FROM {quote_ident(table.name)} WHERE {quote_ident(table.key_column)} = ?",
            (key,),
        ).fetchone()
        return self.to_row(table, record) if record else None

    def read_since(
        self,
        conn: sqlite3.Connection,
        table: TableDef,
        since: int,
        limit: int | None = None,
    ) -> list[Row]:
        """Rows and tombstones with row_version > since, ascending."""
        sql = (
            f"SELECT * FROM {quote_ident(table.name)} WHERE row_version > ? "
            "ORDER BY row_version ASC"
        )
        params: list[Any] = [int(since)]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [self.to_row(table, record) for record in conn.execute(sql, params)]

    def snapshot(
        self,
        conn: sqlite3.Connection,
        table: TableDef,
        filters: list[Filter] | None = None,
        order_by: list[OrderTerm] | None = None,
        limit: int | None = None,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> list[Row]:
        """Current rows filtered and ordered through the query builder."""
        sql, params = (
            RowQuery(table, include_deleted=include_deleted)
            .filter(filters or [])
            .order_by(order_by or [])
            .limit(limit, offset)
            .build()
        )
        return [self.to_row(table, record) for record in conn.execute(sql, params)]

    # ------------------------------------------------------------------
    # Writes (caller owns the transaction)
    # ------------------------------------------------------------------

    def upsert(
        self,
        conn: sqlite3.Connection,
        table: TableDef,
        key: int | str | None,
        cells: dict[str, Any],
        actor: str,
        current: Row | None = None,
    ) -> Row:
        """Insert or update a row and audit the changed cells.

        Args:
            conn: Open write transaction
            table: Table definition including every column in cells
            key: Row key; None inserts with a server-assigned integer key
            cells: Column -> value; unknown columns with null values are ignored
            actor: Who is writing
            current: Row as loaded on this transaction (loaded if omitted)

        Returns:
            Full post-write projection of the row
        """
        if current is None and key is not None:
            current = self.load(conn, table, key)

        encoded: dict[str, Any] = {}
        for column, value in cells.items():
            col = table.get_column(column)
            if col is None:
                if value is None:
                    continue
                raise ValidationError(
                    f"Unknown column '{column}' in table '{table.name}'",
                    details={"table": table.name, "column": column},
                )
            if value is None and col.not_null:
                raise ValidationError(
                    f"Column '{col.name}' in table '{table.name}' cannot be null",
                    details={"table": table.name, "column": col.name},
                )
            encoded[col.name] = codec.encode(col.kind, value, col.name)

        version = self.counter.next(conn)
        now = int(time.time() * 1000)
        table_sql = quote_ident(table.name)
        key_sql = quote_ident(table.key_column)

        if current is None:
            columns = ["row_version", "updated_at", "deleted", *encoded]
            values: list[Any] = [version, now, 0, *encoded.values()]
            if key is not None:
                columns.insert(0, table.key_column)
                values.insert(0, key)
            cursor = conn.execute(
                f"INSERT INTO {table_sql} ({', '.join(quote_ident(c) for c in columns)}) "
                f"VALUES ({', '.join('?' for _ in values)})",
                values,
            )
            if key is None:
                key = cursor.lastrowid
        else:
            assignments = ['"row_version" = ?', '"updated_at" = ?', '"deleted" = 0']
            assignments.extend(f"{quote_ident(c)} = ?" for c in encoded)
            conn.execute(
                f"UPDATE {table_sql} SET {', '.join(assignments)} WHERE {key_sql} = ?",
                [version, now, *encoded.values(), key],
            )

        entries = []
        if current is not None and current.deleted:
            entries.append(
                AuditEntry(now, actor, table.name, str(key), "deleted", True, False, version)
            )
        for name, raw in encoded.items():
            col = table.get_column(name)
            old_value = current.cells.get(name) if current is not None else None
            new_value = codec.decode(col.kind, raw)
            if old_value != new_value:
                entries.append(
                    AuditEntry(
                        now, actor, table.name, str(key), name, old_value, new_value, version
                    )
                )
        self.audit.append(conn, entries)

        row = self.load(conn, table, key)
        logger.debug(
            "Upserted row",
            extra={
                "table": table.name,
                "key": key,
                "row_version": version,
                "changed": [e.column for e in entries],
            },
        )
        return row

    def delete(
        self,
        conn: sqlite3.Connection,
        table: TableDef,
        current: Row,
        actor: str,
    ) -> Row:
        """Tombstone a live row, leaving its cells untouched.

        Args:
            conn: Open write transaction
            table: Table definition
            current: The live row as loaded on this transaction
            actor: Who is deleting

        Returns:
            The tombstoned row
        """
        version = self.counter.next(conn)
        now = int(time.time() * 1000)
        conn.execute(
            f'UPDATE {quote_ident(table.name)} SET "row_version" = ?, "updated_at" = ?, '
            f'"deleted" = 1 WHERE {quote_ident(table.key_column)} = ?',
            (version, now, current.key),
        )
        self.audit.append(
            conn,
            [AuditEntry(now, actor, table.name, str(current.key), "deleted", False, True, version)],
        )

        logger.debug(
            "Deleted row",
            extra={"table": table.name, "key": current.key, "row_version": version},
        )
        return Row(
            table=table.name,
            key=current.key,
            row_version=version,
            updated_at=now,
            deleted=True,
            cells=dict(current.cells),
        )
