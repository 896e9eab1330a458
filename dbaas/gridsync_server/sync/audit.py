"""
Append-only audit log of accepted cell mutations.

One entry is written per changed column of every accepted upsert, plus one
'deleted' entry per tombstone or resurrection. Entries are appended on the
same transaction as the row write, so the log never records a change that
did not commit. Old and new values are stored as JSON text.

Invariants:
    - Entries are never updated; purge_before() is the only removal
    - id order equals append order, so id is a replay cursor

How to change safely:
    - Add columns with defaults; readers rely on the existing ones
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from ..storage import codec
from ..storage.database import Database

logger = logging.getLogger(__name__)

MAX_QUERY_LIMIT = 1000


@dataclass(frozen=True)
class AuditEntry:
    """A single cell mutation.

    Attributes:
        ts: Mutation time (Unix ms)
        actor: Who made the change
        table: Logical table name
        row_key: Row key as text
        column: Changed column ('deleted' for tombstones)
        old_value: Value before the change
        new_value: Value after the change
        row_version: Version stamped by the change
        id: Log position (None until appended)
    """

    ts: int
    actor: str
    table: str
    row_key: str
    column: str
    old_value: Any
    new_value: Any
    row_version: int
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ts": self.ts,
            "actor": self.actor,
            "table": self.table,
            "row_key": self.row_key,
            "column": self.column,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "row_version": self.row_version,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> AuditEntry:
        return cls(
            id=row["id"],
            ts=row["ts"],
            actor=row["actor"],
            table=row["table_name"],
            row_key=row["row_key"],
            column=row["column_name"],
            old_value=_load(row["old_value"]),
            new_value=_load(row["new_value"]),
            row_version=row["row_version"],
        )


def _dump(value: Any) -> str | None:
    return None if value is None else codec.dumps(value)


def _load(text: str | None) -> Any:
    return None if text is None else json.loads(text)


def clamp_limit(limit: int | None, default: int = 200) -> int:
    """Clamp a page size to 1..MAX_QUERY_LIMIT."""
    if limit is None:
        return default
    return max(1, min(int(limit), MAX_QUERY_LIMIT))


class AuditLog:
    """Audit log stored in the _audit_log table."""

    def __init__(self, db: Database, default_limit: int = 200) -> None:
        self.db = db
        self.default_limit = default_limit

    def append(self, conn: sqlite3.Connection, entries: list[AuditEntry]) -> None:
        """Append entries on the caller's write transaction."""
        if not entries:
            return
        conn.executemany(
            """
            INSERT INTO _audit_log (ts, actor, table_name, row_key, column_name,
                                    old_value, new_value, row_version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    e.ts,
                    e.actor,
                    e.table,
                    e.row_key,
                    e.column,
                    _dump(e.old_value),
                    _dump(e.new_value),
                    e.row_version,
                )
                for e in entries
            ],
        )

    def columns_written_since(
        self,
        conn: sqlite3.Connection,
        table: str,
        row_key: Any,
        since_version: int,
    ) -> set[str]:
        """Columns of one row with audited changes after since_version."""
        cursor = conn.execute(
            "SELECT DISTINCT column_name FROM _audit_log "
            "WHERE table_name = ? AND row_key = ? AND row_version > ?",
            (table, str(row_key), int(since_version)),
        )
        return {row["column_name"] for row in cursor.fetchall()}

    async def since(
        self,
        since_version: int | None = None,
        after_id: int | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Entries after a version and/or id cursor, in append order."""
        clauses = []
        params: list[Any] = []
        if since_version is not None:
            clauses.append("row_version > ?")
            params.append(int(since_version))
        if after_id is not None:
            clauses.append("id > ?")
            params.append(int(after_id))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(clamp_limit(limit, self.default_limit))

        with self.db.connect() as conn:
            cursor = conn.execute(
                f"SELECT * FROM _audit_log {where} ORDER BY id ASC LIMIT ?", params
            )
            return [AuditEntry.from_row(row) for row in cursor.fetchall()]

    async def query(
        self,
        actor: str | None = None,
        table: str | None = None,
        row_key: str | None = None,
        column: str | None = None,
        since_ms: int | None = None,
        until_ms: int | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[AuditEntry]:
        """Filtered audit search, newest first.

        Args:
            actor: Exact actor match
            table: Exact table match
            row_key: Exact row key match
            column: Exact column match
            since_ms: Only entries with ts >= since_ms
            until_ms: Only entries with ts <= until_ms
            limit: Page size, clamped to 1..1000
            offset: Rows to skip

        Returns:
            Matching entries ordered by id descending
        """
        clauses = []
        params: list[Any] = []
        for column_name, value in (
            ("actor", actor),
            ("table_name", table),
            ("row_key", row_key),
            ("column_name", column),
        ):
            if value is not None:
                clauses.append(f"{column_name} = ?")
                params.append(str(value))
        if since_ms is not None:
            clauses.append("ts >= ?")
            params.append(int(since_ms))
        if until_ms is not None:
            clauses.append("ts <= ?")
            params.append(int(until_ms))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([clamp_limit(limit, self.default_limit), max(0, int(offset))])

        with self.db.connect() as conn:
            cursor = conn.execute(
                f"SELECT * FROM _audit_log {where} ORDER BY id DESC LIMIT ? OFFSET ?", params
            )
            return [AuditEntry.from_row(row) for row in cursor.fetchall()]

    async def purge_before(self, before_ms: int) -> int:
        """Delete entries older than before_ms. Returns the number removed."""
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM _audit_log WHERE ts < ?", (int(before_ms),))
            removed = cursor.rowcount

        logger.info("Purged audit log", extra={"before_ms": before_ms, "removed": removed})
        return removed
