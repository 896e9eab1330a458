"""
Global row version counter.

Every row mutation is stamped with a value from this counter. The counter
lives in the _meta table of the same database as the rows, and is only
advanced on the connection of the transaction that writes the row, so the
version and the row state commit (or roll back) together.

Invariants:
    - next() strictly increases and never reuses a value
    - next() is only legal inside an open write transaction
    - Gaps are possible only when a transaction rolls back

How to change safely:
    - Never cache the counter in memory; the database row is authoritative
    - Never advance the counter outside the row-writing transaction
"""

from __future__ import annotations

import logging
import sqlite3

from .database import Database

logger = logging.getLogger(__name__)

META_KEY = "max_row_version"


class VersionCounter:
    """Persisted monotonically increasing 64-bit counter.

    Owned per Database instance so independent databases (and tests) never
    share state.

    Example:
        >>> counter = VersionCounter(db)
        >>> with db.transaction() as conn:
        ...     version = counter.next(conn)
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def next(self, conn: sqlite3.Connection) -> int:
        """Issue the next version on the caller's write transaction.

        Args:
            conn: Connection with an open BEGIN IMMEDIATE transaction

        Returns:
            The newly issued version

        Raises:
            RuntimeError: If called outside a transaction
        """
        if not conn.in_transaction:
            raise RuntimeError("VersionCounter.next() requires an open write transaction")

        conn.execute(
            "UPDATE _meta SET value = CAST(value AS INTEGER) + 1 WHERE key = ?",
            (META_KEY,),
        )
        row = conn.execute("SELECT value FROM _meta WHERE key = ?", (META_KEY,)).fetchone()
        return int(row["value"])

    def current(self, conn: sqlite3.Connection | None = None) -> int:
        """Read the highest committed version (or the in-transaction value)."""
        value = self.db.get_meta(META_KEY, conn)
        return int(value) if value is not None else 0
