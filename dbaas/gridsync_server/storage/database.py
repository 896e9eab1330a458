"""
SQLite database handle for GridSync.

One SQLite file holds every logical table plus the internal bookkeeping
tables. Connections are opened per operation; SQLite's own locking
(BEGIN IMMEDIATE + busy_timeout) serializes writers, so the server never
invents its own locking for row writes.

Invariants:
    - Every write runs inside transaction(), which is BEGIN IMMEDIATE
    - A failed transaction is always rolled back before the error propagates
    - sqlite3 errors surface as StorageError (fatal) or ValidationError
      (constraint violations), never as raw sqlite3 exceptions
    - Internal tables are prefixed with '_' and never exposed as user tables

How to change safely:
    - Add internal tables with CREATE TABLE IF NOT EXISTS and bump SCHEMA_VERSION
    - Never change existing internal column meanings in place
    - Test with WAL mode on and off

Table schema:
    _meta:
        - key TEXT PRIMARY KEY ('max_row_version', 'schema_hash')
        - value TEXT

    _schema_tables / _schema_columns:
        - catalog of logical tables, key columns and typed columns

    _audit_log:
        - id INTEGER PRIMARY KEY AUTOINCREMENT
        - ts, actor, table_name, row_key, column_name
        - old_value, new_value (JSON text), row_version

    _presence:
        - actor TEXT PRIMARY KEY, location TEXT, updated_at INTEGER (Unix ms)

    _locks:
        - resource_key TEXT PRIMARY KEY, holder TEXT,
          acquired_at INTEGER (Unix ms), ttl_ms INTEGER
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import StorageError, ValidationError

logger = logging.getLogger(__name__)


class Database:
    """Single-file SQLite database shared by all sync components.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> db = Database("/var/lib/gridsync/gridsync.db")
        >>> db.initialize()
        >>> with db.transaction() as conn:
        ...     conn.execute("UPDATE _meta SET value = value WHERE key = 'x'")
    """

    # Internal schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the database handle.

        Args:
            db_path: SQLite database file path
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection in autocommit mode.

        Yields:
            SQLite connection

        Raises:
            StorageError: If the database cannot be opened
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except (OSError, sqlite3.Error) as e:
            raise StorageError(
                f"Cannot open database: {e}", details={"db_path": str(self.db_path)}
            ) from e

        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            conn.execute(f"PRAGMA cache_size = {int(self.cache_size_pages)}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            conn.close()
            raise StorageError(
                f"Cannot configure database: {e}", details={"db_path": str(self.db_path)}
            ) from e

        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT.

        Yields:
            SQLite connection with an open write transaction

        Raises:
            ValidationError: If a constraint (CHECK, NOT NULL, UNIQUE) is violated
            StorageError: If the database is busy past the timeout or broken
        """
        with self.connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Cannot start write transaction: {e}") from e

            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                self._rollback(conn)
                raise ValidationError(f"Constraint violated: {e}") from e
            except sqlite3.Error as e:
                self._rollback(conn)
                raise StorageError(f"Write transaction failed: {e}") from e
            except Exception:
                self._rollback(conn)
                raise

    @contextmanager
    def read_transaction(self) -> Iterator[sqlite3.Connection]:
        """Run several reads against one consistent snapshot."""
        with self.connect() as conn:
            try:
                conn.execute("BEGIN")
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                raise StorageError(f"Read failed: {e}") from e
            except Exception:
                self._rollback(conn)
                raise

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def initialize(self) -> None:
        """Create internal tables if they don't exist."""
        with self.connect() as conn:
            try:
                self._create_schema(conn)
            except sqlite3.Error as e:
                raise StorageError(f"Cannot create internal schema: {e}") from e
        logger.info(f"Initialized database: {self.db_path}")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create internal schema."""
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS _schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            -- Global counters and fingerprints
            CREATE TABLE IF NOT EXISTS _meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            INSERT OR IGNORE INTO _meta (key, value) VALUES ('max_row_version', '0');

            -- Logical table catalog
            CREATE TABLE IF NOT EXISTS _schema_tables (
                name TEXT PRIMARY KEY,
                key_column TEXT NOT NULL,
                key_kind TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS _schema_columns (
                table_name TEXT NOT NULL,
                name TEXT NOT NULL,
                kind TEXT NOT NULL,
                not_null INTEGER NOT NULL DEFAULT 0,
                check_expr TEXT,
                position INTEGER NOT NULL,
                PRIMARY KEY (table_name, name)
            );

            -- Append-only cell mutation history
            CREATE TABLE IF NOT EXISTS _audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts INTEGER NOT NULL,
                actor TEXT NOT NULL,
                table_name TEXT NOT NULL,
                row_key TEXT NOT NULL,
                column_name TEXT NOT NULL,
                old_value TEXT,
                new_value TEXT,
                row_version INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_version ON _audit_log(row_version);
            CREATE INDEX IF NOT EXISTS idx_audit_ts ON _audit_log(ts);
            CREATE INDEX IF NOT EXISTS idx_audit_actor ON _audit_log(actor);
            CREATE INDEX IF NOT EXISTS idx_audit_row ON _audit_log(table_name, row_key);

            -- Collaboration state
            CREATE TABLE IF NOT EXISTS _presence (
                actor TEXT PRIMARY KEY,
                location TEXT,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS _locks (
                resource_key TEXT PRIMARY KEY,
                holder TEXT NOT NULL,
                acquired_at INTEGER NOT NULL,
                ttl_ms INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_locks_holder ON _locks(holder);

            -- Record schema version
            INSERT OR IGNORE INTO _schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    def get_meta(self, key: str, conn: sqlite3.Connection | None = None) -> str | None:
        """Read a value from the _meta table."""
        if conn is not None:
            row = conn.execute("SELECT value FROM _meta WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None
        with self.connect() as own:
            return self.get_meta(key, own)

    @staticmethod
    def set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
        """Write a value to the _meta table on an open transaction."""
        conn.execute(
            """
            INSERT INTO _meta (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )

    def integrity_check(self, quick: bool = False) -> list[str]:
        """Run PRAGMA integrity_check (or quick_check).

        Returns:
            List of problems; ["ok"] when the database is healthy
        """
        pragma = "quick_check" if quick else "integrity_check"
        with self.connect() as conn:
            try:
                return [row[0] for row in conn.execute(f"PRAGMA {pragma}")]
            except sqlite3.Error as e:
                raise StorageError(f"Integrity check failed to run: {e}") from e

    def backup(self, dest_path: str) -> Path:
        """Create a consistent copy of the database using the SQLite backup API.

        Args:
            dest_path: Destination file (overwritten)

        Returns:
            Path of the written snapshot
        """
        dest = Path(dest_path)
        dest.parent.mkdir(parents=True, exist_ok=True)

        with self.connect() as source_conn:
            dest_conn = sqlite3.connect(str(dest))
            try:
                source_conn.backup(dest_conn)
            except sqlite3.Error as e:
                raise StorageError(f"Backup failed: {e}", details={"dest": str(dest)}) from e
            finally:
                dest_conn.close()

        logger.info("Database snapshot written", extra={"dest": str(dest)})
        return dest
