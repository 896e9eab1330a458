"""
Admin CLI tool for GridSync.

This tool operates directly on the SQLite file:
- integrity: Run PRAGMA integrity_check
- snapshot: Write a consistent copy with the SQLite backup API
- dump: Print table rows (tombstones included) as JSON
- schema: Print the catalog and its fingerprint
- purge-audit: Delete audit entries older than a timestamp

Usage:
    gridsync-admin --db ./data/gridsync.db integrity
    gridsync-admin snapshot /backups/gridsync-2024-01-01.db
    gridsync-admin dump --table orders > orders.json
    gridsync-admin purge-audit --before-ms 1704067200000

Invariants:
    - A failed integrity check exits non-zero
    - JSON output is deterministic (sorted keys)

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripts parsing it
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from ..config import StorageConfig
from ..errors import GridSyncError
from ..schema import SchemaRegistry
from ..storage import Database, VersionCounter
from ..sync.audit import AuditLog
from ..sync.row_store import RowStore

logger = logging.getLogger(__name__)


class AdminCLI:
    """Offline administration commands.

    Example:
        >>> cli = AdminCLI(Database("./data/gridsync.db"))
        >>> cli.integrity()
        ['ok']
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self.db.initialize()
        self.registry = SchemaRegistry(db)
        self.registry.load()
        self.counter = VersionCounter(db)
        self.audit = AuditLog(db)

    def integrity(self) -> list[str]:
        return self.db.integrity_check()

    def snapshot(self, dest_path: str) -> str:
        return str(self.db.backup(dest_path))

    def dump(self, table: str | None = None) -> dict[str, Any]:
        """All rows of one table (or every table), tombstones included."""
        tables = [self.registry.require_table(table)] if table else list(self.registry.tables())
        rows = RowStore(self.counter, self.audit)
        with self.db.read_transaction() as conn:
            output: dict[str, Any] = {
                "max_row_version": self.counter.current(conn),
                "tables": {},
            }
            for table_def in tables:
                output["tables"][table_def.name] = [
                    row.to_dict()
                    for row in rows.snapshot(conn, table_def, include_deleted=True)
                ]
        return output

    def schema(self) -> dict[str, Any]:
        return {"fingerprint": self.registry.fingerprint, "schema": self.registry.to_dict()}

    def purge_audit(self, before_ms: int) -> int:
        return asyncio.run(self.audit.purge_before(before_ms))


def main() -> None:
    """CLI entry point for the admin tool."""
    parser = argparse.ArgumentParser(description="GridSync administration tool")
    parser.add_argument("--db", help="SQLite database path (default: $DB_PATH)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("integrity", help="Run PRAGMA integrity_check")

    snapshot_parser = subparsers.add_parser("snapshot", help="Write a consistent database copy")
    snapshot_parser.add_argument("out", help="Destination file")

    dump_parser = subparsers.add_parser("dump", help="Dump rows as JSON")
    dump_parser.add_argument("--table", "-t", help="Only this table")

    subparsers.add_parser("schema", help="Print the schema catalog")

    purge_parser = subparsers.add_parser("purge-audit", help="Delete old audit entries")
    purge_parser.add_argument(
        "--before-ms", type=int, required=True, help="Delete entries with ts before this (Unix ms)"
    )

    args = parser.parse_args()
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s - %(message)s")

    storage = StorageConfig.from_env()
    db = Database(
        db_path=args.db or storage.db_path,
        wal_mode=storage.wal_mode,
        busy_timeout_ms=storage.busy_timeout_ms,
    )

    try:
        cli = AdminCLI(db)

        if args.command == "integrity":
            problems = cli.integrity()
            if problems == ["ok"]:
                print("ok")
                sys.exit(0)
            print(f"Integrity check FAILED with {len(problems)} problem(s):")
            for problem in problems:
                print(f"  - {problem}")
            sys.exit(1)

        elif args.command == "snapshot":
            path = cli.snapshot(args.out)
            print(f"Snapshot written to {path}", file=sys.stderr)

        elif args.command == "dump":
            print(json.dumps(cli.dump(args.table), indent=2, sort_keys=True))

        elif args.command == "schema":
            print(json.dumps(cli.schema(), indent=2, sort_keys=True))

        elif args.command == "purge-audit":
            removed = cli.purge_audit(args.before_ms)
            print(f"Removed {removed} audit entries", file=sys.stderr)

    except GridSyncError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
