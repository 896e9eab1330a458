"""
Unit tests for the admin CLI commands.
"""

import tempfile
import time
from pathlib import Path

import pytest

from dbaas.gridsync_server.errors import NotFoundError
from dbaas.gridsync_server.schema import SchemaRegistry
from dbaas.gridsync_server.storage import Database, VersionCounter
from dbaas.gridsync_server.sync import AuditLog, RowStore
from dbaas.gridsync_server.tools import AdminCLI


@pytest.fixture
def tmpdir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db(tmpdir):
    database = Database(str(tmpdir / "gridsync.db"), wal_mode=False)
    database.initialize()

    registry = SchemaRegistry(database)
    registry.load()
    registry.ensure_table("orders")
    registry.ensure_columns("orders", {"qty": 1})
    table = registry.require_table("orders")
    store = RowStore(VersionCounter(database), AuditLog(database))
    with database.transaction() as conn:
        store.upsert(conn, table, 1, {"qty": 1}, "alice")
        store.upsert(conn, table, 2, {"qty": 2}, "alice")
        store.delete(conn, table, store.load(conn, table, 2), "alice")
    return database


class TestAdminCLI:
    """Tests for AdminCLI."""

    def test_integrity(self, db):
        assert AdminCLI(db).integrity() == ["ok"]

    def test_dump_includes_tombstones(self, db):
        output = AdminCLI(db).dump()

        assert output["max_row_version"] == 3
        rows = output["tables"]["orders"]
        assert [(r["key"], r["deleted"]) for r in rows] == [(1, False), (2, True)]

    def test_dump_unknown_table(self, db):
        with pytest.raises(NotFoundError):
            AdminCLI(db).dump("missing")

    def test_schema(self, db):
        output = AdminCLI(db).schema()
        assert output["fingerprint"].startswith("sha256:")

    def test_snapshot_is_readable(self, db, tmpdir):
        path = AdminCLI(db).snapshot(str(tmpdir / "copy.db"))

        copy = AdminCLI(Database(path, wal_mode=False))
        assert copy.dump()["max_row_version"] == 3

    def test_purge_audit(self, db):
        cli = AdminCLI(db)
        assert cli.purge_audit(int(time.time() * 1000) + 1000) == 3
        assert cli.purge_audit(int(time.time() * 1000) + 1000) == 0
