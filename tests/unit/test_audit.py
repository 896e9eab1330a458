"""
Unit tests for the audit log.
"""

import tempfile
from pathlib import Path

import pytest

from dbaas.gridsync_server.storage import Database
from dbaas.gridsync_server.sync import AuditEntry, AuditLog
from dbaas.gridsync_server.sync.audit import MAX_QUERY_LIMIT, clamp_limit


class TestAuditLog:
    """Tests for AuditLog."""

    @pytest.fixture
    def db(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            database = Database(str(Path(tmpdir) / "gridsync.db"), wal_mode=False)
            database.initialize()
            yield database

    @pytest.fixture
    def audit(self, db):
        log = AuditLog(db)
        with db.transaction() as conn:
            log.append(
                conn,
                [
                    AuditEntry(1000, "alice", "orders", "1", "qty", None, 2, 1),
                    AuditEntry(2000, "bob", "orders", "1", "qty", 2, 3, 2),
                    AuditEntry(3000, "alice", "items", "k1", "tags", None, ["a", "b"], 3),
                ],
            )
        return log

    @pytest.mark.asyncio
    async def test_since_pages_forward(self, audit):
        entries = await audit.since()
        assert [e.row_version for e in entries] == [1, 2, 3]
        assert entries[2].new_value == ["a", "b"]

        after = await audit.since(after_id=entries[0].id, limit=1)
        assert [e.row_version for e in after] == [2]

        by_version = await audit.since(since_version=2)
        assert [e.table for e in by_version] == ["items"]

    @pytest.mark.asyncio
    async def test_query_filters_newest_first(self, audit):
        entries = await audit.query(actor="alice")
        assert [e.row_version for e in entries] == [3, 1]

        entries = await audit.query(table="orders", column="qty", since_ms=1500)
        assert [e.actor for e in entries] == ["bob"]

        entries = await audit.query(until_ms=2000, limit=1, offset=1)
        assert [e.row_version for e in entries] == [1]

    @pytest.mark.asyncio
    async def test_purge_before(self, audit):
        removed = await audit.purge_before(2500)
        assert removed == 2
        assert [e.row_version for e in await audit.since()] == [3]

    def test_to_dict(self):
        entry = AuditEntry(1, "a", "t", "k", "c", None, True, 9, id=4)
        assert entry.to_dict() == {
            "id": 4,
            "ts": 1,
            "actor": "a",
            "table": "t",
            "row_key": "k",
            "column": "c",
            "old_value": None,
            "new_value": True,
            "row_version": 9,
        }

    def test_clamp_limit(self):
        assert clamp_limit(None, 200) == 200
        assert clamp_limit(0) == 1
        assert clamp_limit(5000) == MAX_QUERY_LIMIT
