"""
Integration tests for SyncService.

These run the full write path (validation, provisioning, conflict
detection, version stamping, audit, publish) against a real SQLite file.

Tests cover:
- Row version monotonicity and incremental reads
- Conflict and non-conflict scenarios for stale writers
- Schema inference and first-write-wins typing
- Batch atomicity on validation and constraint errors
- Long-poll timeout and wake-up
- Presence, locks and audit pass-throughs
"""

import asyncio
import tempfile
from pathlib import Path

import pytest

from dbaas.gridsync_server.errors import KeyMismatchError, NotFoundError, ValidationError
from dbaas.gridsync_server.schema import ColumnDef, ColumnKind, SchemaRegistry
from dbaas.gridsync_server.storage import Database, Filter
from dbaas.gridsync_server.sync import CellEdit, RowEdit, SyncService


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmpdir:
        database = Database(str(Path(tmpdir) / "gridsync.db"), wal_mode=False)
        database.initialize()
        yield database


@pytest.fixture
def service(db):
    registry = SchemaRegistry(db)
    registry.load()
    return SyncService(db, registry, long_poll_max_ms=5000)


async def bump_to(service: SyncService, version: int) -> None:
    """Write to a scratch table until the counter reaches version."""
    while service.counter.current() < version:
        await service.upsert_cells([CellEdit("scratch", 1, "n", 1)], actor="setup")


class TestVersioning:
    """Row version and incremental read properties."""

    @pytest.mark.asyncio
    async def test_versions_strictly_increase_per_key(self, service):
        seen = []
        for qty in range(5):
            result = await service.upsert_cells([CellEdit("orders", 1, "qty", qty)], "alice")
            row = await service.get_row("orders", 1)
            assert row.row_version == result.max_row_version
            assert result.rows[0].row_version == row.row_version
            seen.append(row.row_version)

        assert seen == sorted(set(seen))

    @pytest.mark.asyncio
    async def test_read_since_returns_exactly_newer_rows(self, service):
        for key in (1, 2, 3):
            await service.upsert_cells([CellEdit("orders", key, "qty", key)], "alice")
        await service.delete_rows("orders", [2], actor="alice")

        result = await service.read_since("orders", 2)
        again = await service.read_since("orders", 2)

        assert [(p.key, p.row_version, p.deleted) for p in result.patches] == [
            (3, 3, False),
            (2, 4, True),
        ]
        assert result.max_row_version == 4
        assert again == result

    @pytest.mark.asyncio
    async def test_read_since_unknown_table_is_empty(self, service):
        result = await service.read_since("missing", 0)
        assert result.patches == []

    @pytest.mark.asyncio
    async def test_read_since_all_tables_with_limit(self, service):
        await service.upsert_cells([CellEdit("orders", 1, "qty", 1)], "a")
        await service.upsert_cells([CellEdit("items", "k1", "qty", 1)], "a")
        await service.upsert_cells([CellEdit("orders", 2, "qty", 1)], "a")

        page = await service.read_since(None, 0, limit=2)
        assert [(p.table, p.row_version) for p in page.patches] == [("orders", 1), ("items", 2)]
        assert page.has_more is True
        assert page.max_row_version == 2

        rest = await service.read_since(None, page.max_row_version, limit=2)
        assert [p.row_version for p in rest.patches] == [3]
        assert rest.has_more is False

    @pytest.mark.asyncio
    async def test_full_table_page_ignores_other_tables(self, service):
        await service.upsert_cells([CellEdit("orders", 1, "qty", 1)], "a")
        await service.upsert_cells([CellEdit("orders", 2, "qty", 1)], "a")
        await service.upsert_cells([CellEdit("items", "k1", "qty", 1)], "a")

        page = await service.read_since("orders", 0, limit=2)

        assert [p.row_version for p in page.patches] == [1, 2]
        assert page.has_more is False
        assert page.max_row_version == 3

    @pytest.mark.asyncio
    async def test_table_page_with_more_rows(self, service):
        for key in (1, 2, 3):
            await service.upsert_cells([CellEdit("orders", key, "qty", key)], "a")

        page = await service.read_since("orders", 0, limit=2)

        assert page.has_more is True
        assert page.max_row_version == 2


class TestConflicts:
    """Optimistic concurrency scenarios."""

    @pytest.fixture
    async def row_at_five(self, service):
        await bump_to(service, 4)
        result = await service.upsert_cells([CellEdit("orders", 1, "col", "A")], "server")
        assert result.max_row_version == 5
        return result.rows[0]

    @pytest.mark.asyncio
    async def test_stale_divergent_write_conflicts(self, service, row_at_five):
        result = await service.upsert_cells(
            [CellEdit("orders", 1, "col", "B", base_version=3)], "client"
        )

        assert result.applied_count == 0
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert (conflict.column, conflict.server_value, conflict.server_version) == (
            "col",
            "A",
            5,
        )

        row = await service.get_row("orders", 1)
        assert row.row_version == 5
        assert row.cells["col"] == "A"

    @pytest.mark.asyncio
    async def test_stale_matching_write_applies(self, service, row_at_five):
        result = await service.upsert_cells(
            [
                CellEdit("orders", 1, "col", "A", base_version=3),
                CellEdit("orders", 1, "col2", "Z", base_version=3),
            ],
            "client",
        )

        assert result.conflicts == []
        assert result.applied_count == 1
        row = await service.get_row("orders", 1)
        assert row.row_version == 6
        assert row.cells == {"col": "A", "col2": "Z"}

    @pytest.mark.asyncio
    async def test_resubmitted_write_never_conflicts(self, service):
        edit = CellEdit("orders", 1, "qty", 3)
        first = await service.upsert_cells([edit], "alice")
        await service.upsert_cells([CellEdit("orders", 1, "note", "x")], "bob")

        stale = CellEdit("orders", 1, "qty", 3, base_version=first.max_row_version)
        result = await service.upsert_cells([stale], "alice")
        assert result.conflicts == []

    @pytest.mark.asyncio
    async def test_conflicting_row_does_not_block_others(self, service, row_at_five):
        result = await service.upsert_cells(
            [
                CellEdit("orders", 1, "col", "B", base_version=3),
                CellEdit("orders", 2, "col", "C"),
            ],
            "client",
        )
        assert result.applied_count == 1
        assert [r.key for r in result.rows] == [2]
        assert len(result.conflicts) == 1

    @pytest.mark.asyncio
    async def test_matching_write_resurrects_tombstone(self, service):
        first = await service.upsert_cells([CellEdit("orders", 1, "col", "A")], "a")
        await service.delete_rows("orders", [1], actor="b")

        result = await service.upsert_cells(
            [CellEdit("orders", 1, "col", "A", base_version=first.max_row_version)], "a"
        )

        assert result.conflicts == []
        assert result.applied_count == 1
        row = await service.get_row("orders", 1)
        assert row.deleted is False
        assert row.row_version == 3

    @pytest.mark.asyncio
    async def test_divergent_write_to_tombstone_conflicts(self, service):
        first = await service.upsert_cells([CellEdit("orders", 1, "col", "A")], "a")
        await service.delete_rows("orders", [1], actor="b")

        result = await service.upsert_cells(
            [CellEdit("orders", 1, "col", "B", base_version=first.max_row_version)], "a"
        )

        assert [(c.column, c.server_value) for c in result.conflicts] == [("col", "A")]
        assert (await service.get_row("orders", 1)).deleted is True

    @pytest.mark.asyncio
    async def test_stale_write_over_cleared_cell_conflicts(self, service):
        first = await service.upsert_cells([CellEdit("orders", 1, "col", "A")], "a")
        await service.upsert_cells([CellEdit("orders", 1, "col", None)], "b")

        result = await service.upsert_cells(
            [CellEdit("orders", 1, "col", "B", base_version=first.max_row_version)], "c"
        )

        assert result.applied_count == 0
        assert [(c.column, c.server_value, c.server_version) for c in result.conflicts] == [
            ("col", None, 2)
        ]
        assert (await service.get_row("orders", 1)).cells == {"col": None}

    @pytest.mark.asyncio
    async def test_stale_write_to_never_written_cell_applies(self, service):
        first = await service.upsert_cells(
            [CellEdit("orders", 1, "col", "A"), CellEdit("orders", 2, "note", "x")], "a"
        )
        await service.upsert_cells([CellEdit("orders", 1, "col", "A2")], "b")

        result = await service.upsert_cells(
            [CellEdit("orders", 1, "note", "y", base_version=first.max_row_version)], "c"
        )

        assert result.conflicts == []
        assert (await service.get_row("orders", 1)).cells == {"col": "A2", "note": "y"}


class TestSchemaInference:
    """Lazy provisioning and first-write-wins typing."""

    @pytest.mark.asyncio
    async def test_kinds_inferred_and_fixed(self, service):
        await service.upsert_rows(
            "stock",
            [RowEdit(key=None, cells={"id": "k1", "qty": 3, "price": 2.5, "active": True})],
            "alice",
        )
        table = await service.describe_table("stock")
        assert table.key_kind == ColumnKind.TEXT
        assert {c.name: c.kind for c in table.columns} == {
            "qty": ColumnKind.INTEGER,
            "price": ColumnKind.REAL,
            "active": ColumnKind.BOOLEAN,
        }

        await service.upsert_rows("stock", [RowEdit(key="k1", cells={"qty": 3.5})], "alice")

        table = await service.describe_table("stock")
        assert table.get_column("qty").kind == ColumnKind.INTEGER
        row = await service.get_row("stock", "k1")
        assert row.cells["qty"] == 3.5

    @pytest.mark.asyncio
    async def test_uncoercible_value_rejects_whole_batch(self, service):
        await service.upsert_cells([CellEdit("orders", 1, "qty", 1)], "alice")
        before = service.counter.current()

        with pytest.raises(ValidationError):
            await service.upsert_cells(
                [CellEdit("orders", 2, "qty", 5), CellEdit("orders", 3, "qty", "many")],
                "alice",
            )

        assert service.counter.current() == before
        assert await service.get_row("orders", 2) is None

    @pytest.mark.asyncio
    async def test_check_violation_rolls_back_and_restores_catalog(self, service):
        await service.ensure_table("orders")
        await service.add_columns(
            "orders", [ColumnDef("qty", ColumnKind.INTEGER, check="qty >= 0")]
        )

        with pytest.raises(ValidationError):
            await service.upsert_cells(
                [CellEdit("orders", 1, "note", "new column"), CellEdit("orders", 1, "qty", -1)],
                "alice",
            )

        table = await service.describe_table("orders")
        assert table.get_column("note") is None
        assert service.counter.current() == 0

    @pytest.mark.asyncio
    async def test_server_assigned_keys(self, service):
        result = await service.upsert_cells(
            [
                CellEdit("orders", -1, "qty", 1),
                CellEdit("orders", -1, "note", "first"),
                CellEdit("orders", -2, "qty", 2),
            ],
            "alice",
        )

        assert result.applied_count == 2
        assigned = {a.temp_key: a.key for a in result.assigned}
        assert set(assigned) == {-1, -2}
        assert assigned[-1] != assigned[-2]
        row = await service.get_row("orders", assigned[-1])
        assert row.cells == {"qty": 1, "note": "first"}

    @pytest.mark.asyncio
    async def test_declared_key_column_mismatch(self, service):
        await service.upsert_rows("items", [RowEdit("k1", {"qty": 1})], "a", key_column="sku")

        with pytest.raises(KeyMismatchError):
            await service.upsert_rows("items", [RowEdit("k2", {"qty": 1})], "a", key_column="id")

    @pytest.mark.asyncio
    async def test_rename_and_drop_columns(self, service):
        await service.upsert_cells([CellEdit("orders", 1, "qty", 2)], "a")
        await service.rename_column("orders", "qty", "quantity")
        row = await service.get_row("orders", 1)
        assert row.cells == {"quantity": 2}

        assert await service.drop_columns("orders", ["quantity"]) == ["quantity"]
        row = await service.get_row("orders", 1)
        assert row.cells == {}


class TestDeletesAndSnapshots:
    """Tombstones and filtered reads."""

    @pytest.mark.asyncio
    async def test_delete_reports_missing_and_skips_tombstones(self, service):
        await service.upsert_cells(
            [CellEdit("orders", 1, "qty", 1), CellEdit("orders", 2, "qty", 2)], "a"
        )

        result = await service.delete_rows("orders", [1, 99])
        assert result.deleted_count == 1
        assert result.missing == [99]

        again = await service.delete_rows("orders", [1])
        assert again.deleted_count == 0
        assert again.max_row_version == result.max_row_version

    @pytest.mark.asyncio
    async def test_delete_unknown_table(self, service):
        with pytest.raises(NotFoundError):
            await service.delete_rows("missing", [1])

    @pytest.mark.asyncio
    async def test_snapshot_filters_and_orders(self, service):
        await service.upsert_cells(
            [CellEdit("orders", key, "qty", key * 10) for key in (1, 2, 3, 4)], "a"
        )
        await service.delete_rows("orders", [4])

        result = await service.snapshot(
            "orders", filters=[Filter("qty", "ge", 20)], order_by="qty DESC"
        )
        assert [p.key for p in result.patches] == [3, 2]

        with_deleted = await service.snapshot("orders", include_deleted=True, limit=10)
        assert len(with_deleted.patches) == 4


class TestChangeDelivery:
    """Long-poll and subscription behavior."""

    @pytest.mark.asyncio
    async def test_long_poll_times_out_empty(self, service):
        await bump_to(service, 10)
        loop = asyncio.get_running_loop()
        started = loop.time()

        result = await service.long_poll_changes("orders", since=10, timeout_ms=300)

        assert result.patches == []
        assert loop.time() - started >= 0.25
        assert service.bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_long_poll_wakes_on_write(self, service):
        await bump_to(service, 10)

        async def writer():
            await asyncio.sleep(0.1)
            await service.upsert_cells([CellEdit("orders", 1, "qty", 1)], "alice")

        loop = asyncio.get_running_loop()
        started = loop.time()
        task = asyncio.create_task(writer())
        result = await service.long_poll_changes("orders", since=10, timeout_ms=2000)
        await task

        assert loop.time() - started < 1.0
        assert [p.row_version for p in result.patches] == [11]
        assert service.bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_long_poll_returns_existing_changes_immediately(self, service):
        await service.upsert_cells([CellEdit("orders", 1, "qty", 1)], "alice")
        result = await service.long_poll_changes("orders", since=0, timeout_ms=2000)
        assert len(result.patches) == 1

    @pytest.mark.asyncio
    async def test_one_event_per_table_after_commit(self, service):
        sub = service.subscribe_changes()
        await service.upsert_cells(
            [CellEdit("orders", 1, "qty", 1), CellEdit("items", "k1", "qty", 1)], "a"
        )

        events = [await sub.get(timeout=0.5), await sub.get(timeout=0.5)]
        sub.close()

        assert sorted(e.table for e in events) == ["items", "orders"]
        assert all(e.max_row_version == 2 for e in events)

    @pytest.mark.asyncio
    async def test_conflict_only_batch_publishes_nothing(self, service):
        await service.upsert_cells([CellEdit("orders", 1, "qty", 1)], "a")
        await service.upsert_cells([CellEdit("orders", 1, "qty", 2)], "a")
        sub = service.subscribe_changes(["orders"])

        await service.upsert_cells([CellEdit("orders", 1, "qty", 9, base_version=1)], "b")

        assert await sub.get(timeout=0.05) is None
        sub.close()


class TestCollaborationAndAudit:
    """Presence, locks, audit and status pass-throughs."""

    @pytest.mark.asyncio
    async def test_presence_and_locks(self, service):
        await service.heartbeat_presence("alice", "Sheet1!A1")
        assert [p.actor for p in await service.list_presence()] == ["alice"]

        assert await service.acquire_lock("cell:Sheet1/A1", "alice", 5) is True
        assert await service.acquire_lock("cell:Sheet1/A1", "bob", 5) is False
        assert [lock.holder for lock in await service.list_locks("cell:")] == ["alice"]
        assert await service.release_all_locks("alice") == 1

    @pytest.mark.asyncio
    async def test_audit_records_actor_per_cell(self, service):
        await service.upsert_cells([CellEdit("orders", 1, "qty", 1)], "alice")
        await service.upsert_cells([CellEdit("orders", 1, "qty", 2)], "bob")

        entries = await service.audit_log()
        assert [(e.actor, e.old_value, e.new_value) for e in entries] == [
            ("alice", None, 1),
            ("bob", 1, 2),
        ]
        assert [e.actor for e in await service.query_audit(column="qty")] == ["bob", "alice"]

    @pytest.mark.asyncio
    async def test_meta_and_health(self, service):
        await service.upsert_cells([CellEdit("orders", 1, "qty", 1)], "alice")

        meta = await service.meta()
        assert meta["max_row_version"] == 1
        assert meta["schema_hash"].startswith("sha256:")
        assert [t["name"] for t in meta["tables"]] == ["orders"]

        health = await service.health()
        assert health["status"] == "ok"
        assert health["max_row_version"] == 1

    @pytest.mark.asyncio
    async def test_actor_required(self, service):
        with pytest.raises(ValidationError):
            await service.upsert_cells([CellEdit("orders", 1, "qty", 1)], "")
