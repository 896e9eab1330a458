"""
Sync service: the operation contracts consumed by transports.

SyncService wires the registry, row store, conflict detector, audit log,
change bus and collaboration state together and exposes them as async
operations. A write batch flows:

    validate (no I/O) -> BEGIN IMMEDIATE -> ensure table/columns
      -> per row: load, detect conflicts, stamp + write + audit
      -> COMMIT -> publish one ChangeEvent per touched table

Invariants:
    - Validation completes before the transaction starts; a ValidationError
      never leaves partial writes behind
    - A conflicting row is skipped; other rows in the batch still commit
    - Events are published strictly after COMMIT
    - A long-poll subscribes before it reads, so no commit can slip between
      the read and the wait

How to change safely:
    - Keep the body of a write batch free of awaits; the batch must not
      interleave with other coroutines between validation and commit
    - Add new operations here and keep the HTTP layer a thin adapter
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ..collab.locks import LockEntry, LockManager
from ..collab.presence import PresenceEntry, PresenceTracker
from ..errors import KeyMismatchError, ValidationError
from ..schema.registry import SchemaRegistry
from ..schema.types import (
    RESERVED_COLUMNS,
    ColumnDef,
    ColumnKind,
    TableDef,
    infer_key_kind,
    infer_kind,
)
from ..storage import codec
from ..storage.database import Database
from ..storage.query import Filter, parse_order_by
from ..storage.sql import validate_identifier, validate_table_name
from ..storage.version_counter import VersionCounter
from .audit import AuditEntry, AuditLog
from .change_bus import ChangeBus, Subscription
from .conflicts import ConflictDetector, is_stale
from .models import (
    AssignedKey,
    CellEdit,
    ChangeEvent,
    Conflict,
    DeleteResult,
    ReadResult,
    Row,
    RowEdit,
    WriteResult,
)
from .row_store import RowStore

logger = logging.getLogger(__name__)


@dataclass
class _RowPlan:
    """One validated row write inside a batch."""

    table: str
    key_column: str | None
    key: int | str | None
    temp_key: Any
    key_kind: ColumnKind | None = None
    cells: dict[str, Any] = field(default_factory=dict)
    base_version: int | None = None

    def merge_base(self, base_version: int | None) -> None:
        if base_version is None:
            return
        if self.base_version is None or base_version < self.base_version:
            self.base_version = int(base_version)


class SyncService:
    """Facade implementing the sync, presence, lock and audit operations.

    Args:
        db: Initialized database
        registry: Loaded schema registry bound to db
        bus: Change bus (a private one is created if omitted)
        presence: Presence tracker (created with defaults if omitted)
        locks: Lock manager (created with defaults if omitted)
        long_poll_max_ms: Upper bound for long_poll_changes timeouts
        audit_default_limit: Page size for audit reads

    Example:
        >>> service = SyncService(db, registry)
        >>> result = await service.upsert_cells(
        ...     [CellEdit("orders", 1, "qty", 3)], actor="alice"
        ... )
        >>> result.max_row_version
        1
    """

    def __init__(
        self,
        db: Database,
        registry: SchemaRegistry,
        bus: ChangeBus | None = None,
        presence: PresenceTracker | None = None,
        locks: LockManager | None = None,
        counter: VersionCounter | None = None,
        long_poll_max_ms: int = 30000,
        audit_default_limit: int = 200,
    ) -> None:
        self.db = db
        self.registry = registry
        self.counter = counter or VersionCounter(db)
        self.audit = AuditLog(db, default_limit=audit_default_limit)
        self.rows = RowStore(self.counter, self.audit)
        self.conflicts = ConflictDetector()
        self.bus = bus or ChangeBus()
        self.presence = presence or PresenceTracker(db)
        self.locks = locks or LockManager(db)
        self.long_poll_max_ms = long_poll_max_ms

    # ------------------------------------------------------------------
    # Schema operations
    # ------------------------------------------------------------------

    async def ensure_table(self, table: str, key_column_hint: str | None = None) -> str:
        """Create table if unknown; return its key column (the hint is ignored otherwise)."""
        return self.registry.ensure_table(table, key_column_hint)

    async def create_table(
        self,
        table: str,
        key_column: str,
        key_kind: str | None = None,
    ) -> TableDef:
        """Explicitly create a table; raises KeyMismatchError on a different key column."""
        kind = _parse_kind(key_kind) if key_kind else None
        return self.registry.create_table(table, key_column, kind)

    async def add_columns(self, table: str, columns: list[ColumnDef]) -> list[ColumnDef]:
        return self.registry.add_columns(table, columns)

    async def drop_columns(self, table: str, names: list[str]) -> list[str]:
        """Drop columns and their data. Destructive and irreversible."""
        return self.registry.drop_columns(table, names)

    async def rename_column(self, table: str, old: str, new: str) -> TableDef:
        return self.registry.rename_column(table, old, new)

    async def describe_table(self, table: str) -> TableDef:
        return self.registry.require_table(table)

    async def list_tables(self) -> list[TableDef]:
        return list(self.registry.tables())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_cells(self, edits: list[CellEdit], actor: str) -> WriteResult:
        """Apply a batch of cell edits grouped per (table, key).

        Rows whose base version is stale and whose cells diverge are
        reported as conflicts and skipped; the rest commit together.
        """
        _require_actor(actor)
        plans: dict[tuple[str, str], _RowPlan] = {}
        new_key_kinds: dict[str, ColumnKind] = {}
        for edit in edits:
            validate_table_name(edit.table)
            validate_identifier(edit.column, "column")
            table_def = self.registry.get_table(edit.table)
            key, temp_key, key_kind = self._coerce_key(
                edit.table, table_def, edit.key, new_key_kinds
            )
            group = (edit.table.lower(), repr(key if key is not None else ("new", temp_key)))
            plan = plans.get(group)
            if plan is None:
                plan = _RowPlan(
                    table=edit.table,
                    key_column=None,
                    key=key,
                    temp_key=temp_key,
                    key_kind=key_kind,
                )
                plans[group] = plan
            plan.cells[edit.column] = edit.value
            plan.merge_base(edit.base_version)

        return self._apply(list(plans.values()), actor)

    async def upsert_rows(
        self,
        table: str,
        rows: list[RowEdit],
        actor: str,
        key_column: str | None = None,
    ) -> WriteResult:
        """Apply whole-row edits to one table.

        If key_column is given it is a declaration: an existing table with
        a different key column raises KeyMismatchError.
        """
        _require_actor(actor)
        validate_table_name(table)
        table_def = self.registry.get_table(table)
        if key_column is not None:
            validate_identifier(key_column, "key column")
            if table_def is not None and table_def.key_column.lower() != key_column.lower():
                raise KeyMismatchError(table, table_def.key_column, key_column)
        effective_key = (
            table_def.key_column if table_def else key_column or self.registry.default_key_column
        )

        plans = []
        new_key_kinds: dict[str, ColumnKind] = {}
        for edit in rows:
            cells = dict(edit.cells)
            raw_key = edit.key
            for name in list(cells):
                if name.lower() == effective_key.lower():
                    value = cells.pop(name)
                    if raw_key is None:
                        raw_key = value
            key, temp_key, key_kind = self._coerce_key(table, table_def, raw_key, new_key_kinds)
            plan = _RowPlan(
                table=table,
                key_column=key_column,
                key=key,
                temp_key=temp_key,
                key_kind=key_kind,
                cells=cells,
            )
            plan.merge_base(edit.base_version)
            plans.append(plan)

        return self._apply(plans, actor)

    def _coerce_key(
        self,
        table: str,
        table_def: TableDef | None,
        raw_key: Any,
        new_key_kinds: dict[str, ColumnKind],
    ) -> tuple[int | str | None, Any, ColumnKind]:
        """Return (stored key or None for a server-assigned one, temp key, key kind).

        A table that doesn't exist yet takes its key kind from the first key
        written to it in the batch.
        """
        if table_def is not None:
            key_kind = table_def.key_kind
        else:
            key_kind = new_key_kinds.setdefault(table.lower(), infer_key_kind(raw_key))
        if codec.is_new_key(key_kind, raw_key):
            return None, raw_key, key_kind
        return codec.encode_key(key_kind, raw_key, table), None, key_kind

    def _plan_kinds(self, plans: list[_RowPlan]) -> None:
        """Validate every cell against existing or first-observed column kinds."""
        planned: dict[tuple[str, str], ColumnDef] = {}
        for plan in plans:
            table_def = self.registry.get_table(plan.table)
            key_column = (
                table_def.key_column
                if table_def
                else plan.key_column or self.registry.default_key_column
            )
            for column, value in plan.cells.items():
                validate_identifier(column, "column")
                lowered = column.lower()
                if lowered == key_column.lower() or lowered in RESERVED_COLUMNS:
                    raise ValidationError(
                        f"Column '{column}' is reserved in table '{plan.table}'",
                        details={"table": plan.table, "column": column},
                    )
                col = table_def.get_column(column) if table_def else None
                if col is None:
                    col = planned.get((plan.table.lower(), lowered))
                if col is None:
                    kind = infer_kind(value)
                    if kind is None:
                        continue
                    col = ColumnDef(name=column, kind=kind)
                    planned[(plan.table.lower(), lowered)] = col
                if value is None and col.not_null:
                    raise ValidationError(
                        f"Column '{col.name}' in table '{plan.table}' cannot be null",
                        details={"table": plan.table, "column": col.name},
                    )
                codec.encode(col.kind, value, col.name)

    def _apply(self, plans: list[_RowPlan], actor: str) -> WriteResult:
        """Run validated row plans in one transaction and publish afterwards."""
        self._plan_kinds(plans)

        applied: list[Row] = []
        conflicts: list[Conflict] = []
        assigned: list[AssignedKey] = []

        try:
            with self.db.transaction() as conn:
                for plan in plans:
                    table_def = self._provision(conn, plan)
                    current = (
                        self.rows.load(conn, table_def, plan.key) if plan.key is not None else None
                    )
                    row_conflicts = self.conflicts.detect(
                        table_def,
                        current,
                        plan.base_version,
                        plan.cells,
                        self._cleared_since_base(conn, table_def, current, plan),
                    )
                    if row_conflicts:
                        conflicts.extend(row_conflicts)
                        continue
                    row = self.rows.upsert(conn, table_def, plan.key, plan.cells, actor, current)
                    applied.append(row)
                    if plan.key is None:
                        assigned.append(AssignedKey(table_def.name, plan.temp_key, row.key))
                max_version = self.counter.current(conn)
        except Exception:
            self.registry.reload()
            raise

        self._publish(applied, max_version)
        logger.info(
            "Applied write batch",
            extra={
                "actor": actor,
                "rows": len(plans),
                "applied": len(applied),
                "conflicts": len(conflicts),
                "max_row_version": max_version,
            },
        )
        return WriteResult(
            applied_count=len(applied),
            conflicts=conflicts,
            max_row_version=max_version,
            assigned=assigned,
            rows=applied,
        )

    def _cleared_since_base(
        self,
        conn: sqlite3.Connection,
        table_def: TableDef,
        current: Row | None,
        plan: _RowPlan,
    ) -> set[str]:
        """Null cells of a stale row that were written after the client's base."""
        if not is_stale(current, plan.base_version):
            return set()
        columns = [table_def.get_column(name) for name in plan.cells]
        if not any(c is not None and current.cells.get(c.name) is None for c in columns):
            return set()
        return self.audit.columns_written_since(
            conn, table_def.name, current.key, plan.base_version
        )

    def _provision(self, conn: sqlite3.Connection, plan: _RowPlan) -> TableDef:
        if plan.key_column is not None:
            self.registry.create_table(plan.table, plan.key_column, plan.key_kind, conn=conn)
        else:
            self.registry.ensure_table(plan.table, key_kind=plan.key_kind, conn=conn)
        self.registry.ensure_columns(plan.table, plan.cells, conn=conn)
        return self.registry.require_table(plan.table)

    def _publish(self, rows: Iterable[Row], max_version: int) -> None:
        by_table: dict[str, list[Row]] = {}
        for row in rows:
            by_table.setdefault(row.table, []).append(row)
        for table, patches in by_table.items():
            self.bus.publish(
                ChangeEvent(table=table, max_row_version=max_version, patches=tuple(patches))
            )

    async def delete_rows(
        self,
        table: str,
        keys: list[Any],
        actor: str = "system",
    ) -> DeleteResult:
        """Tombstone rows by key.

        Missing keys are reported in the result; rows that are already
        tombstoned are left as they are.

        Raises:
            NotFoundError: If the table doesn't exist
        """
        _require_actor(actor)
        table_def = self.registry.require_table(table)
        encoded = [codec.encode_key(table_def.key_kind, key, table_def.name) for key in keys]

        deleted: list[Row] = []
        missing: list[Any] = []
        with self.db.transaction() as conn:
            for key in dict.fromkeys(encoded):
                current = self.rows.load(conn, table_def, key)
                if current is None:
                    missing.append(key)
                    continue
                if current.deleted:
                    continue
                deleted.append(self.rows.delete(conn, table_def, current, actor))
            max_version = self.counter.current(conn)

        self._publish(deleted, max_version)
        logger.info(
            "Deleted rows",
            extra={
                "table": table_def.name,
                "actor": actor,
                "deleted": len(deleted),
                "missing": len(missing),
            },
        )
        return DeleteResult(
            max_row_version=max_version,
            deleted_count=len(deleted),
            missing=missing,
            rows=deleted,
        )

    # ------------------------------------------------------------------
    # Reads and change consumption
    # ------------------------------------------------------------------

    async def get_row(self, table: str, key: Any) -> Row | None:
        table_def = self.registry.require_table(table)
        encoded = codec.encode_key(table_def.key_kind, key, table_def.name)
        with self.db.connect() as conn:
            return self.rows.load(conn, table_def, encoded)

    async def read_since(
        self,
        table: str | None,
        since: int = 0,
        limit: int | None = None,
    ) -> ReadResult:
        """Rows and tombstones with row_version > since.

        Args:
            table: Table to read; None reads every table merged by version
            since: Cursor (exclusive)
            limit: Optional page size; when hit, has_more is set and
                max_row_version is the last returned version

        Returns:
            ReadResult; unknown tables yield no patches
        """
        if table is None:
            tables = list(self.registry.tables())
        else:
            table_def = self.registry.get_table(table)
            tables = [table_def] if table_def is not None else []

        # One extra row per table tells whether the page was cut short
        fetch = limit + 1 if limit is not None else None
        with self.db.read_transaction() as conn:
            max_version = self.counter.current(conn)
            patches: list[Row] = []
            for table_def in tables:
                patches.extend(self.rows.read_since(conn, table_def, since, fetch))

        patches.sort(key=lambda r: r.row_version)
        has_more = limit is not None and len(patches) > limit
        if has_more:
            patches = patches[:limit]
            max_version = patches[-1].row_version if patches else since
        return ReadResult(max_row_version=max_version, patches=patches, has_more=has_more)

    async def snapshot(
        self,
        table: str,
        filters: list[Filter] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> ReadResult:
        """Current rows of a table with optional filters and ordering."""
        table_def = self.registry.require_table(table)
        with self.db.read_transaction() as conn:
            max_version = self.counter.current(conn)
            rows = self.rows.snapshot(
                conn,
                table_def,
                filters=filters,
                order_by=parse_order_by(order_by),
                limit=limit,
                offset=offset,
                include_deleted=include_deleted,
            )
        return ReadResult(max_row_version=max_version, patches=rows)

    def subscribe_changes(self, tables: Iterable[str] | None = None) -> Subscription:
        """Stream of future change events; catch up with read_since first."""
        return self.bus.subscribe(tables)

    async def long_poll_changes(self, table: str, since: int, timeout_ms: int) -> ReadResult:
        """Return changes past since, waiting up to timeout_ms for one.

        A timeout is not an error: the result simply has no patches.
        """
        timeout_ms = max(0, min(int(timeout_ms), self.long_poll_max_ms))
        async with self.bus.subscribe([table]) as sub:
            result = await self.read_since(table, since)
            if result.patches or timeout_ms == 0:
                return result
            event = await sub.wait_for(since, timeout_ms / 1000.0)
            if event is None:
                return result
        return await self.read_since(table, since)

    # ------------------------------------------------------------------
    # Presence and locks
    # ------------------------------------------------------------------

    async def heartbeat_presence(self, actor: str, location: str | None = None) -> PresenceEntry:
        return await self.presence.heartbeat(actor, location)

    async def list_presence(self) -> list[PresenceEntry]:
        return await self.presence.list()

    async def acquire_lock(
        self, resource_key: str, actor: str, ttl_sec: float | None = None
    ) -> bool:
        return await self.locks.acquire(resource_key, actor, ttl_sec)

    async def release_lock(self, resource_key: str, actor: str) -> bool:
        return await self.locks.release(resource_key, actor)

    async def release_all_locks(self, actor: str) -> int:
        return await self.locks.release_all(actor)

    async def list_locks(self, prefix: str | None = None) -> list[LockEntry]:
        return await self.locks.list(prefix)

    # ------------------------------------------------------------------
    # Audit and status
    # ------------------------------------------------------------------

    async def audit_log(
        self,
        since_version: int | None = None,
        after_id: int | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        return await self.audit.since(since_version, after_id, limit)

    async def query_audit(self, **filters: Any) -> list[AuditEntry]:
        return await self.audit.query(**filters)

    async def purge_audit(self, before_ms: int) -> int:
        return await self.audit.purge_before(before_ms)

    async def meta(self) -> dict[str, Any]:
        return {
            "max_row_version": self.counter.current(),
            "schema_hash": self.registry.fingerprint,
            "tables": [t.to_dict() for t in self.registry.tables()],
        }

    async def health(self) -> dict[str, Any]:
        problems = self.db.integrity_check(quick=True)
        return {
            "status": "ok" if problems == ["ok"] else "degraded",
            "integrity": problems,
            "max_row_version": self.counter.current(),
            "subscribers": self.bus.subscriber_count,
            "ts": int(time.time() * 1000),
        }


def _require_actor(actor: str) -> None:
    if not actor or not isinstance(actor, str):
        raise ValidationError("An actor is required for writes")


def _parse_kind(value: str) -> ColumnKind:
    try:
        return ColumnKind.from_str(value)
    except ValueError as e:
        raise ValidationError(str(e)) from e
