"""
Sync module for GridSync - versioned writes, conflicts and change delivery.

This module provides:
- RowStore: version-stamped upserts and tombstones with audit entries
- ConflictDetector: cell-level optimistic concurrency checks
- AuditLog: append-only per-cell change history
- ChangeBus: post-commit fan-out to streams and long-poll waiters
- SyncService: the operation facade used by transports
"""

from .audit import AuditEntry, AuditLog
from .change_bus import ChangeBus, Subscription
from .conflicts import ConflictDetector
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
from .service import SyncService

__all__ = [
    "AuditEntry",
    "AuditLog",
    "ChangeBus",
    "Subscription",
    "ConflictDetector",
    "AssignedKey",
    "CellEdit",
    "ChangeEvent",
    "Conflict",
    "DeleteResult",
    "ReadResult",
    "Row",
    "RowEdit",
    "WriteResult",
    "RowStore",
    "SyncService",
]
