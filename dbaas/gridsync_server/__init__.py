"""
GridSync Server - row-version sync and conflict resolution for shared tables.

Many clients (originally spreadsheet front-ends) edit a set of dynamically
typed tables stored in one SQLite database. Every row mutation is stamped
with a database-wide row version so clients can catch up incrementally and
detect concurrent edits at cell granularity.

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Client    │────▶│ HTTP (SSE,  │────▶│   SyncService   │
    │ (sheet UI)  │     │ long-poll)  │     │                 │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                        ┌────────────────────────────┼──────────────┐
                        ▼                            ▼              ▼
                ┌───────────────┐           ┌──────────────┐  ┌───────────┐
                │SchemaRegistry │           │   RowStore   │  │ Presence/ │
                │ + Conflicts   │           │  + AuditLog  │  │   Locks   │
                └───────┬───────┘           └──────┬───────┘  └─────┬─────┘
                        └───────────┬──────────────┘                │
                                    ▼                               ▼
                              ┌──────────┐   after commit    ┌────────────┐
                              │  SQLite  │──────────────────▶│ ChangeBus  │
                              └──────────┘                   └────────────┘

Invariants:
    - row_version is global, strictly increasing and equals commit order
    - Deletion is a tombstone; rows are never physically removed by sync
    - Change notifications are published only after the write commits
    - Presence and locks are advisory and expire by TTL

How to change safely:
    - Keep version stamping inside the write transaction
    - Column kinds are append-only; never reinterpret stored values
    - Add new HTTP endpoints under /v1 without changing existing shapes

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
