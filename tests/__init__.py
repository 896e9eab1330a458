"""
GridSync Test Suite.

This package contains:
- unit/: Unit tests (temporary SQLite files, no network)
- integration/: Integration tests (SyncService and the HTTP transport)
"""
