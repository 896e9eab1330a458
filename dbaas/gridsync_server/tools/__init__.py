"""
CLI tools for GridSync administration.

This module provides command-line tools for:
- integrity checks and consistent snapshots of the database file
- JSON dumps of tables and the schema catalog
- audit log retention

Invariants:
    - Tools work offline (no running server required)
    - Read commands never modify the database
"""

from .admin_cli import AdminCLI

__all__ = ["AdminCLI"]
