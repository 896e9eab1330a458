"""
Error types for GridSync Server.

This module defines the exception taxonomy raised by the sync engine:
- GridSyncError: Base exception
- ValidationError: Bad identifiers, reserved names, uncoercible values
- KeyMismatchError: Table re-declared with a different key column
- NotFoundError: Table or row required to exist does not
- StorageError: Database unreachable or corrupted (fatal, not retried)

Conflicts are not exceptions; they are returned as result items so a
batch can commit its non-conflicting rows.

Invariants:
    - All errors inherit from GridSyncError
    - Every error carries a stable code for programmatic handling
    - ValidationError is raised before any write is attempted
"""

from __future__ import annotations

from typing import Any


class GridSyncError(Exception):
    """Base exception for all GridSync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "GRIDSYNC_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation used by the HTTP layer."""
        return {"error": self.message, "error_code": self.code, "details": self.details}


class ValidationError(GridSyncError):
    """Request rejected before any write.

    Raised when:
    - An identifier is malformed or reserved
    - A table or column reference is unknown
    - A value cannot be stored in its column's kind
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        code: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(message, code=code, details=details)


class KeyMismatchError(ValidationError):
    """Table already exists with a different key column."""

    def __init__(self, table: str, existing: str, requested: str) -> None:
        super().__init__(
            f"Table '{table}' has key column '{existing}', not '{requested}'",
            details={"table": table, "existing": existing, "requested": requested},
            code="KEY_MISMATCH",
        )
        self.table = table
        self.existing = existing
        self.requested = requested


class NotFoundError(GridSyncError):
    """Table or row does not exist where existence is required."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="NOT_FOUND", details=details)


class StorageError(GridSyncError):
    """Storage layer unavailable or corrupted.

    Aborts the whole operation and propagates to the caller.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="STORAGE_ERROR", details=details)
