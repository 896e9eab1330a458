"""
Optimistic concurrency with cell-level conflict reporting.

A client sends the row_version it last saw (its base version) together
with the cells it wants to write. Staleness alone is not a conflict: a
conflict exists only where the server's current value of a proposed
column differs from the proposed value. This lets clients re-submit edits
that already match the server without spurious conflicts, while genuinely
divergent cells are reported one by one so clients can merge the rest.

Rules:
    - No current row, no base version, or current.row_version <= base:
      no conflict
    - Otherwise each proposed column whose stored value differs (after
      normalizing the proposed value through the column codec) yields one
      Conflict
    - A column that doesn't exist yet never conflicts
    - A stored null conflicts only if the cell was written after the base
      (a clear by another actor); a cell nobody has written has no prior
      value
    - Tombstoned rows follow the same rule; a matching write resurrects them
    - Any conflict rejects the whole row; other rows are unaffected
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from typing import Any

from ..schema.types import TableDef
from ..storage import codec
from .models import Conflict, Row

logger = logging.getLogger(__name__)


def is_stale(current: Row | None, base_version: int | None) -> bool:
    """Whether the row changed after the client's base version."""
    return current is not None and base_version is not None and current.row_version > base_version


class ConflictDetector:
    """Decides whether a proposed row write proceeds."""

    def detect(
        self,
        table: TableDef,
        current: Row | None,
        base_version: int | None,
        proposed: dict[str, Any],
        written_since_base: Collection[str] = (),
    ) -> list[Conflict]:
        """Compare proposed cells against the current row.

        Args:
            table: Table definition (used to normalize values by kind)
            current: The stored row, or None if it doesn't exist
            base_version: The client's last-seen row_version (None = blind write)
            proposed: Column -> value the client wants to write
            written_since_base: Columns of this row changed after base_version;
                only consulted for cells whose stored value is null

        Returns:
            Conflicts; empty when the write may proceed
        """
        if not is_stale(current, base_version):
            return []

        written = {name.lower() for name in written_since_base}
        conflicts = []
        for column, value in proposed.items():
            col = table.get_column(column)
            if col is None:
                continue
            server_value = current.cells.get(col.name)
            if server_value is None and col.name.lower() not in written:
                continue
            if codec.normalize(col.kind, value, col.name) != server_value:
                conflicts.append(
                    Conflict(
                        table=table.name,
                        key=current.key,
                        column=col.name,
                        server_value=server_value,
                        server_version=current.row_version,
                        proposed_value=value,
                    )
                )

        if conflicts:
            logger.debug(
                "Write conflict",
                extra={
                    "table": table.name,
                    "key": current.key,
                    "base_version": base_version,
                    "server_version": current.row_version,
                    "columns": [c.column for c in conflicts],
                },
            )
        return conflicts
