"""
Presence tracking: who is looking at what.

Clients heartbeat their nickname and a location hint (for a spreadsheet
front-end, the sheet and cell under the cursor). Entries expire by TTL:
list() hides anything older than the TTL even if the reaper hasn't
removed it yet, so correctness never depends on reaper timing.

Invariants:
    - One entry per actor; the last heartbeat wins
    - Expired entries are never listed
    - Operations never raise for absent entries
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..errors import ValidationError
from ..storage.database import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresenceEntry:
    """An actor's last reported location.

    Attributes:
        actor: Nickname
        location: Free-form location hint (e.g. "Sheet1!B7")
        updated_at: Last heartbeat (Unix ms)
    """

    actor: str
    location: str | None
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        return {"actor": self.actor, "location": self.location, "updated_at": self.updated_at}


class PresenceTracker:
    """TTL-filtered presence map stored in the _presence table.

    Args:
        db: Database handle
        ttl_seconds: Entries older than this are treated as absent
        clock: Returns the current time in seconds (injectable for tests)
    """

    def __init__(
        self,
        db: Database,
        ttl_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db = db
        self.ttl_ms = int(ttl_seconds * 1000)
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def heartbeat(self, actor: str, location: str | None = None) -> PresenceEntry:
        """Record that actor is active at location."""
        if not actor or not isinstance(actor, str):
            raise ValidationError("Presence requires a non-empty actor")

        now = self._now_ms()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO _presence (actor, location, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(actor) DO UPDATE SET
                    location = excluded.location,
                    updated_at = excluded.updated_at
                """,
                (actor, location, now),
            )
        return PresenceEntry(actor=actor, location=location, updated_at=now)

    async def list(self) -> list[PresenceEntry]:
        """Entries younger than the TTL, most recent first."""
        cutoff = self._now_ms() - self.ttl_ms
        with self.db.connect() as conn:
            cursor = conn.execute(
                "SELECT actor, location, updated_at FROM _presence "
                "WHERE updated_at > ? ORDER BY updated_at DESC, actor ASC",
                (cutoff,),
            )
            return [
                PresenceEntry(row["actor"], row["location"], row["updated_at"])
                for row in cursor.fetchall()
            ]

    async def remove(self, actor: str) -> bool:
        """Forget an actor (e.g. on disconnect)."""
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM _presence WHERE actor = ?", (actor,))
            return cursor.rowcount > 0

    async def purge_expired(self, ttl_multiple: int = 3) -> int:
        """Delete entries older than ttl_multiple * TTL. Storage hygiene only."""
        cutoff = self._now_ms() - self.ttl_ms * ttl_multiple
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM _presence WHERE updated_at < ?", (cutoff,))
            removed = cursor.rowcount
        if removed:
            logger.debug("Purged presence entries", extra={"removed": removed})
        return removed
