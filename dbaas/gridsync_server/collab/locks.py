"""
Advisory locks with steal-on-expiry.

A lock names a logical target (a column or a cell) and is held by one actor
for a TTL. Locks are cooperative hints to reduce collisions; row writes do
not check them.

State machine per resource:
    Unheld --acquire--> Held(actor)
    Held(actor) --age > ttl--> Stealable --acquire(other)--> Held(other)
    Held(actor) --acquire(actor)--> Held(actor), age reset
    Held(actor) --release(actor)--> Unheld

Invariants:
    - At most one holder per resource key
    - Expiry uses the TTL the holder acquired with
    - Each acquire decision runs in one BEGIN IMMEDIATE transaction
    - "Already held" and "not held" are boolean results, never exceptions
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


def column_resource(table: str, column: str) -> str:
    """Resource key for a whole column."""
    return f"column:{table}/{column}"


def cell_resource(sheet: str, address: str) -> str:
    """Resource key for a single cell."""
    return f"cell:{sheet}/{address}"


@dataclass(frozen=True)
class LockEntry:
    """A held lock.

    Attributes:
        resource_key: Locked target
        holder: Actor holding the lock
        acquired_at: Last (re-)acquire time (Unix ms)
        ttl_ms: Lifetime granted on acquire
    """

    resource_key: str
    holder: str
    acquired_at: int
    ttl_ms: int

    @property
    def expires_at(self) -> int:
        return self.acquired_at + self.ttl_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_key": self.resource_key,
            "holder": self.holder,
            "acquired_at": self.acquired_at,
            "ttl_ms": self.ttl_ms,
            "expires_at": self.expires_at,
        }


class LockManager:
    """TTL advisory locks stored in the _locks table.

    Args:
        db: Database handle
        default_ttl_seconds: TTL used when acquire() gets none
        clock: Returns the current time in seconds (injectable for tests)

    Example:
        >>> locks = LockManager(db)
        >>> await locks.acquire("cell:Sheet1/A1", "alice", ttl_seconds=5)
        True
        >>> await locks.acquire("cell:Sheet1/A1", "bob")
        False
    """

    def __init__(
        self,
        db: Database,
        default_ttl_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db = db
        self.default_ttl_ms = int(default_ttl_seconds * 1000)
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _validate(resource_key: str, actor: str) -> None:
        if not resource_key or not isinstance(resource_key, str):
            raise ValidationError("Lock requires a non-empty resource key")
        if not actor or not isinstance(actor, str):
            raise ValidationError("Lock requires a non-empty actor")

    async def acquire(
        self,
        resource_key: str,
        actor: str,
        ttl_seconds: float | None = None,
    ) -> bool:
        """Acquire, refresh or steal a lock.

        Returns:
            True if actor holds the lock afterwards, False if another
            actor holds a fresh lock
        """
        self._validate(resource_key, actor)
        ttl_ms = int(ttl_seconds * 1000) if ttl_seconds is not None else self.default_ttl_ms
        if ttl_ms <= 0:
            raise ValidationError("Lock TTL must be positive", details={"ttl_ms": ttl_ms})

        now = self._now_ms()
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT holder, acquired_at, ttl_ms FROM _locks WHERE resource_key = ?",
                (resource_key,),
            ).fetchone()

            if row is not None and row["holder"] != actor:
                age = now - row["acquired_at"]
                if age <= row["ttl_ms"]:
                    return False
                logger.info(
                    "Stealing expired lock",
                    extra={
                        "resource_key": resource_key,
                        "previous_holder": row["holder"],
                        "holder": actor,
                        "age_ms": age,
                    },
                )

            conn.execute(
                """
                INSERT INTO _locks (resource_key, holder, acquired_at, ttl_ms)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(resource_key) DO UPDATE SET
                    holder = excluded.holder,
                    acquired_at = excluded.acquired_at,
                    ttl_ms = excluded.ttl_ms
                """,
                (resource_key, actor, now, ttl_ms),
            )
        return True

    async def release(self, resource_key: str, actor: str) -> bool:
        """Release a lock held by actor. Returns False if actor isn't the holder."""
        self._validate(resource_key, actor)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM _locks WHERE resource_key = ? AND holder = ?",
                (resource_key, actor),
            )
            return cursor.rowcount > 0

    async def release_all(self, actor: str) -> int:
        """Release every lock held by actor. Returns the number released."""
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM _locks WHERE holder = ?", (actor,))
            released = cursor.rowcount
        if released:
            logger.debug("Released locks", extra={"holder": actor, "released": released})
        return released

    async def get(self, resource_key: str) -> LockEntry | None:
        """The current fresh lock on resource_key, if any."""
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM _locks WHERE resource_key = ? AND ? - acquired_at <= ttl_ms",
                (resource_key, self._now_ms()),
            ).fetchone()
        if row is None:
            return None
        return LockEntry(row["resource_key"], row["holder"], row["acquired_at"], row["ttl_ms"])

    async def list(self, prefix: str | None = None) -> list[LockEntry]:
        """Fresh locks, optionally limited to resource keys starting with prefix."""
        sql = "SELECT * FROM _locks WHERE ? - acquired_at <= ttl_ms"
        params: list[Any] = [self._now_ms()]
        if prefix:
            sql += " AND substr(resource_key, 1, ?) = ?"
            params.extend([len(prefix), prefix])
        sql += " ORDER BY resource_key"

        with self.db.connect() as conn:
            return [
                LockEntry(row["resource_key"], row["holder"], row["acquired_at"], row["ttl_ms"])
                for row in conn.execute(sql, params)
            ]

    async def purge_expired(self, ttl_multiple: int = 3) -> int:
        """Delete locks older than ttl_multiple times their TTL."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM _locks WHERE ? - acquired_at > ttl_ms * ?",
                (self._now_ms(), ttl_multiple),
            )
            removed = cursor.rowcount
        if removed:
            logger.debug("Purged expired locks", extra={"removed": removed})
        return removed
