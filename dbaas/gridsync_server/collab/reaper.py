"""
Background cleanup of stale presence entries and locks.

Reads already filter expired entries, so the reaper only keeps the tables
small. It deletes entries older than a multiple of their TTL every
interval.
"""

from __future__ import annotations

import asyncio
import logging

from .locks import LockManager
from .presence import PresenceTracker

logger = logging.getLogger(__name__)


class Reaper:
    """Periodic presence/lock purge loop.

    Example:
        >>> reaper = Reaper(presence, locks, interval_seconds=5)
        >>> task = asyncio.create_task(reaper.start())
        >>> await reaper.stop()
    """

    def __init__(
        self,
        presence: PresenceTracker,
        locks: LockManager,
        interval_seconds: float = 5.0,
        ttl_multiple: int = 3,
    ) -> None:
        self.presence = presence
        self.locks = locks
        self.interval_seconds = interval_seconds
        self.ttl_multiple = ttl_multiple
        self._running = False
        self._wakeup = asyncio.Event()

    async def run_once(self) -> tuple[int, int]:
        """Purge once. Returns (presence removed, locks removed)."""
        presence_removed = await self.presence.purge_expired(self.ttl_multiple)
        locks_removed = await self.locks.purge_expired(self.ttl_multiple)
        if presence_removed or locks_removed:
            logger.info(
                "Reaped stale collaboration state",
                extra={"presence": presence_removed, "locks": locks_removed},
            )
        return presence_removed, locks_removed

    async def start(self) -> None:
        """Run until stop() is called."""
        if self._running:
            logger.warning("Reaper already running")
            return

        self._running = True
        self._wakeup.clear()
        logger.info("Starting reaper", extra={"interval_seconds": self.interval_seconds})

        try:
            while self._running:
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
                if not self._running:
                    break
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error(f"Reaper pass failed: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Reaper cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the loop at its next wakeup."""
        self._running = False
        self._wakeup.set()
        logger.info("Stopping reaper")
