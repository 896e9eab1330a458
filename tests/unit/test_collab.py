"""
Unit tests for presence, advisory locks and the reaper.

A fake clock drives TTL expiry so no test sleeps past a TTL.
"""

import tempfile
from pathlib import Path

import pytest

from dbaas.gridsync_server.collab import (
    LockManager,
    PresenceTracker,
    Reaper,
    cell_resource,
    column_resource,
)
from dbaas.gridsync_server.errors import ValidationError
from dbaas.gridsync_server.storage import Database


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmpdir:
        database = Database(str(Path(tmpdir) / "gridsync.db"), wal_mode=False)
        database.initialize()
        yield database


@pytest.fixture
def clock():
    return FakeClock()


class TestPresenceTracker:
    """Tests for PresenceTracker."""

    @pytest.fixture
    def presence(self, db, clock):
        return PresenceTracker(db, ttl_seconds=10, clock=clock)

    @pytest.mark.asyncio
    async def test_last_heartbeat_wins(self, presence, clock):
        await presence.heartbeat("alice", "Sheet1!A1")
        clock.advance(1)
        await presence.heartbeat("alice", "Sheet1!B7")

        entries = await presence.list()
        assert len(entries) == 1
        assert entries[0].location == "Sheet1!B7"

    @pytest.mark.asyncio
    async def test_expired_entries_are_hidden(self, presence, clock):
        await presence.heartbeat("alice", "A1")
        clock.advance(5)
        await presence.heartbeat("bob", "B2")

        assert [e.actor for e in await presence.list()] == ["bob", "alice"]
        clock.advance(6)
        assert [e.actor for e in await presence.list()] == ["bob"]

    @pytest.mark.asyncio
    async def test_entry_at_exact_ttl_is_hidden(self, presence, clock):
        await presence.heartbeat("alice", "A1")
        clock.advance(9.5)
        assert [e.actor for e in await presence.list()] == ["alice"]

        clock.advance(0.5)
        assert await presence.list() == []

    @pytest.mark.asyncio
    async def test_remove_and_purge(self, presence, clock):
        await presence.heartbeat("alice")
        await presence.heartbeat("bob")
        assert await presence.remove("alice") is True
        assert await presence.remove("alice") is False

        clock.advance(31)
        assert await presence.purge_expired(ttl_multiple=3) == 1

    @pytest.mark.asyncio
    async def test_actor_required(self, presence):
        with pytest.raises(ValidationError):
            await presence.heartbeat("", "A1")


class TestLockManager:
    """Tests for LockManager."""

    @pytest.fixture
    def locks(self, db, clock):
        return LockManager(db, default_ttl_seconds=10, clock=clock)

    def test_resource_keys(self):
        assert column_resource("orders", "qty") == "column:orders/qty"
        assert cell_resource("Sheet1", "A1") == "cell:Sheet1/A1"

    @pytest.mark.asyncio
    async def test_fresh_lock_blocks_other_actor(self, locks):
        assert await locks.acquire("cell:Sheet1/A1", "x") is True
        assert await locks.acquire("cell:Sheet1/A1", "y") is False
        assert (await locks.get("cell:Sheet1/A1")).holder == "x"

    @pytest.mark.asyncio
    async def test_expired_lock_is_stolen(self, locks, clock):
        """X holds with ttl=1s; after more than 1s Y takes over silently."""
        assert await locks.acquire("cell:Sheet1!A1", "x", ttl_seconds=1) is True
        clock.advance(1.1)

        assert await locks.acquire("cell:Sheet1!A1", "y") is True
        lock = await locks.get("cell:Sheet1!A1")
        assert lock.holder == "y"
        assert await locks.release("cell:Sheet1!A1", "x") is False

    @pytest.mark.asyncio
    async def test_same_holder_refreshes(self, locks, clock):
        await locks.acquire("r", "x", ttl_seconds=2)
        clock.advance(1.5)
        assert await locks.acquire("r", "x", ttl_seconds=2) is True
        clock.advance(1.5)
        assert await locks.acquire("r", "y") is False

    @pytest.mark.asyncio
    async def test_release_only_by_holder(self, locks):
        await locks.acquire("r", "x")
        assert await locks.release("r", "y") is False
        assert await locks.release("r", "x") is True
        assert await locks.get("r") is None
        assert await locks.acquire("r", "y") is True

    @pytest.mark.asyncio
    async def test_release_all_and_list(self, locks):
        await locks.acquire(column_resource("orders", "qty"), "x")
        await locks.acquire(cell_resource("Sheet1", "A1"), "x")
        await locks.acquire(cell_resource("Sheet1", "B1"), "y")

        cells = await locks.list(prefix="cell:")
        assert [lock.resource_key for lock in cells] == ["cell:Sheet1/A1", "cell:Sheet1/B1"]

        assert await locks.release_all("x") == 2
        assert [lock.holder for lock in await locks.list()] == ["y"]

    @pytest.mark.asyncio
    async def test_list_hides_expired(self, locks, clock):
        await locks.acquire("r", "x", ttl_seconds=1)
        clock.advance(2)
        assert await locks.list() == []

    @pytest.mark.asyncio
    async def test_rejects_bad_input(self, locks):
        with pytest.raises(ValidationError):
            await locks.acquire("", "x")
        with pytest.raises(ValidationError):
            await locks.acquire("r", "x", ttl_seconds=0)


class TestReaper:
    """Tests for Reaper."""

    @pytest.mark.asyncio
    async def test_run_once_purges_stale_state(self, db, clock):
        presence = PresenceTracker(db, ttl_seconds=10, clock=clock)
        locks = LockManager(db, default_ttl_seconds=10, clock=clock)
        await presence.heartbeat("alice")
        await locks.acquire("r", "alice", ttl_seconds=1)

        reaper = Reaper(presence, locks, interval_seconds=0.01, ttl_multiple=3)
        assert await reaper.run_once() == (0, 0)

        clock.advance(31)
        assert await reaper.run_once() == (1, 1)
