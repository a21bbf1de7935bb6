"""
Unit tests for the SQLite store.

Tests cover:
- Inserts with autoincrement and uuid identities
- Filtered updates and deletes
- txid allocation and rollback
- Change log (outbox) records
- Snapshots and commit notifications
"""

import asyncio
import tempfile
from pathlib import Path

import pytest

from dbaas.rowsync_server.errors import StoreError
from dbaas.rowsync_server.predicate import Eq
from dbaas.rowsync_server.store.base import ChangeOperation, IdentityStrategy, TableSpec
from dbaas.rowsync_server.store.sqlite_store import SqliteStore

TODOS = TableSpec("todos")
NOTES = TableSpec("notes", identity="note_id", strategy=IdentityStrategy.UUID)


class TestSqliteStore:
    """Tests for SqliteStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        """Create and initialize a store with two tables."""
        store = SqliteStore(Path(data_dir) / "rows.db", wal_mode=False)
        store.register_table(TODOS)
        store.register_table(NOTES)
        await store.initialize()
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_insert_assigns_identity(self, store):
        """Inserts get increasing, never reused identities."""
        async with store.transaction() as tx:
            first = await tx.insert(TODOS, {"text": "a"})
        async with store.transaction() as tx:
            await tx.delete(TODOS, first["id"])
        async with store.transaction() as tx:
            second = await tx.insert(TODOS, {"text": "b"})

        assert first == {"id": 1, "text": "a"}
        assert second["id"] == 2

    @pytest.mark.asyncio
    async def test_insert_uuid_identity(self, store):
        """UUID tables generate string identities."""
        async with store.transaction() as tx:
            note = await tx.insert(NOTES, {"body": "hello"})

        assert isinstance(note["note_id"], str)
        assert len(note["note_id"]) == 36

    @pytest.mark.asyncio
    async def test_txids_increase(self, store):
        """Each transaction gets a new, larger txid."""
        async with store.transaction() as tx:
            await tx.insert(TODOS, {"text": "a"})
            first = tx.txid
        async with store.transaction() as tx:
            await tx.insert(TODOS, {"text": "b"})
            second = tx.txid

        assert int(second) > int(first)

    @pytest.mark.asyncio
    async def test_update_with_filter(self, store):
        """A filter that does not match leaves the row unchanged."""
        async with store.transaction() as tx:
            row = await tx.insert(TODOS, {"text": "a", "user_id": "alice"})

        async with store.transaction() as tx:
            missed = await tx.update(TODOS, row["id"], {"text": "x"}, Eq("user_id", "bob"))
            hit = await tx.update(TODOS, row["id"], {"text": "y"}, Eq("user_id", "alice"))

        assert missed is None
        assert hit == {"id": row["id"], "text": "y", "user_id": "alice"}

    @pytest.mark.asyncio
    async def test_filter_on_boolean_column(self, store):
        """Predicates on JSON booleans match stored values."""
        async with store.transaction() as tx:
            row = await tx.insert(TODOS, {"text": "a", "completed": False})
            assert await tx.exists(TODOS, Eq("completed", False))
            assert not await tx.exists(TODOS, Eq("completed", True))
            assert await tx.get(TODOS, row["id"]) == row

    @pytest.mark.asyncio
    async def test_delete_returns_row(self, store):
        """Delete returns the removed row, then None."""
        async with store.transaction() as tx:
            row = await tx.insert(TODOS, {"text": "a"})
        async with store.transaction() as tx:
            assert await tx.delete(TODOS, row["id"]) == row
        async with store.transaction() as tx:
            assert await tx.delete(TODOS, row["id"]) is None

    @pytest.mark.asyncio
    async def test_rollback_discards_everything(self, store):
        """An exception rolls back rows, change records and the txid."""
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await tx.insert(TODOS, {"text": "a"})
                raise RuntimeError("boom")

        rows, seq = await store.snapshot(TODOS)
        assert rows == []
        assert seq == 0
        assert await store.changes_since("todos", 0) == []

    @pytest.mark.asyncio
    async def test_change_log_records(self, store):
        """Every write appends one change record with its txid."""
        async with store.transaction() as tx:
            row = await tx.insert(TODOS, {"text": "a"})
            insert_txid = tx.txid
        async with store.transaction() as tx:
            await tx.update(TODOS, row["id"], {"text": "b"})
            update_txid = tx.txid
        async with store.transaction() as tx:
            await tx.delete(TODOS, row["id"])

        changes = await store.changes_since("todos", 0)
        assert [c.operation for c in changes] == [
            ChangeOperation.INSERT,
            ChangeOperation.UPDATE,
            ChangeOperation.DELETE,
        ]
        assert [c.seq for c in changes] == [1, 2, 3]
        assert changes[0].txid == insert_txid
        assert changes[0].old_row is None
        assert changes[1].txid == update_txid
        assert changes[1].old_row == {"id": 1, "text": "a"}
        assert changes[1].row == {"id": 1, "text": "b"}
        assert changes[2].row_key == "1"

        assert [c.seq for c in await store.changes_since("todos", 1, limit=1)] == [2]
        assert await store.changes_since("notes", 0) == []

    @pytest.mark.asyncio
    async def test_snapshot_with_filter(self, store):
        """Snapshots return matching rows and the current change offset."""
        async with store.transaction() as tx:
            await tx.insert(TODOS, {"text": "a", "user_id": "alice"})
            await tx.insert(TODOS, {"text": "b", "user_id": "bob"})

        rows, seq = await store.snapshot(TODOS, Eq("user_id", "alice"))
        assert [r["text"] for r in rows] == ["a"]
        assert seq == 2

    @pytest.mark.asyncio
    async def test_wait_for_commit(self, store):
        """wait_for_commit wakes up on the next commit and times out otherwise."""
        token = store.commit_token
        assert await store.wait_for_commit(token, timeout=0.05) is False

        async def write():
            await asyncio.sleep(0.01)
            async with store.transaction() as tx:
                await tx.insert(TODOS, {"text": "a"})

        writer = asyncio.create_task(write())
        assert await store.wait_for_commit(token, timeout=2.0) is True
        await writer

    @pytest.mark.asyncio
    async def test_generation_persists(self, data_dir):
        """The generation id survives reopening the database."""
        path = Path(data_dir) / "gen.db"
        first = SqliteStore(path, wal_mode=False)
        await first.initialize()
        second = SqliteStore(path, wal_mode=False)
        await second.initialize()

        assert first.generation == second.generation

    def test_generation_requires_initialize(self, data_dir):
        """generation is unavailable before initialize()."""
        with pytest.raises(StoreError):
            SqliteStore(Path(data_dir) / "x.db").generation

    def test_conflicting_table_layout_rejected(self, data_dir):
        """A table cannot be registered twice with different layouts."""
        store = SqliteStore(Path(data_dir) / "x.db")
        store.register_table(TODOS)
        store.register_table(TODOS)
        with pytest.raises(StoreError):
            store.register_table(TableSpec("todos", strategy=IdentityStrategy.UUID))
