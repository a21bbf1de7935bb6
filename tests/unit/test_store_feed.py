"""
Unit tests for the change feed service.

Tests cover:
- Snapshots and incremental changes
- where filtering with move-in / move-out
- Stale handles (must-refetch)
- Live long-polling
- The /v1/shape HTTP endpoint
"""

import asyncio
import json
import tempfile
from pathlib import Path

import httpx
import pytest

from dbaas.rowsync_server.errors import BadRequestError
from dbaas.rowsync_server.feed.base import FeedRequest
from dbaas.rowsync_server.feed.service import FEED_SECRET_HEADER, create_feed_app
from dbaas.rowsync_server.feed.store_feed import StoreChangeFeed, filter_change
from dbaas.rowsync_server.predicate import Eq
from dbaas.rowsync_server.store.base import ChangeOperation, ChangeRecord, TableSpec
from dbaas.rowsync_server.store.sqlite_store import SqliteStore

TODOS = TableSpec("todos")
ALICE = Eq("user_id", "alice")


def record(operation, row, old_row=None):
    return ChangeRecord(
        seq=1,
        table="todos",
        row_key=str(row["id"]),
        operation=operation,
        row=row,
        old_row=old_row,
        txid="5",
        committed_at=0,
    )


class TestFilterChange:
    """Tests for filter_change."""

    def test_unfiltered_passes_through(self):
        """Without where, every change is visible as-is."""
        change = record(ChangeOperation.UPDATE, {"id": 1, "user_id": "bob"}, {"id": 1})
        assert filter_change(change, None) == ("update", {"id": 1, "user_id": "bob"})

    def test_move_out_becomes_delete(self):
        """An update leaving the filter is delivered as a delete."""
        old = {"id": 1, "user_id": "alice"}
        new = {"id": 1, "user_id": "bob"}
        assert filter_change(record(ChangeOperation.UPDATE, new, old), ALICE) == ("delete", old)

    def test_move_in_becomes_insert(self):
        """An update entering the filter is delivered as an insert."""
        old = {"id": 1, "user_id": "bob"}
        new = {"id": 1, "user_id": "alice"}
        assert filter_change(record(ChangeOperation.UPDATE, new, old), ALICE) == ("insert", new)

    def test_invisible_changes_dropped(self):
        """Changes to rows outside the filter are dropped."""
        row = {"id": 1, "user_id": "bob"}
        assert filter_change(record(ChangeOperation.INSERT, row), ALICE) is None
        assert filter_change(record(ChangeOperation.DELETE, row, row), ALICE) is None


class TestStoreChangeFeed:
    """Tests for StoreChangeFeed."""

    @pytest.fixture
    async def store(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SqliteStore(Path(tmpdir) / "rows.db", wal_mode=False)
            store.register_table(TODOS)
            await store.initialize()
            yield store
            await store.close()

    @pytest.fixture
    def feed(self, store):
        return StoreChangeFeed(store, {"todos": TODOS}, page_size=100, live_timeout=0.2)

    async def insert(self, store, **values):
        async with store.transaction() as tx:
            row = await tx.insert(TODOS, values)
            return row, tx.txid

    @pytest.mark.asyncio
    async def test_snapshot_then_changes(self, store, feed):
        """A snapshot is followed by incremental changes with txids."""
        await self.insert(store, text="a", user_id="alice")

        snapshot = await feed.fetch(FeedRequest(table="todos"))
        assert snapshot.up_to_date
        assert snapshot.offset == 1
        assert [m["value"]["text"] for m in snapshot.messages[:-1]] == ["a"]
        assert snapshot.messages[-1] == {"headers": {"control": "up-to-date"}}

        row, txid = await self.insert(store, text="b", user_id="alice")
        changes = await feed.fetch(
            FeedRequest(table="todos", offset=snapshot.offset, handle=snapshot.handle)
        )
        assert changes.offset == 2
        assert changes.messages[0] == {
            "key": str(row["id"]),
            "value": row,
            "offset": 2,
            "headers": {"operation": "insert", "txids": [txid]},
        }

    @pytest.mark.asyncio
    async def test_where_filters_snapshot_and_changes(self, store, feed):
        """Only rows matching where are delivered; offsets still advance."""
        await self.insert(store, text="mine", user_id="alice")
        await self.insert(store, text="theirs", user_id="bob")

        snapshot = await feed.fetch(FeedRequest(table="todos", where=ALICE))
        assert [m["value"]["text"] for m in snapshot.messages[:-1]] == ["mine"]

        await self.insert(store, text="theirs too", user_id="bob")
        changes = await feed.fetch(
            FeedRequest(table="todos", offset=snapshot.offset, handle=snapshot.handle, where=ALICE)
        )
        assert changes.messages == [{"headers": {"control": "up-to-date"}}]
        assert changes.offset == 3

    @pytest.mark.asyncio
    async def test_stale_handle_must_refetch(self, feed):
        """A handle from another subscription forces a refetch."""
        response = await feed.fetch(FeedRequest(table="todos", offset=0, handle="stale"))
        assert response.must_refetch
        assert response.messages == [{"headers": {"control": "must-refetch"}}]

    @pytest.mark.asyncio
    async def test_handle_depends_on_where(self, feed):
        """Different filters get different handles."""
        assert feed.handle_for("todos", ALICE) != feed.handle_for("todos", Eq("user_id", "bob"))
        assert feed.handle_for("todos", ALICE) == feed.handle_for("todos", Eq("user_id", "alice"))

    @pytest.mark.asyncio
    async def test_unknown_table(self, feed):
        """Unknown tables are rejected."""
        with pytest.raises(BadRequestError):
            await feed.fetch(FeedRequest(table="secrets"))

    @pytest.mark.asyncio
    async def test_live_request_waits_for_commit(self, store, feed):
        """A live request returns as soon as a matching change commits."""
        snapshot = await feed.fetch(FeedRequest(table="todos"))
        request = FeedRequest(
            table="todos", offset=snapshot.offset, handle=snapshot.handle, live=True
        )
        feed.live_timeout = 5.0

        pending = asyncio.create_task(feed.fetch(request))
        await asyncio.sleep(0.05)
        assert not pending.done()

        await self.insert(store, text="late")
        response = await asyncio.wait_for(pending, timeout=2.0)
        assert response.messages[0]["value"]["text"] == "late"
        assert response.cursor is not None

    @pytest.mark.asyncio
    async def test_live_request_times_out(self, feed):
        """A live request with nothing new returns up-to-date after the timeout."""
        snapshot = await feed.fetch(FeedRequest(table="todos"))
        response = await feed.fetch(
            FeedRequest(table="todos", offset=snapshot.offset, handle=snapshot.handle, live=True)
        )
        assert response.messages == [{"headers": {"control": "up-to-date"}}]
        assert response.up_to_date

    @pytest.mark.asyncio
    async def test_http_endpoint(self, store, feed):
        """GET /v1/shape serves messages and x-feed headers."""
        await self.insert(store, text="a", user_id="alice")
        app = create_feed_app(feed)

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://feed") as client:
            response = await client.get(
                "/v1/shape", params={"table": "todos", "where": ALICE.to_json()}
            )
            assert response.status_code == 200
            assert response.headers["x-feed-offset"] == "1"
            assert response.headers["x-feed-up-to-date"] == "true"
            assert response.json()[0]["value"]["user_id"] == "alice"

            stale = await client.get(
                "/v1/shape", params={"table": "todos", "offset": "1", "handle": "nope"}
            )
            assert stale.status_code == 409

            bad = await client.get("/v1/shape", params={"table": "todos", "where": "{"})
            assert bad.status_code == 400
            assert bad.json()["kind"] == "BAD_REQUEST"

            missing = await client.get("/v1/shape")
            assert missing.status_code == 400

    @pytest.mark.asyncio
    async def test_http_endpoint_requires_secret(self, store, feed):
        """With a secret configured, requests without it never see rows."""
        await self.insert(store, text="private", user_id="alice")
        app = create_feed_app(feed, secret="s3cret")

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://feed") as client:
            params = {"table": "todos", "offset": "-1"}

            missing = await client.get("/v1/shape", params=params)
            assert missing.status_code == 401
            assert missing.json()["kind"] == "UNAUTHENTICATED"
            assert "private" not in missing.text

            wrong = await client.get(
                "/v1/shape", params=params, headers={FEED_SECRET_HEADER: "guess"}
            )
            assert wrong.status_code == 401

            ok = await client.get(
                "/v1/shape", params=params, headers={FEED_SECRET_HEADER: "s3cret"}
            )
            assert ok.status_code == 200
            assert ok.json()[0]["value"]["text"] == "private"

    def test_where_param_round_trip(self):
        """The where parameter is the predicate's JSON form."""
        assert json.loads(ALICE.to_json()) == {"eq": ["user_id", "alice"]}
