"""
Integration tests for the full sync flow.

A real SqliteStore, the change feed service, the resource API and the
SDK are wired together in-process through httpx.ASGITransport:

    SyncedCollection -> RowSyncClient -> resource API -> MutationGateway -> SqliteStore
    SyncedCollection <- ShapeStream  <- ChangeFeedProxy <- change feed   <-/

Tests cover:
- Optimistic insert confirmed through the feed
- Per-user row visibility on the feed
- Denied writes rolled back on the client
- Writes from one client observed by another
- Parent checks on the node tree
"""

import asyncio
import tempfile
from pathlib import Path

import httpx
import pytest

from dbaas.rowsync_server.api.app import create_app
from dbaas.rowsync_server.auth import StaticTokenSessionResolver
from dbaas.rowsync_server.catalog import build_registry
from dbaas.rowsync_server.config import Settings
from dbaas.rowsync_server.feed.service import create_feed_app
from dbaas.rowsync_server.feed.store_feed import StoreChangeFeed
from dbaas.rowsync_server.store.sqlite_store import SqliteStore
from sdk.rowsync_sdk import (
    AccessDeniedError,
    MutationState,
    RowSyncClient,
    SyncedCollection,
    ValidationError,
)

TOKENS = {"t-alice": "alice", "t-bob": "bob"}


async def wait_until(condition, timeout=5.0):
    """Poll ``condition`` until it is true or fail after ``timeout``."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestSyncFlow:
    """End-to-end tests through the HTTP layers."""

    @pytest.fixture
    async def server(self):
        """Resource API plus change feed service over one store."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SqliteStore(Path(tmpdir) / "rows.db", wal_mode=False)
            tables = {d.table: d.table_spec for d in build_registry()}
            feed_app = create_feed_app(StoreChangeFeed(store, tables, live_timeout=0.5))
            feed_http = httpx.AsyncClient(
                transport=httpx.ASGITransport(app=feed_app), base_url="http://feed"
            )

            app = create_app(
                settings=Settings(embed_feed=False, feed_url="http://feed/v1/shape"),
                store=store,
                resolver=StaticTokenSessionResolver.from_user_map(TOKENS),
                feed_client=feed_http,
            )
            await store.initialize()

            yield app

            await feed_http.aclose()
            await store.close()

    @pytest.fixture
    async def connect(self, server):
        """Factory for SDK clients authenticated as a given token."""
        opened = []

        def _connect(token):
            http = httpx.AsyncClient(
                transport=httpx.ASGITransport(app=server), base_url="http://rowsync"
            )
            opened.append(http)
            return RowSyncClient(http=http, token=token, timeout=5.0)

        yield _connect

        for http in opened:
            await http.aclose()

    @pytest.fixture
    async def collections(self):
        """Tracks collections so they are closed after each test."""
        opened = []
        yield opened
        for collection in opened:
            await collection.close()

    async def open(self, collections, client, path="/api/todos"):
        collection = SyncedCollection(client.resource(path), txid_timeout=5.0)
        collections.append(collection)
        await collection.preload()
        return collection

    @pytest.mark.asyncio
    async def test_insert_confirmed_through_feed(self, connect, collections):
        """An optimistic insert is confirmed once its txid arrives on the feed."""
        todos = await self.open(collections, connect("t-alice"))
        assert len(todos) == 0

        pending = todos.insert({"text": "buy milk"})
        assert pending.key in todos

        item = await asyncio.wait_for(pending.wait(), timeout=5.0)

        assert pending.state is MutationState.CONFIRMED
        assert item["user_id"] == "alice"
        assert todos.get(item["id"])["text"] == "buy milk"
        assert todos.pending == []

    @pytest.mark.asyncio
    async def test_rows_visible_only_to_owner(self, connect, collections):
        """Each session only receives its own rows."""
        alice = await self.open(collections, connect("t-alice"))
        bob = await self.open(collections, connect("t-bob"))

        mine = await alice.insert({"text": "alice's"}).wait()
        theirs = await bob.insert({"text": "bob's"}).wait()

        await wait_until(lambda: mine["id"] in alice and theirs["id"] in bob)
        assert alice.keys() == [mine["id"]]
        assert bob.keys() == [theirs["id"]]

    @pytest.mark.asyncio
    async def test_denied_update_rolled_back(self, connect, collections):
        """Updating another user's row is denied and the overlay is removed."""
        alice_client = connect("t-alice")
        alice = await self.open(collections, alice_client)
        item = await alice.insert({"text": "private"}).wait()

        bob = await self.open(collections, connect("t-bob"))
        pending = bob.update(item["id"], {"text": "hacked"})

        with pytest.raises(AccessDeniedError):
            await pending.wait()
        assert item["id"] not in bob

        result = await alice_client.resource("/api/todos").update(item["id"], {"completed": True})
        assert result.item["text"] == "private"

    @pytest.mark.asyncio
    async def test_writes_observed_by_other_client(self, connect, collections):
        """A second client of the same user sees writes from the first."""
        writer = await self.open(collections, connect("t-alice"))
        reader = await self.open(collections, connect("t-alice"))

        item = await writer.insert({"text": "shared"}).wait()
        await wait_until(lambda: item["id"] in reader)

        await writer.update(item["id"], {"completed": True}).wait()
        await wait_until(lambda: reader.get(item["id"])["completed"] is True)

        await writer.delete(item["id"]).wait()
        await wait_until(lambda: item["id"] not in reader)

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_snapshot(self, connect, collections):
        """A collection opened after writes starts from a snapshot of them."""
        client = connect("t-alice")
        todos = client.resource("/api/todos")
        first = await todos.create({"text": "one"})
        await todos.create({"text": "two"})
        await todos.delete(first.item["id"])

        collection = await self.open(collections, client)
        assert [row["text"] for row in collection.values()] == ["two"]

    @pytest.mark.asyncio
    async def test_node_tree(self, connect, collections):
        """Nodes form a tree; cycles and orphaning deletes are rejected."""
        client = connect("t-alice")
        group = await client.resource("/api/collections").create({"name": "docs"})
        nodes = await self.open(collections, client, "/api/nodes")

        folder = await nodes.insert(
            {"name": "src", "kind": "folder", "collection_id": group.item["id"]}
        ).wait()
        file = await nodes.insert(
            {
                "name": "main.py",
                "kind": "file",
                "parent_id": folder["id"],
                "collection_id": group.item["id"],
            }
        ).wait()

        with pytest.raises(ValidationError):
            await nodes.update(folder["id"], {"parent_id": file["id"]}).wait()
        with pytest.raises(ValidationError):
            await nodes.delete(folder["id"]).wait()

        assert nodes.get(folder["id"])["parent_id"] is None
        assert folder["id"] in nodes

        await nodes.delete(file["id"]).wait()
        await nodes.delete(folder["id"]).wait()
        await wait_until(lambda: len(nodes) == 0)
