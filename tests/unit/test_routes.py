"""
Unit tests for the resource HTTP routes.

Tests cover:
- Session resolution before body and id parsing (401)
- Error rendering (kind, message, details)
- Create/update/delete responses
- Subscriptions proxied with the session filter
- The embedded feed refusing direct access
"""

import tempfile
from pathlib import Path

import httpx
import pytest

from dbaas.rowsync_server.api.app import create_app
from dbaas.rowsync_server.auth import StaticTokenSessionResolver
from dbaas.rowsync_server.config import Settings
from dbaas.rowsync_server.store.sqlite_store import SqliteStore

ALICE = {"Authorization": "Bearer t-alice"}
BOB = {"Authorization": "Bearer t-bob"}


class TestRoutes:
    """Tests for the routes built by create_app."""

    @pytest.fixture
    def upstream_requests(self):
        return []

    @pytest.fixture
    async def client(self, upstream_requests):
        def feed(request: httpx.Request) -> httpx.Response:
            upstream_requests.append(request)
            return httpx.Response(
                200,
                json=[{"headers": {"control": "up-to-date"}}],
                headers={"x-feed-handle": "h1", "x-feed-offset": "0"},
            )

        with tempfile.TemporaryDirectory() as tmpdir:
            store = SqliteStore(Path(tmpdir) / "rows.db", wal_mode=False)
            feed_client = httpx.AsyncClient(transport=httpx.MockTransport(feed))
            app = create_app(
                settings=Settings(embed_feed=False, feed_url="http://feed/v1/shape"),
                store=store,
                resolver=StaticTokenSessionResolver.from_user_map(
                    {"t-alice": "alice", "t-bob": "bob"}
                ),
                feed_client=feed_client,
            )
            await store.initialize()

            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                yield client

            await feed_client.aclose()
            await store.close()

    @pytest.mark.asyncio
    async def test_create(self, client):
        """POST returns txid and the stored item."""
        response = await client.post("/api/todos", json={"text": "buy milk"}, headers=ALICE)

        assert response.status_code == 200
        body = response.json()
        assert body["txid"]
        assert body["item"]["text"] == "buy milk"
        assert body["item"]["user_id"] == "alice"

    @pytest.mark.asyncio
    async def test_unauthenticated(self, client):
        """Requests without a valid token get 401 before validation."""
        response = await client.post("/api/todos", json={"bogus": 1})
        assert response.status_code == 401
        assert response.json()["kind"] == "UNAUTHENTICATED"

        response = await client.put(
            "/api/todos/not-a-number", json={}, headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_validation_errors(self, client):
        """Invalid bodies and ids are rendered as 422 with details."""
        response = await client.post("/api/todos", json={"text": ""}, headers=ALICE)
        assert response.status_code == 422
        body = response.json()
        assert body["kind"] == "VALIDATION"
        assert body["details"]["errors"]

        response = await client.post(
            "/api/todos",
            content=b"{not json",
            headers={**ALICE, "Content-Type": "application/json"},
        )
        assert response.status_code == 422

        response = await client.put("/api/todos/seven", json={"text": "x"}, headers=ALICE)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_update_and_delete(self, client):
        """Owners update and delete; others get 403; missing rows get 404."""
        created = (await client.post("/api/todos", json={"text": "a"}, headers=ALICE)).json()
        item_id = created["item"]["id"]

        response = await client.put(f"/api/todos/{item_id}", json={"text": "b"}, headers=BOB)
        assert response.status_code == 403
        assert response.json()["kind"] == "ACCESS_DENIED"

        response = await client.put(
            f"/api/todos/{item_id}", json={"completed": True}, headers=ALICE
        )
        assert response.status_code == 200
        assert response.json()["item"]["completed"] is True

        response = await client.delete(f"/api/todos/{item_id}", headers=ALICE)
        assert response.status_code == 200
        assert int(response.json()["txid"]) > int(created["txid"])

        response = await client.delete(f"/api/todos/{item_id}", headers=ALICE)
        assert response.status_code == 404
        assert response.json()["kind"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_subscribe_proxies_with_filter(self, client, upstream_requests):
        """GET on a resource forwards to the feed with the session's filter."""
        response = await client.get(
            "/api/todos",
            params={"offset": "-1", "where": '{"eq":["user_id","bob"]}'},
            headers=ALICE,
        )

        assert response.status_code == 200
        assert response.headers["x-feed-handle"] == "h1"
        assert response.json() == [{"headers": {"control": "up-to-date"}}]

        params = upstream_requests[0].url.params
        assert params["table"] == "todos"
        assert params["where"] == '{"eq":["user_id","alice"]}'

    @pytest.mark.asyncio
    async def test_subscribe_requires_session(self, client, upstream_requests):
        """Unauthenticated subscriptions never reach the feed."""
        response = await client.get("/api/todos")
        assert response.status_code == 401
        assert upstream_requests == []

    @pytest.mark.asyncio
    async def test_health(self, client):
        """Health lists the served resources."""
        response = await client.get("/health")
        assert response.json()["resources"] == ["todos", "collections", "nodes"]


class TestEmbeddedFeed:
    """Tests for the change feed mounted under /feed by default."""

    @pytest.fixture
    async def client(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SqliteStore(Path(tmpdir) / "rows.db", wal_mode=False)
            app = None

            async def loopback(request: httpx.Request) -> httpx.Response:
                return await httpx.ASGITransport(app=app).handle_async_request(request)

            feed_client = httpx.AsyncClient(transport=httpx.MockTransport(loopback))
            app = create_app(
                settings=Settings(feed_url="http://rowsync/feed/v1/shape"),
                store=store,
                resolver=StaticTokenSessionResolver.from_user_map({"t-alice": "alice"}),
                feed_client=feed_client,
            )
            await store.initialize()

            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://rowsync") as client:
                yield client

            await feed_client.aclose()
            await store.close()

    @pytest.mark.asyncio
    async def test_direct_feed_access_rejected(self, client):
        """Callers without the feed secret cannot read rows from /feed."""
        await client.post("/api/todos", json={"text": "alice secret"}, headers=ALICE)

        response = await client.get("/feed/v1/shape", params={"table": "todos", "offset": "-1"})
        assert response.status_code == 401
        assert "alice secret" not in response.text

        response = await client.get(
            "/feed/v1/shape",
            params={"table": "todos", "offset": "-1"},
            headers={**ALICE, "x-feed-secret": ""},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_subscription_through_proxy(self, client):
        """The resource subscription reaches the embedded feed."""
        await client.post("/api/todos", json={"text": "mine"}, headers=ALICE)

        response = await client.get("/api/todos", params={"offset": "-1"}, headers=ALICE)
        assert response.status_code == 200
        assert response.json()[0]["value"]["text"] == "mine"
