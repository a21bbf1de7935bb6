"""
Unit tests for the change feed proxy.

Tests cover:
- Query parameter allow-list and table pinning
- Session row filter injection (client where is ignored)
- Streaming the upstream response back
- Feed secret header
- Upstream failures
"""

import json

import httpx
import pytest

from dbaas.rowsync_server.api.proxy import ChangeFeedProxy
from dbaas.rowsync_server.auth import Session
from dbaas.rowsync_server.catalog import todos
from dbaas.rowsync_server.errors import UpstreamError
from dbaas.rowsync_server.feed.service import FEED_SECRET_HEADER

ALICE = Session(user_id="alice")
FEED_URL = "http://feed/v1/shape"


class RecordingUpstream:
    """Fake change feed service that records requests."""

    def __init__(self):
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(
            200,
            json=[{"headers": {"control": "up-to-date"}}],
            headers={"x-feed-handle": "h1", "x-feed-offset": "0", "x-feed-up-to-date": "true"},
        )


class TestBuildParams:
    """Tests for ChangeFeedProxy.build_params."""

    @pytest.fixture
    def proxy(self):
        return ChangeFeedProxy(httpx.AsyncClient(), FEED_URL)

    def test_keeps_allowed_params(self, proxy):
        """Only allow-listed parameters are forwarded."""
        params = proxy.build_params(
            todos,
            ALICE,
            {"offset": "5", "handle": "h", "live": "true", "cursor": "c", "columns": "text"},
        )
        assert params == {
            "offset": "5",
            "handle": "h",
            "live": "true",
            "cursor": "c",
            "table": "todos",
            "where": '{"eq":["user_id","alice"]}',
        }

    def test_client_where_replaced(self, proxy):
        """A client-supplied where is replaced by the session filter."""
        params = proxy.build_params(todos, ALICE, {"where": '{"eq":["user_id","bob"]}'})
        assert params["where"] == '{"eq":["user_id","alice"]}'

    def test_table_pinned(self, proxy):
        """The table is always the resource's table."""
        params = proxy.build_params(todos, ALICE, {"table": "collections"})
        assert params["table"] == "todos"


class TestForward:
    """Tests for ChangeFeedProxy.forward."""

    @pytest.mark.asyncio
    async def test_streams_upstream_response(self):
        """The upstream body, status and feed headers are passed through."""
        upstream = RecordingUpstream()
        http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        proxy = ChangeFeedProxy(http, FEED_URL, timeout=5.0)

        response = await proxy.forward(todos, ALICE, {"offset": "-1", "where": "{}"})

        assert response.status_code == 200
        assert response.headers["x-feed-handle"] == "h1"
        assert "content-length" not in response.headers

        chunks = [chunk async for chunk in response.body_iterator]
        assert json.loads(b"".join(chunks)) == [{"headers": {"control": "up-to-date"}}]
        await response.background()

        sent = upstream.requests[0]
        assert sent.url.params["table"] == "todos"
        assert sent.url.params["offset"] == "-1"
        assert json.loads(sent.url.params["where"]) == {"eq": ["user_id", "alice"]}
        await http.aclose()

    @pytest.mark.asyncio
    async def test_sends_feed_secret(self):
        """The feed secret is attached upstream and only when configured."""
        upstream = RecordingUpstream()
        http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))

        with_secret = ChangeFeedProxy(http, FEED_URL, secret="s3cret")
        response = await with_secret.forward(todos, ALICE, {})
        await response.background()

        without_secret = ChangeFeedProxy(http, FEED_URL)
        response = await without_secret.forward(todos, ALICE, {})
        await response.background()

        assert upstream.requests[0].headers[FEED_SECRET_HEADER] == "s3cret"
        assert FEED_SECRET_HEADER not in upstream.requests[1].headers
        await http.aclose()

    @pytest.mark.asyncio
    async def test_upstream_unreachable(self):
        """Transport failures become UpstreamError."""

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        proxy = ChangeFeedProxy(http, FEED_URL)

        with pytest.raises(UpstreamError):
            await proxy.forward(todos, ALICE, {})
        await http.aclose()
