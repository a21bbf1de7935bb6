"""
RowSync HTTP client.

This module provides the network side of the SDK:
- RowSyncClient: Connection to a RowSync server (one shared httpx client)
- ResourceClient: create/update/delete for one resource
- MutationResult: txid + item returned by every write

Example:
    >>> async with RowSyncClient("http://localhost:8000", token="t0k3n") as client:
    ...     todos = client.resource("/api/todos")
    ...     result = await todos.create({"text": "buy milk"})
    ...     result.txid, result.item["id"]
    ('123', 7)

Invariants:
    - Every server error is raised as a RowSyncClientError subclass
    - Transport failures are raised as NetworkError
    - Tokens are never logged
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import NetworkError, error_from_response
from .shape import ShapeStream

logger = logging.getLogger(__name__)


@dataclass
class MutationResult:
    """Result of a committed write.

    Attributes:
        txid: Transaction id of the commit
        item: The row as stored (the removed row for deletes)
    """

    txid: str
    item: dict[str, Any]


class RowSyncClient:
    """Client for a RowSync server.

    Args:
        base_url: Server URL (e.g. http://localhost:8000)
        token: Bearer token sent with every request
        headers: Extra headers sent with every request
        timeout: Request timeout in seconds
        http: Pre-built httpx client (not closed by this client)
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        token: str | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        request_headers = dict(headers or {})
        if token is not None:
            request_headers["Authorization"] = f"Bearer {token}"

        self._owns_http = http is None
        if http is None:
            http = httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.http = http
        self.headers = request_headers
        self.timeout = timeout

    async def close(self) -> None:
        """Close the underlying HTTP client if this client created it."""
        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self) -> RowSyncClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def resource(self, base_path: str) -> ResourceClient:
        """Client for the resource served at ``base_path``."""
        return ResourceClient(self, base_path)

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
    ) -> dict[str, Any]:
        """Send a request and decode a successful JSON response.

        Raises:
            NetworkError: On a failed request (transport, redirects, decoding)
                or an undecodable response
            RowSyncClientError: The error reported by the server
        """
        try:
            response = await self.http.request(method, path, json=json, headers=self.headers)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e!r}")
            raise NetworkError(f"{method} {path} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            raise error_from_response(response.status_code, body)
        if not isinstance(body, dict):
            raise NetworkError(
                f"{method} {path} returned an invalid body", status_code=response.status_code
            )
        return body


class ResourceClient:
    """Writes and subscriptions for one resource."""

    def __init__(self, client: RowSyncClient, base_path: str) -> None:
        self.client = client
        self.base_path = base_path.rstrip("/")

    def _result(self, body: dict[str, Any]) -> MutationResult:
        try:
            return MutationResult(txid=str(body["txid"]), item=dict(body["item"]))
        except (KeyError, TypeError) as e:
            raise NetworkError(f"Malformed mutation response from {self.base_path}") from e

    async def create(self, values: dict[str, Any]) -> MutationResult:
        body = await self.client.request("POST", self.base_path, json=values)
        return self._result(body)

    async def update(self, row_id: Any, changes: dict[str, Any]) -> MutationResult:
        body = await self.client.request("PUT", f"{self.base_path}/{row_id}", json=changes)
        return self._result(body)

    async def delete(self, row_id: Any) -> MutationResult:
        body = await self.client.request("DELETE", f"{self.base_path}/{row_id}")
        return self._result(body)

    def subscribe(self, timeout: float | None = None) -> ShapeStream:
        """Open a change feed subscription for this resource.

        Args:
            timeout: Request timeout, must exceed the server's live poll timeout
        """
        return ShapeStream(
            self.client.http,
            self.base_path,
            headers=self.client.headers,
            timeout=timeout if timeout is not None else self.client.timeout,
        )
