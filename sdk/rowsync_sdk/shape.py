"""
Change feed subscriber.

ShapeStream follows one resource subscription request by request:

    1. offset=-1            -> snapshot of visible rows, then up-to-date
    2. offset=N, handle=H   -> changes after N (catch-up)
    3. live=true            -> long-poll for the next changes

A 409 (must-refetch) resets the stream to step 1.

Invariants:
    - offset, handle and cursor only advance from server responses
    - Live mode starts after the first up-to-date message
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from .errors import NetworkError, error_from_response

logger = logging.getLogger(__name__)

HANDLE_HEADER = "x-feed-handle"
OFFSET_HEADER = "x-feed-offset"
CURSOR_HEADER = "x-feed-cursor"
UP_TO_DATE_HEADER = "x-feed-up-to-date"

UP_TO_DATE = "up-to-date"
MUST_REFETCH = "must-refetch"
SNAPSHOT_OFFSET = -1


@dataclass(frozen=True)
class ChangeMessage:
    """One row change from the feed.

    Attributes:
        key: Feed key of the row
        value: Row value (the removed row for deletes)
        operation: insert, update or delete
        offset: Change-log offset
        txids: Transactions that committed the change (empty in snapshots)
    """

    key: str
    value: dict[str, Any]
    operation: str
    offset: int | None = None
    txids: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeMessage:
        headers = data.get("headers") or {}
        offset = data.get("offset")
        return cls(
            key=str(data["key"]),
            value=dict(data.get("value") or {}),
            operation=headers.get("operation", "insert"),
            offset=int(offset) if offset is not None else None,
            txids=tuple(str(txid) for txid in headers.get("txids") or ()),
        )


@dataclass
class ShapeBatch:
    """Messages from one feed response.

    Attributes:
        changes: Row changes in feed order
        snapshot: Whether this batch is (part of) an initial snapshot
        up_to_date: Whether the subscriber has caught up
        must_refetch: Whether local state must be discarded
        offset: Stream offset after this batch
    """

    changes: list[ChangeMessage] = field(default_factory=list)
    snapshot: bool = False
    up_to_date: bool = False
    must_refetch: bool = False
    offset: int = SNAPSHOT_OFFSET


class ShapeStream:
    """Request-by-request reader of one resource subscription.

    Example:
        >>> stream = ShapeStream(http, "/api/todos", headers={"Authorization": "Bearer t"})
        >>> batch = await stream.fetch()
        >>> [c.value for c in batch.changes]
        [{'id': 7, 'text': 'buy milk', ...}]
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        path: str,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> None:
        self._http = http
        self.path = path
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.reset()

    def reset(self) -> None:
        """Restart from a snapshot on the next fetch."""
        self.offset = SNAPSHOT_OFFSET
        self.handle: str | None = None
        self.cursor: str | None = None
        self.live = False

    def _params(self) -> dict[str, str]:
        params = {"offset": str(self.offset)}
        if self.handle is not None:
            params["handle"] = self.handle
        if self.cursor is not None:
            params["cursor"] = self.cursor
        if self.live:
            params["live"] = "true"
        return params

    async def fetch(self) -> ShapeBatch:
        """Fetch the next batch.

        Raises:
            NetworkError: On a failed request or a malformed response
            UnauthenticatedError: If the session was rejected
        """
        snapshot = self.offset == SNAPSHOT_OFFSET
        try:
            response = await self._http.get(
                self.path,
                params=self._params(),
                headers=self.headers,
                timeout=self.timeout if self.timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Subscription to {self.path} failed: {e}") from e

        if response.status_code == 409:
            logger.info(f"Subscription to {self.path} must be refetched")
            self.reset()
            return ShapeBatch(must_refetch=True)

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            raise error_from_response(response.status_code, body)
        if not isinstance(body, list):
            raise NetworkError(
                f"Subscription to {self.path} returned an invalid body",
                status_code=response.status_code,
            )

        batch = ShapeBatch(snapshot=snapshot)
        try:
            for message in body:
                control = (message.get("headers") or {}).get("control")
                if control == UP_TO_DATE:
                    batch.up_to_date = True
                elif control == MUST_REFETCH:
                    batch.must_refetch = True
                elif control is None:
                    batch.changes.append(ChangeMessage.from_dict(message))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise NetworkError(f"Malformed message from {self.path}: {e}") from e

        if batch.must_refetch:
            self.reset()
            return batch

        headers = response.headers
        if HANDLE_HEADER in headers:
            self.handle = headers[HANDLE_HEADER]
        if OFFSET_HEADER in headers:
            try:
                self.offset = int(headers[OFFSET_HEADER])
            except ValueError as e:
                raise NetworkError(f"Invalid offset header from {self.path}") from e
        if CURSOR_HEADER in headers:
            self.cursor = headers[CURSOR_HEADER]
        if headers.get(UP_TO_DATE_HEADER) == "true":
            batch.up_to_date = True
        if batch.up_to_date:
            self.live = True

        batch.offset = self.offset
        return batch
