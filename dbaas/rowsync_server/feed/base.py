"""
Base protocol and wire types for the change feed service.

The change feed streams committed row changes for one table, optionally
restricted by a ``where`` predicate. A subscription is identified by a
handle and advanced by an offset (the change-log sequence number):

    offset=-1             initial snapshot of all matching rows
    offset=N, handle=H    changes after N for the subscription H
    live=true             long-poll until a change arrives or timeout

Wire format (JSON array of messages):
    change:  {"key": "7", "value": {...}, "offset": 42,
              "headers": {"operation": "insert", "txids": ["123"]}}
    control: {"headers": {"control": "up-to-date"}}
             {"headers": {"control": "must-refetch"}}

Invariants:
    - Messages are delivered in change-log order
    - Each change message carries the txid that committed it
    - A handle is only valid for the store generation it was issued for

How to change safely:
    - New message headers must be optional for deployed SDKs
    - Keep header names stable; proxies forward them verbatim
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..predicate import Predicate

HANDLE_HEADER = "x-feed-handle"
OFFSET_HEADER = "x-feed-offset"
CURSOR_HEADER = "x-feed-cursor"
UP_TO_DATE_HEADER = "x-feed-up-to-date"

UP_TO_DATE = "up-to-date"
MUST_REFETCH = "must-refetch"

SNAPSHOT_OFFSET = -1


def change_message(
    key: str,
    value: dict[str, Any],
    offset: int,
    operation: str,
    txid: str | None = None,
) -> dict[str, Any]:
    headers: dict[str, Any] = {"operation": operation}
    if txid is not None:
        headers["txids"] = [txid]
    return {"key": key, "value": value, "offset": offset, "headers": headers}


def control_message(control: str) -> dict[str, Any]:
    return {"headers": {"control": control}}


@dataclass(frozen=True)
class FeedRequest:
    """One change feed request.

    Attributes:
        table: Table to read changes for
        offset: Change-log position to read after (-1 for a snapshot)
        handle: Subscription handle returned by a previous response
        live: Long-poll for new changes when caught up
        cursor: Cache-busting token echoed from the previous live response
        where: Row filter applied to snapshot rows and changes
    """

    table: str
    offset: int = SNAPSHOT_OFFSET
    handle: str | None = None
    live: bool = False
    cursor: str | None = None
    where: Predicate | None = None


@dataclass
class FeedResponse:
    """One change feed response.

    Attributes:
        messages: Change and control messages, in order
        handle: Handle to send with the next request
        offset: Offset to send with the next request
        cursor: Cursor to send with the next live request
        up_to_date: Whether the subscriber has caught up
        must_refetch: Whether the subscriber must restart from a snapshot
    """

    handle: str
    offset: int
    messages: list[dict[str, Any]] = field(default_factory=list)
    cursor: str | None = None
    up_to_date: bool = False
    must_refetch: bool = False

    def headers(self) -> dict[str, str]:
        headers = {
            HANDLE_HEADER: self.handle,
            OFFSET_HEADER: str(self.offset),
        }
        if self.cursor is not None:
            headers[CURSOR_HEADER] = self.cursor
        if self.up_to_date:
            headers[UP_TO_DATE_HEADER] = "true"
        return headers


@runtime_checkable
class ChangeFeedService(Protocol):
    """Protocol for change feed backends."""

    @abstractmethod
    async def fetch(self, request: FeedRequest) -> FeedResponse:
        """Serve one feed request.

        Raises:
            BadRequestError: If the table is unknown
        """
        ...
