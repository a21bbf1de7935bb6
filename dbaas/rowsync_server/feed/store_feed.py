"""
Change feed backed by the store's change log.

StoreChangeFeed serves snapshots and incremental changes straight from
the store's outbox table. Filtering by ``where`` happens here, so a
subscriber only ever sees rows matching its predicate:

    old row   new row   delivered as
    -------   -------   ------------
    match     match     update
    match     no match  delete  (row moved out of the subscription)
    no match  match     insert  (row moved into the subscription)
    no match  no match  nothing

Invariants:
    - Offsets advance past filtered-out changes too
    - A live request returns as soon as one matching change exists
    - Handles change when the store generation changes

How to change safely:
    - Keep the commit token read before the change-log read, otherwise
      a commit between the two can be missed until the next timeout
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections.abc import Mapping
from typing import Any

from ..errors import BadRequestError
from ..predicate import Predicate
from ..store.base import ChangeOperation, ChangeRecord, Store, TableSpec
from .base import (
    MUST_REFETCH,
    SNAPSHOT_OFFSET,
    UP_TO_DATE,
    FeedRequest,
    FeedResponse,
    change_message,
    control_message,
)

logger = logging.getLogger(__name__)


def filter_change(record: ChangeRecord, where: Predicate | None) -> tuple[str, dict[str, Any]] | None:
    """Decide how a change appears to a subscription filtered by ``where``.

    Returns:
        Tuple of (operation, value), or None if the change is invisible
    """
    if where is None:
        return record.operation.value, record.row

    if record.operation is ChangeOperation.INSERT:
        return ("insert", record.row) if where.matches(record.row) else None

    if record.operation is ChangeOperation.DELETE:
        old_row = record.old_row or record.row
        return ("delete", old_row) if where.matches(old_row) else None

    was_visible = record.old_row is not None and where.matches(record.old_row)
    is_visible = where.matches(record.row)
    if was_visible and is_visible:
        return "update", record.row
    if was_visible:
        return "delete", record.old_row
    if is_visible:
        return "insert", record.row
    return None


class StoreChangeFeed:
    """ChangeFeedService reading a Store's change log.

    Example:
        >>> feed = StoreChangeFeed(store, {"todos": TableSpec("todos")})
        >>> response = await feed.fetch(FeedRequest(table="todos"))
        >>> response.messages[-1]
        {'headers': {'control': 'up-to-date'}}
    """

    def __init__(
        self,
        store: Store,
        tables: Mapping[str, TableSpec],
        page_size: int = 1000,
        live_timeout: float = 20.0,
    ) -> None:
        """Initialize the feed.

        Args:
            store: Store whose change log is served
            tables: Tables that may be subscribed to, by name
            page_size: Maximum change records read per request
            live_timeout: Seconds a live request waits for a change
        """
        self._store = store
        self._tables = dict(tables)
        self.page_size = page_size
        self.live_timeout = live_timeout

    def handle_for(self, table: str, where: Predicate | None) -> str:
        """Stable subscription handle for (generation, table, where)."""
        where_json = where.to_json() if where is not None else ""
        digest = hashlib.sha256(
            f"{self._store.generation}:{table}:{where_json}".encode()
        ).hexdigest()
        return digest[:24]

    def _cursor(self) -> str:
        return str(int(time.time() / max(self.live_timeout, 1.0)))

    async def fetch(self, request: FeedRequest) -> FeedResponse:
        spec = self._tables.get(request.table)
        if spec is None:
            raise BadRequestError(f"Unknown table: {request.table}")
        if request.offset < SNAPSHOT_OFFSET:
            raise BadRequestError(f"Invalid offset: {request.offset}")

        handle = self.handle_for(request.table, request.where)

        if request.offset == SNAPSHOT_OFFSET:
            return await self._snapshot(spec, request.where, handle)

        if request.handle != handle:
            logger.info(
                f"Stale feed handle for {request.table} "
                f"(got {request.handle}, current {handle}); requesting refetch"
            )
            return FeedResponse(
                handle=handle,
                offset=SNAPSHOT_OFFSET,
                messages=[control_message(MUST_REFETCH)],
                must_refetch=True,
            )

        return await self._changes(spec, request, handle)

    async def _snapshot(self, spec: TableSpec, where: Predicate | None, handle: str) -> FeedResponse:
        rows, seq = await self._store.snapshot(spec, where)
        messages = [
            change_message(spec.row_key(row[spec.identity]), row, seq, "insert") for row in rows
        ]
        messages.append(control_message(UP_TO_DATE))

        logger.debug(f"Served snapshot of {spec.table}: {len(rows)} rows at offset {seq}")
        return FeedResponse(
            handle=handle,
            offset=seq,
            messages=messages,
            cursor=self._cursor(),
            up_to_date=True,
        )

    async def _changes(self, spec: TableSpec, request: FeedRequest, handle: str) -> FeedResponse:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.live_timeout
        offset = request.offset

        while True:
            token = self._store.commit_token
            records = await self._store.changes_since(spec.table, offset, self.page_size)

            messages = []
            for record in records:
                visible = filter_change(record, request.where)
                if visible is not None:
                    operation, value = visible
                    messages.append(
                        change_message(record.row_key, value, record.seq, operation, record.txid)
                    )
                offset = record.seq

            up_to_date = len(records) < self.page_size
            if messages or not up_to_date or not request.live:
                break

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await self._store.wait_for_commit(token, remaining)

        if up_to_date:
            messages.append(control_message(UP_TO_DATE))

        return FeedResponse(
            handle=handle,
            offset=offset,
            messages=messages,
            cursor=self._cursor() if request.live else request.cursor,
            up_to_date=up_to_date,
        )
