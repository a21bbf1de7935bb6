"""
SyncedCollection: a live local view of one resource with optimistic writes.

The collection keeps two layers:
- synced rows: the authoritative state, built only from the change feed
- pending mutations: local writes not yet confirmed, in submission order

The visible view of a row is its synced value with every pending overlay
for that row applied in order. It is recomputed whenever either layer
changes, so a rejected write disappears without touching anything else.

Write flow:
    insert/update/delete -> overlay applied, PendingMutation(CREATED)
    -> gateway call (SENT) -> {txid, item}
    -> feed event carrying txid for that row -> CONFIRMED, overlay dropped
    gateway error or txid_timeout -> REJECTED, overlay dropped

Invariants:
    - Each feed change is applied at most once (by offset)
    - Writes to one row are sent one at a time, in submission order
    - Writes to different rows are independent
    - A rejected write never remains visible
    - All state is touched from the event loop thread only

How to change safely:
    - Keep overlay order equal to submission order
    - Confirmation must match on both txid and row key
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from .client import ResourceClient
from .errors import (
    AccessDeniedError,
    NotFoundError,
    RowSyncClientError,
    SyncTimeoutError,
    UnauthenticatedError,
)
from .mutations import LocalKey, Mutation, MutationKind, MutationState, PendingMutation
from .shape import ShapeBatch, ShapeStream

logger = logging.getLogger(__name__)

# Errors that retrying the subscription cannot fix
FATAL_FEED_ERRORS = (UnauthenticatedError, AccessDeniedError)


@dataclass(frozen=True)
class RowChange:
    """A change to the visible view.

    Attributes:
        key: Row key
        operation: insert, update or delete
        value: New row value (None for deletes)
        previous: Previous row value (None for inserts)
    """

    key: Any
    operation: str
    value: dict[str, Any] | None
    previous: dict[str, Any] | None


ChangeListener = Callable[[list[RowChange]], None]


class SyncedCollection:
    """Local, live, optimistically-writable view of one resource.

    Example:
        >>> todos = SyncedCollection(client.resource("/api/todos"))
        >>> await todos.preload()
        >>> pending = todos.insert({"text": "buy milk"})
        >>> pending.key in todos
        True
        >>> item = await pending.wait()
        >>> todos.get(item["id"])["text"]
        'buy milk'
    """

    def __init__(
        self,
        resource: ResourceClient,
        *,
        identity: str = "id",
        stream: ShapeStream | None = None,
        txid_timeout: float = 30.0,
        reconnect_delay: float = 0.5,
        max_reconnect_delay: float = 30.0,
        seen_txid_limit: int = 1000,
    ) -> None:
        """Initialize the collection.

        Args:
            resource: Client for the resource's gateway
            identity: Identity column of the resource
            stream: Feed subscription (resource.subscribe() if not provided)
            txid_timeout: Seconds to wait for a committed txid on the feed
            reconnect_delay: Initial delay before resubscribing after a failure
            max_reconnect_delay: Upper bound for the reconnect backoff
            seen_txid_limit: How many observed txids to remember
        """
        self._resource = resource
        self.identity = identity
        self._stream = stream or resource.subscribe()
        self.txid_timeout = txid_timeout
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self._seen_txid_limit = seen_txid_limit

        self._synced: dict[Any, dict[str, Any]] = {}
        self._view: dict[Any, dict[str, Any]] = {}
        self._pending: list[PendingMutation] = []
        self._awaiting: dict[str, list[PendingMutation]] = {}
        self._seen_txids: OrderedDict[str, set[Any]] = OrderedDict()
        self._aliases: dict[LocalKey, Any] = {}
        self._row_tails: dict[Any, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._listeners: list[ChangeListener] = []
        self._applied_offset = -1

        self._status = "idle"
        self._ready: asyncio.Future | None = None
        self._sync_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @property
    def status(self) -> str:
        """idle, loading, ready, error or closed."""
        return self._status

    @property
    def state(self) -> dict[Any, dict[str, Any]]:
        """Copy of the visible view."""
        return {key: dict(row) for key, row in self._view.items()}

    @property
    def pending(self) -> list[PendingMutation]:
        """Unresolved mutations in submission order."""
        return list(self._pending)

    def get(self, key: Any, default: Any = None) -> dict[str, Any] | None:
        row = self._view.get(self._resolve(key))
        return dict(row) if row is not None else default

    def values(self) -> list[dict[str, Any]]:
        return [dict(row) for row in self._view.values()]

    def keys(self) -> list[Any]:
        return list(self._view)

    def __contains__(self, key: Any) -> bool:
        return self._resolve(key) in self._view

    def __len__(self) -> int:
        return len(self._view)

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._view))

    def subscribe_changes(self, listener: ChangeListener) -> Callable[[], None]:
        """Call ``listener`` with every batch of view changes.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def preload(self) -> None:
        """Start syncing and wait for the first full snapshot.

        Calling it again after the first snapshot returns immediately.

        Raises:
            UnauthenticatedError: If the subscription was rejected
            RowSyncClientError: If the collection is closed
        """
        if self._status == "closed":
            raise RowSyncClientError("Collection is closed")
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
            self._ready.add_done_callback(lambda f: f.cancelled() or f.exception())
            self._status = "loading"
            self._sync_task = asyncio.create_task(self._sync_loop())
        await asyncio.shield(self._ready)

    async def close(self) -> None:
        """Stop syncing and reject unresolved mutations."""
        if self._status == "closed":
            return
        self._status = "closed"

        tasks = list(self._tasks)
        if self._sync_task is not None:
            tasks.append(self._sync_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        closed = RowSyncClientError("Collection closed")
        for pending in list(self._pending):
            pending.reject(closed)
        self._pending.clear()
        self._awaiting.clear()
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(closed)

    async def __aenter__(self) -> SyncedCollection:
        await self.preload()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def insert(self, values: Mapping[str, Any]) -> PendingMutation:
        """Insert a row optimistically.

        The row is visible immediately under a temporary LocalKey, and
        under its server identity once the gateway responds.
        """
        key = LocalKey.new()
        mutation = Mutation(MutationKind.INSERT, self._resource.base_path, dict(values))
        return self._submit(mutation, key)

    def update(self, key: Any, changes: Mapping[str, Any]) -> PendingMutation:
        """Update a row optimistically."""
        key = self._resolve(key)
        mutation = Mutation(MutationKind.UPDATE, self._resource.base_path, dict(changes), key)
        return self._submit(mutation, key)

    def delete(self, key: Any) -> PendingMutation:
        """Delete a row optimistically."""
        key = self._resolve(key)
        mutation = Mutation(MutationKind.DELETE, self._resource.base_path, key=key)
        return self._submit(mutation, key)

    def _resolve(self, key: Any) -> Any:
        if isinstance(key, LocalKey):
            return self._aliases.get(key, key)
        return key

    def _submit(self, mutation: Mutation, key: Any) -> PendingMutation:
        if self._status == "closed":
            raise RowSyncClientError("Collection is closed")

        pending = PendingMutation(mutation, key, self.identity)
        self._pending.append(pending)
        self._emit(self._recompute([key]))

        previous = self._row_tails.get(key)
        task = asyncio.create_task(self._send(pending, previous))
        self._row_tails[key] = task
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._task_done(pending, t))
        return pending

    def _task_done(self, pending: PendingMutation, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        for key in (pending.key, pending.mutation.key):
            if self._row_tails.get(key) is task:
                del self._row_tails[key]

    async def _send(self, pending: PendingMutation, previous: asyncio.Task | None) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        if pending.done:
            return

        if isinstance(pending.key, LocalKey) and pending.kind is not MutationKind.INSERT:
            self._reject(pending, NotFoundError("Row was never created"))
            return

        pending.sent()
        try:
            if pending.kind is MutationKind.INSERT:
                result = await self._resource.create(pending.mutation.payload)
            elif pending.kind is MutationKind.UPDATE:
                result = await self._resource.update(pending.key, pending.mutation.payload)
            else:
                result = await self._resource.delete(pending.key)
        except RowSyncClientError as e:
            self._reject(pending, e)
            return

        if pending.done:
            return
        self._acknowledge(pending, result.txid, result.item)

    def _acknowledge(self, pending: PendingMutation, txid: str, item: dict[str, Any]) -> None:
        pending.acknowledged(txid, item)
        changed = []

        if pending.kind is MutationKind.INSERT:
            local_key = pending.key
            server_key = item.get(self.identity, local_key)
            self._aliases[local_key] = server_key
            for other in self._pending:
                if other.key == local_key:
                    other.key = server_key
            if local_key in self._row_tails:
                self._row_tails[server_key] = self._row_tails.pop(local_key)
            changed.append(local_key)

        changed.append(pending.key)
        if pending.key in self._seen_txids.get(txid, ()):
            self._confirm(pending)
        else:
            self._awaiting.setdefault(txid, []).append(pending)
            timer = asyncio.get_running_loop().call_later(
                self.txid_timeout, self._expire, pending
            )
            pending.set_timer(timer)

        self._emit(self._recompute(changed))

    def _confirm(self, pending: PendingMutation) -> None:
        if pending in self._pending:
            self._pending.remove(pending)
        pending.confirm()
        logger.debug(f"Confirmed {pending.kind.value} of {pending.key} (txid={pending.txid})")

    def _reject(self, pending: PendingMutation, error: BaseException) -> None:
        if pending in self._pending:
            self._pending.remove(pending)
        self._discard_awaiting(pending)
        pending.reject(error)
        logger.info(f"Rejected {pending.kind.value} of {pending.key}: {error}")
        self._emit(self._recompute([pending.key]))

    def _expire(self, pending: PendingMutation) -> None:
        if pending.done:
            return
        self._reject(pending, SyncTimeoutError(pending.txid or "", self.txid_timeout))

    def _discard_awaiting(self, pending: PendingMutation) -> None:
        if pending.txid is None:
            return
        waiting = self._awaiting.get(pending.txid)
        if waiting and pending in waiting:
            waiting.remove(pending)
            if not waiting:
                del self._awaiting[pending.txid]

    # ------------------------------------------------------------------
    # Feed
    # ------------------------------------------------------------------

    async def _sync_loop(self) -> None:
        delay = self.reconnect_delay
        while self._status != "closed":
            snapshot_mark = None
            if self._stream.offset == -1:
                # Writes acknowledged before the snapshot request are part of it
                snapshot_mark = set(self._awaiting)

            try:
                batch = await self._stream.fetch()
            except FATAL_FEED_ERRORS as e:
                self._fail(e)
                return
            except RowSyncClientError as e:
                logger.warning(
                    f"Subscription to {self._resource.base_path} failed, retrying in {delay}s: {e}"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_reconnect_delay)
                continue

            delay = self.reconnect_delay
            self._apply_batch(batch, snapshot_mark)

    def _fail(self, error: RowSyncClientError) -> None:
        logger.error(f"Subscription to {self._resource.base_path} stopped: {error}")
        self._status = "error"
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)

    def _row_key(self, value: Mapping[str, Any], fallback: str) -> Any:
        return value.get(self.identity, fallback)

    def _apply_batch(self, batch: ShapeBatch, snapshot_mark: set[str] | None = None) -> None:
        if batch.must_refetch:
            logger.info(f"Refetching {self._resource.base_path}")
            keys = list(self._synced)
            self._synced.clear()
            self._applied_offset = -1
            self._emit(self._recompute(keys))
            return

        changed: list[Any] = []
        confirmed: list[PendingMutation] = []

        if batch.snapshot:
            changed.extend(self._synced)
            self._synced.clear()

        for change in batch.changes:
            if not batch.snapshot and change.offset is not None:
                if change.offset <= self._applied_offset:
                    continue
                self._applied_offset = change.offset

            key = self._row_key(change.value, change.key)
            if change.operation == "delete":
                self._synced.pop(key, None)
            else:
                self._synced[key] = dict(change.value)
            changed.append(key)

            for txid in change.txids:
                self._remember_txid(txid, key)
                for pending in list(self._awaiting.get(txid, ())):
                    if pending.key == key:
                        confirmed.append(pending)

        if batch.snapshot:
            self._applied_offset = batch.offset
            for txid in snapshot_mark or ():
                confirmed.extend(self._awaiting.get(txid, ()))

        for pending in confirmed:
            self._discard_awaiting(pending)
            self._confirm(pending)
            changed.append(pending.key)

        self._emit(self._recompute(changed))

        if batch.up_to_date and self._ready is not None and not self._ready.done():
            self._status = "ready"
            self._ready.set_result(None)
            logger.debug(
                f"{self._resource.base_path} ready with {len(self._synced)} rows"
            )

    def _remember_txid(self, txid: str, key: Any) -> None:
        self._seen_txids.setdefault(txid, set()).add(key)
        self._seen_txids.move_to_end(txid)
        while len(self._seen_txids) > self._seen_txid_limit:
            self._seen_txids.popitem(last=False)

    # ------------------------------------------------------------------
    # View
    # ------------------------------------------------------------------

    def _recompute(self, keys: Iterable[Any]) -> list[RowChange]:
        """Rebuild the view for ``keys`` from synced rows plus overlays."""
        changes = []
        for key in dict.fromkeys(keys):
            value = self._synced.get(key)
            if value is not None:
                value = dict(value)
            for pending in self._pending:
                if pending.key == key and pending.state is not MutationState.REJECTED:
                    value = pending.overlay(value)

            previous = self._view.get(key)
            if value is None:
                if previous is not None:
                    del self._view[key]
                    changes.append(RowChange(key, "delete", None, previous))
            elif previous is None:
                self._view[key] = value
                changes.append(RowChange(key, "insert", value, None))
            elif value != previous:
                self._view[key] = value
                changes.append(RowChange(key, "update", value, previous))
        return changes

    def _emit(self, changes: list[RowChange]) -> None:
        if not changes:
            return
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception:
                logger.exception(f"Change listener for {self._resource.base_path} failed")
