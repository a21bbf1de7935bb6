"""
Optimistic mutation bookkeeping for SyncedCollection.

A PendingMutation tracks one local write from submission to resolution:

    CREATED --send--> SENT --feed event with txid--> CONFIRMED
                          \\--error / timeout-------> REJECTED

While unresolved, its overlay is applied on top of the row's last
authoritative value to produce what the collection shows.

Invariants:
    - CONFIRMED and REJECTED are terminal
    - A mutation makes at most one network call
    - Overlays for one row apply in submission order
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

_local_ids = itertools.count(1)


class LocalKey(str):
    """Temporary key of a row inserted locally but not yet created by the server."""

    @classmethod
    def new(cls) -> LocalKey:
        return cls(f"local:{next(_local_ids)}")


class MutationKind(Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class MutationState(Enum):
    CREATED = "created"
    SENT = "sent"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Mutation:
    """A client-originated write.

    Attributes:
        kind: insert, update or delete
        resource: Resource base path the write targets
        payload: Values to insert, or changes to apply
        key: Target row key (None for inserts)
    """

    kind: MutationKind
    resource: str
    payload: Dict[str, Any] = field(default_factory=dict)
    key: Any = None


class PendingMutation:
    """An unresolved optimistic write.

    Attributes:
        mutation: The write
        key: Row key the overlay applies to (re-keyed after a server insert)
        state: Lifecycle state
        submitted_at: Submission time (Unix seconds)
        txid: Transaction id returned by the server
        server_item: Row returned by the server
        error: Rejection cause
    """

    def __init__(self, mutation: Mutation, key: Any, identity: str = "id") -> None:
        self.mutation = mutation
        self.key = key
        self.identity = identity
        self.state = MutationState.CREATED
        self.submitted_at = time.time()
        self.txid: Optional[str] = None
        self.server_item: Optional[Dict[str, Any]] = None
        self.error: Optional[BaseException] = None
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        # Rejections are reported through wait(); don't warn when nobody awaits
        self._future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def kind(self) -> MutationKind:
        return self.mutation.kind

    @property
    def done(self) -> bool:
        return self.state in (MutationState.CONFIRMED, MutationState.REJECTED)

    async def wait(self) -> Optional[Dict[str, Any]]:
        """Wait until the mutation is confirmed on the change feed.

        Returns:
            The row as returned by the server (the removed row for deletes)

        Raises:
            RowSyncClientError: If the mutation was rejected
        """
        return await asyncio.shield(self._future)

    def overlay(self, base: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Apply this mutation on top of ``base``.

        Args:
            base: Row value so far (None if the row does not exist)

        Returns:
            The row value after this mutation (None if it does not exist)
        """
        if self.kind is MutationKind.INSERT:
            if base is not None:
                return base
            if self.server_item is not None:
                return dict(self.server_item)
            return {**self.mutation.payload, self.identity: self.key}

        if self.kind is MutationKind.UPDATE:
            if base is None:
                return None
            return {**base, **self.mutation.payload}

        return None

    def sent(self) -> None:
        self.state = MutationState.SENT

    def acknowledged(self, txid: str, item: Dict[str, Any]) -> None:
        """Record the server's response while waiting for the feed."""
        self.txid = txid
        self.server_item = item

    def confirm(self) -> None:
        self._cancel_timer()
        self.state = MutationState.CONFIRMED
        if not self._future.done():
            self._future.set_result(self.server_item)

    def reject(self, error: BaseException) -> None:
        self._cancel_timer()
        self.state = MutationState.REJECTED
        self.error = error
        if not self._future.done():
            self._future.set_exception(error)

    def set_timer(self, timer: asyncio.TimerHandle) -> None:
        self._cancel_timer()
        self._timer = timer

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def __repr__(self) -> str:
        return (
            f"PendingMutation({self.kind.value}, key={self.key!r}, "
            f"state={self.state.value}, txid={self.txid})"
        )
