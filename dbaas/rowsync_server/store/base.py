"""
Base protocol and types for the transactional row store.

The Store is the single authoritative backend. It must provide:
- Atomic write transactions that allocate a transaction id (txid)
- A change log (outbox) appended inside the same transaction as the write
- Consistent snapshots paired with the change-log position they reflect

Invariants:
    - A txid is allocated per transaction and is visible only if it commits
    - txids and change-log sequence numbers increase monotonically
    - Every row change committed under a txid has exactly one change record
    - Row identities are never reused within a table

How to change safely:
    - New backends must implement Store and StoreTransaction
    - Keep the change record layout stable; the feed service depends on it
"""

from __future__ import annotations

from abc import abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from ..predicate import Predicate, check_identifier


class IdentityStrategy(Enum):
    """How the store assigns row identities."""

    AUTOINCREMENT = "autoincrement"
    UUID = "uuid"


class ChangeOperation(Enum):
    """Kinds of committed row changes."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class TableSpec:
    """Physical layout of one resource table.

    Attributes:
        table: Table name
        identity: Identity column name
        strategy: How identities are assigned
    """

    table: str
    identity: str = "id"
    strategy: IdentityStrategy = IdentityStrategy.AUTOINCREMENT

    def __post_init__(self) -> None:
        check_identifier(self.table)
        check_identifier(self.identity)
        if self.table.startswith("_"):
            raise ValueError(f"Table names starting with '_' are reserved: {self.table}")

    def row_key(self, row_id: Any) -> str:
        """Canonical string form of an identity, used as the feed key."""
        return str(row_id)


@dataclass(frozen=True)
class ChangeRecord:
    """One committed row change from the change log.

    Attributes:
        seq: Change-log sequence number (feed offset)
        table: Table the row belongs to
        row_key: String form of the row identity
        operation: insert, update or delete
        row: Row after the change (the removed row for deletes)
        old_row: Row before the change (None for inserts)
        txid: Transaction that committed the change
        committed_at: Commit timestamp (Unix ms)
    """

    seq: int
    table: str
    row_key: str
    operation: ChangeOperation
    row: dict[str, Any]
    old_row: dict[str, Any] | None
    txid: str
    committed_at: int


class StoreTransaction(Protocol):
    """Operations available inside one write transaction."""

    @property
    def txid(self) -> str:
        """Transaction id of this transaction."""
        ...

    @abstractmethod
    async def insert(self, spec: TableSpec, values: dict[str, Any]) -> dict[str, Any]:
        """Insert a row and return it with its assigned identity."""
        ...

    @abstractmethod
    async def update(
        self,
        spec: TableSpec,
        row_id: Any,
        patch: dict[str, Any],
        where: Predicate | None = None,
    ) -> dict[str, Any] | None:
        """Apply ``patch`` to the row with ``row_id`` if it also matches ``where``.

        Returns:
            The updated row, or None if nothing matched
        """
        ...

    @abstractmethod
    async def delete(
        self,
        spec: TableSpec,
        row_id: Any,
        where: Predicate | None = None,
    ) -> dict[str, Any] | None:
        """Delete the row with ``row_id`` if it also matches ``where``.

        Returns:
            The deleted row, or None if nothing matched
        """
        ...

    @abstractmethod
    async def get(self, spec: TableSpec, row_id: Any) -> dict[str, Any] | None:
        """Read one row by identity, ignoring filters."""
        ...

    @abstractmethod
    async def exists(self, spec: TableSpec, where: Predicate) -> bool:
        """Whether any row matches ``where``."""
        ...


@runtime_checkable
class Store(Protocol):
    """Protocol for the authoritative transactional store."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create internal tables and every registered resource table."""
        ...

    @abstractmethod
    def register_table(self, spec: TableSpec) -> None:
        """Declare a resource table to be created by initialize()."""
        ...

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[StoreTransaction]:
        """Open a write transaction.

        Commits when the block exits normally, rolls back on exception.
        """
        ...

    @abstractmethod
    async def snapshot(
        self,
        spec: TableSpec,
        where: Predicate | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """Read all rows matching ``where`` and the change-log position they reflect."""
        ...

    @abstractmethod
    async def changes_since(
        self,
        table: str,
        after_seq: int,
        limit: int = 1000,
    ) -> list[ChangeRecord]:
        """Read change records for ``table`` with seq > ``after_seq``, in order."""
        ...

    @property
    @abstractmethod
    def generation(self) -> str:
        """Identifier of this store's data lifetime (changes if the store is recreated)."""
        ...

    @property
    @abstractmethod
    def commit_token(self) -> int:
        """Counter that changes on every commit; pair with wait_for_commit()."""
        ...

    @abstractmethod
    async def wait_for_commit(self, token: int, timeout: float) -> bool:
        """Wait until a commit happens after ``token`` was read.

        Returns:
            True if a commit happened, False on timeout
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

