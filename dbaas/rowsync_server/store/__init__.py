"""
Authoritative row store for RowSync.

The store owns every resource row plus the change log that the change
feed service reads. Writes happen only through MutationGateway, inside
one store transaction per request.

Invariants:
    - A write and its change records commit atomically
    - txids are issued by the store, one per transaction
    - Row identities are never reused within a table

How to change safely:
    - New backends must implement the Store protocol
    - Keep the change record layout stable
"""

from .base import (
    ChangeOperation,
    ChangeRecord,
    IdentityStrategy,
    Store,
    StoreTransaction,
    TableSpec,
)
from .sqlite_store import SqliteStore, SqliteTransaction

__all__ = [
    # Protocol and types
    "Store",
    "StoreTransaction",
    "TableSpec",
    "ChangeRecord",
    "ChangeOperation",
    "IdentityStrategy",
    # Implementations
    "SqliteStore",
    "SqliteTransaction",
]
