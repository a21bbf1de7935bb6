"""
RowSync Python SDK - live, optimistically-writable collections.

This SDK keeps a local copy of a RowSync resource in sync:
- RowSyncClient / ResourceClient for authorized writes
- ShapeStream for the filtered change feed
- SyncedCollection combining both with optimistic updates

Example:
    >>> from sdk.rowsync_sdk import RowSyncClient, SyncedCollection
    >>>
    >>> async with RowSyncClient("http://localhost:8000", token="t0k3n") as client:
    ...     async with SyncedCollection(client.resource("/api/todos")) as todos:
    ...         pending = todos.insert({"text": "buy milk"})
    ...         item = await pending.wait()

Invariants:
    - Local writes are visible immediately and rolled back on rejection
    - Each confirmed write is applied exactly once
    - Writes to one row are sent in submission order

Version: 0.3.0
"""

__version__ = "0.3.0"

from .client import MutationResult, ResourceClient, RowSyncClient
from .collection import RowChange, SyncedCollection
from .errors import (
    AccessDeniedError,
    NetworkError,
    NotFoundError,
    RowSyncClientError,
    SyncTimeoutError,
    UnauthenticatedError,
    ValidationError,
)
from .mutations import LocalKey, Mutation, MutationKind, MutationState, PendingMutation
from .shape import ChangeMessage, ShapeBatch, ShapeStream

__all__ = [
    # Client
    "RowSyncClient",
    "ResourceClient",
    "MutationResult",
    # Feed
    "ShapeStream",
    "ShapeBatch",
    "ChangeMessage",
    # Collection
    "SyncedCollection",
    "RowChange",
    "LocalKey",
    "Mutation",
    "MutationKind",
    "MutationState",
    "PendingMutation",
    # Errors
    "RowSyncClientError",
    "UnauthenticatedError",
    "AccessDeniedError",
    "NotFoundError",
    "ValidationError",
    "NetworkError",
    "SyncTimeoutError",
]
