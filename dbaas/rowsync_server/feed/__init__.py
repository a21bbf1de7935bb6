"""
Change feed service for RowSync.

The change feed streams committed row changes, each tagged with the txid
that committed it, so clients can match them to their own writes.

Invariants:
    - Changes are delivered in commit order per table
    - Row filters are applied to snapshots and changes alike
    - Stale handles force a refetch rather than silently skipping changes

How to change safely:
    - New backends must implement the ChangeFeedService protocol
    - Keep the wire format backward compatible with deployed SDKs
"""

from .base import (
    CURSOR_HEADER,
    HANDLE_HEADER,
    MUST_REFETCH,
    OFFSET_HEADER,
    SNAPSHOT_OFFSET,
    UP_TO_DATE,
    UP_TO_DATE_HEADER,
    ChangeFeedService,
    FeedRequest,
    FeedResponse,
)
from .service import create_feed_app, parse_feed_request
from .store_feed import StoreChangeFeed, filter_change

__all__ = [
    # Protocol and types
    "ChangeFeedService",
    "FeedRequest",
    "FeedResponse",
    # Wire constants
    "HANDLE_HEADER",
    "OFFSET_HEADER",
    "CURSOR_HEADER",
    "UP_TO_DATE_HEADER",
    "UP_TO_DATE",
    "MUST_REFETCH",
    "SNAPSHOT_OFFSET",
    # Implementations
    "StoreChangeFeed",
    "filter_change",
    "create_feed_app",
    "parse_feed_request",
]
