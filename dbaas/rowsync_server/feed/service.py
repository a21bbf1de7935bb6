"""
HTTP surface of the change feed service.

Exposes ``GET /v1/shape`` over a ChangeFeedService. The resource API
never talks to this endpoint directly from clients; the ChangeFeedProxy
forwards authorized subscriptions to it with the row filter attached.

Query parameters:
    table   required table name
    offset  change-log offset, -1 (default) for a snapshot
    handle  subscription handle from the previous response
    live    "true" to long-poll when caught up
    cursor  cursor from the previous live response
    where   JSON-encoded row predicate

When created with a secret, every request must carry it in the
x-feed-secret header; the proxy adds it, clients never see it.

Responses:
    200  JSON array of messages plus x-feed-* headers
    400  malformed request
    401  missing or wrong feed secret
    409  stale handle, body is a must-refetch control message
"""

from __future__ import annotations

import hmac
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..errors import BadRequestError, RowSyncError, UnauthenticatedError
from ..predicate import PredicateError, predicate_from_json
from .base import SNAPSHOT_OFFSET, ChangeFeedService, FeedRequest

logger = logging.getLogger(__name__)

FEED_SECRET_HEADER = "x-feed-secret"


def parse_feed_request(params: dict[str, str]) -> FeedRequest:
    """Build a FeedRequest from query parameters.

    Raises:
        BadRequestError: If a parameter is missing or malformed
    """
    table = params.get("table")
    if not table:
        raise BadRequestError("Missing required parameter: table")

    raw_offset = params.get("offset", str(SNAPSHOT_OFFSET))
    try:
        offset = int(raw_offset)
    except ValueError:
        raise BadRequestError(f"Invalid offset: {raw_offset!r}") from None

    where = None
    if params.get("where"):
        try:
            where = predicate_from_json(params["where"])
        except PredicateError as e:
            raise BadRequestError(f"Invalid where: {e}") from e

    return FeedRequest(
        table=table,
        offset=offset,
        handle=params.get("handle") or None,
        live=params.get("live", "false").lower() == "true",
        cursor=params.get("cursor") or None,
        where=where,
    )


def check_secret(presented: str | None, secret: str) -> None:
    """Raise UnauthenticatedError unless ``presented`` equals ``secret``."""
    if presented is None or not hmac.compare_digest(presented.encode(), secret.encode()):
        raise UnauthenticatedError("Missing or invalid feed secret")


def create_feed_app(feed: ChangeFeedService, secret: str | None = None) -> FastAPI:
    """Create the change feed service app.

    Args:
        feed: Backend serving the requests
        secret: Value required in the x-feed-secret header (None accepts
            any caller, for a feed reachable only from the proxy)

    Example:
        >>> app = create_feed_app(StoreChangeFeed(store, tables))
        >>> uvicorn.run(app, port=3000)
    """
    app = FastAPI(title="RowSync Change Feed", version="1.0.0")
    app.state.feed = feed

    @app.get("/v1/shape")
    async def shape(request: Request) -> JSONResponse:
        try:
            if secret is not None:
                check_secret(request.headers.get(FEED_SECRET_HEADER), secret)
            feed_request = parse_feed_request(dict(request.query_params))
            response = await feed.fetch(feed_request)
        except RowSyncError as e:
            logger.info(f"Rejected feed request: {e.message}")
            return JSONResponse(status_code=e.status_code, content=e.to_dict())

        return JSONResponse(
            status_code=409 if response.must_refetch else 200,
            content=response.messages,
            headers=response.headers(),
        )

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "rowsync-feed"}

    return app
