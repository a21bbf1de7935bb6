"""
Change feed proxy: authorized subscriptions for one resource.

Clients never reach the change feed service directly. The proxy turns a
resource subscription into an upstream feed request:

    1. Keep only the allow-listed query parameters
       (live, table, handle, offset, cursor)
    2. Pin ``table`` to the resource's own table
    3. Attach ``where`` computed from the caller's session
    4. Authenticate to the feed service with the shared feed secret
    5. Stream the upstream response back, dropping framing headers

Invariants:
    - A client-supplied ``where`` is never forwarded
    - The session row filter is always attached when the resource has one
    - The upstream service is contacted only for authenticated sessions

How to change safely:
    - Adding a parameter to ALLOWED_PARAMS lets clients control it;
      never allow one that widens the visible rows
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

import httpx
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from ..auth import Session
from ..errors import UpstreamError
from ..feed.service import FEED_SECRET_HEADER
from ..resource.descriptor import ResourceDescriptor

logger = logging.getLogger(__name__)

ALLOWED_PARAMS = ("live", "table", "handle", "offset", "cursor")

# Framing headers describe the upstream body, not the re-streamed one
DROPPED_HEADERS = frozenset(
    {"content-length", "content-encoding", "transfer-encoding", "connection"}
)


class ChangeFeedProxy:
    """Forwards resource subscriptions to the change feed service.

    Args:
        http: Shared HTTP client
        feed_url: Upstream shape endpoint (e.g. http://feed:3000/v1/shape)
        timeout: Upstream request timeout in seconds (None for the client default)
        secret: Feed secret sent with every upstream request (None to send none)
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        feed_url: str,
        timeout: float | None = None,
        secret: str | None = None,
    ) -> None:
        self._http = http
        self.feed_url = feed_url
        self.timeout = timeout
        self._secret = secret

    def build_params(
        self,
        descriptor: ResourceDescriptor,
        session: Session,
        query: Mapping[str, str],
    ) -> dict[str, str]:
        """Compute the upstream query parameters for a subscription."""
        params = {name: query[name] for name in ALLOWED_PARAMS if name in query}
        params["table"] = descriptor.table

        row_filter = descriptor.filter_for(session)
        if row_filter is not None:
            params["where"] = row_filter.to_json()
        return params

    async def forward(
        self,
        descriptor: ResourceDescriptor,
        session: Session,
        query: Mapping[str, str],
    ) -> StreamingResponse:
        """Open the upstream subscription and stream it back.

        Raises:
            UpstreamError: If the change feed service is unreachable
        """
        params = self.build_params(descriptor, session, query)
        request = self._http.build_request(
            "GET",
            self.feed_url,
            params=params,
            headers={FEED_SECRET_HEADER: self._secret} if self._secret is not None else None,
            timeout=self.timeout if self.timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )

        try:
            upstream = await self._http.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.warning(f"Change feed unreachable for {descriptor.name}: {e!r}")
            raise UpstreamError("Change feed service unavailable") from e

        headers = {
            name: value
            for name, value in upstream.headers.items()
            if name.lower() not in DROPPED_HEADERS
        }
        logger.debug(
            f"Proxied {descriptor.name} subscription for {session.user_id} "
            f"(status={upstream.status_code}, live={params.get('live', 'false')})"
        )
        return StreamingResponse(
            upstream.aiter_bytes(),
            status_code=upstream.status_code,
            headers=headers,
            background=BackgroundTask(upstream.aclose),
        )
