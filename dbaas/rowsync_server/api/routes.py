"""
HTTP routes for one resource.

    GET    {base_path}         subscribe (proxied change feed)
    POST   {base_path}         create   -> {"txid", "item"}
    PUT    {base_path}/{id}    update   -> {"txid", "item"}
    DELETE {base_path}/{id}    delete   -> {"txid", "item"}

The session is resolved before anything else, so an unauthenticated
request gets 401 even when its body or id is malformed.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request

from ..auth import Session, SessionResolver
from ..errors import UnauthenticatedError, ValidationError
from ..resource.descriptor import ResourceDescriptor
from .gateway import MutationGateway
from .proxy import ChangeFeedProxy

logger = logging.getLogger(__name__)


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Request body must be valid JSON") from e


def create_resource_router(
    descriptor: ResourceDescriptor,
    gateway: MutationGateway,
    proxy: ChangeFeedProxy,
    resolver: SessionResolver,
) -> APIRouter:
    """Build the router serving one resource.

    Args:
        descriptor: Resource to serve
        gateway: Gateway performing its writes
        proxy: Proxy forwarding its subscriptions
        resolver: Resolves request headers to sessions
    """
    router = APIRouter(tags=[descriptor.name])

    async def require_session(request: Request) -> Session:
        session = await resolver.resolve(request.headers)
        if session is None:
            raise UnauthenticatedError()
        return session

    @router.get(descriptor.base_path)
    async def subscribe(request: Request, session: Session = Depends(require_session)):
        return await proxy.forward(descriptor, session, request.query_params)

    @router.post(descriptor.base_path)
    async def create_item(
        request: Request, session: Session = Depends(require_session)
    ) -> dict[str, Any]:
        payload = await _json_body(request)
        result = await gateway.create(session, payload)
        return result.to_dict()

    @router.put(descriptor.base_path + "/{item_id}")
    async def update_item(
        item_id: str, request: Request, session: Session = Depends(require_session)
    ) -> dict[str, Any]:
        row_id = descriptor.parse_id(item_id)
        payload = await _json_body(request)
        result = await gateway.update(session, row_id, payload)
        return result.to_dict()

    @router.delete(descriptor.base_path + "/{item_id}")
    async def delete_item(
        item_id: str, session: Session = Depends(require_session)
    ) -> dict[str, Any]:
        row_id = descriptor.parse_id(item_id)
        result = await gateway.delete(session, row_id)
        return result.to_dict()

    return router
