"""
HTTP API for RowSync.

- MutationGateway: authorized, transactional writes returning txids
- ChangeFeedProxy: session-filtered subscriptions to the change feed
- create_app: FastAPI app serving every registered resource
"""

from .app import create_app
from .gateway import MutationGateway, MutationResult
from .proxy import ALLOWED_PARAMS, ChangeFeedProxy
from .routes import create_resource_router

__all__ = [
    "create_app",
    "create_resource_router",
    "MutationGateway",
    "MutationResult",
    "ChangeFeedProxy",
    "ALLOWED_PARAMS",
]
