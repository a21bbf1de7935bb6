"""
FastAPI application factory for the RowSync server.

This module creates the main FastAPI app with:
- One router per registered resource (subscribe/create/update/delete)
- The change feed service mounted under /feed (when embedded), which
  only answers requests carrying the proxy's feed secret
- CORS configuration for browser clients
- Error rendering for RowSyncError
- Store and HTTP client lifecycle management
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..auth import HeaderSessionResolver, SessionResolver, StaticTokenSessionResolver
from ..catalog import build_registry
from ..config import Settings
from ..errors import RowSyncError
from ..feed.service import create_feed_app
from ..feed.store_feed import StoreChangeFeed
from ..resource.registry import ResourceRegistry
from ..store.base import Store
from ..store.sqlite_store import SqliteStore
from .gateway import MutationGateway
from .proxy import ChangeFeedProxy
from .routes import create_resource_router

logger = logging.getLogger(__name__)


def default_resolver(settings: Settings) -> SessionResolver:
    """Static bearer tokens when configured, trusted identity headers otherwise."""
    if settings.session_tokens:
        return StaticTokenSessionResolver.from_user_map(settings.session_tokens)
    logger.warning("No session tokens configured; trusting X-User-ID headers")
    return HeaderSessionResolver()


def create_app(
    settings: Settings | None = None,
    registry: ResourceRegistry | None = None,
    store: Store | None = None,
    resolver: SessionResolver | None = None,
    feed_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Server settings (loaded from environment if not provided)
        registry: Resources to serve (the built-in catalog if not provided)
        store: Authoritative store (SQLite at settings.database_path if not provided)
        resolver: Session resolver (derived from settings if not provided)
        feed_client: HTTP client for upstream feed requests (owned by the app
            if not provided)

    Returns:
        The configured app. Its lifespan initializes the store.
    """
    settings = settings or Settings()
    registry = registry or build_registry()
    registry.freeze()
    store = store or SqliteStore(settings.database_path)
    resolver = resolver or default_resolver(settings)

    for descriptor in registry:
        store.register_table(descriptor.table_spec)

    feed_secret = settings.feed_secret or None
    if settings.embed_feed and feed_secret is None:
        feed_secret = secrets.token_urlsafe(32)

    owns_client = feed_client is None
    http = feed_client or httpx.AsyncClient(timeout=settings.feed_timeout)
    proxy = ChangeFeedProxy(
        http, settings.feed_url, timeout=settings.feed_timeout, secret=feed_secret
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage store and HTTP client lifecycle."""
        await store.initialize()
        yield
        if owns_client:
            await http.aclose()
        await store.close()

    app = FastAPI(
        title="RowSync",
        description="Authorized mutations and filtered change feeds for synced resources.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["x-feed-handle", "x-feed-offset", "x-feed-cursor", "x-feed-up-to-date"],
    )

    @app.exception_handler(RowSyncError)
    async def handle_rowsync_error(request: Request, exc: RowSyncError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"kind": "INTERNAL", "message": "Internal server error"},
        )

    for descriptor in registry:
        gateway = MutationGateway(descriptor, store)
        router = create_resource_router(descriptor, gateway, proxy, resolver)
        app.include_router(router, prefix=settings.api_prefix)

    if settings.embed_feed:
        tables = {descriptor.table: descriptor.table_spec for descriptor in registry}
        feed = StoreChangeFeed(
            store,
            tables,
            page_size=settings.feed_page_size,
            live_timeout=settings.live_poll_timeout,
        )
        app.mount("/feed", create_feed_app(feed, secret=feed_secret))

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "service": "rowsync",
            "resources": [descriptor.name for descriptor in registry],
        }

    return app
