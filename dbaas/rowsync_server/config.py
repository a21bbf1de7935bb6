"""
Configuration for the RowSync server.

Uses pydantic-settings for environment variable loading. Every setting
can be overridden with a ``ROWSYNC_`` prefixed variable, e.g.
``ROWSYNC_DATABASE_PATH=/var/lib/rowsync/rows.db``.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets (session tokens, feed secret) are never logged

How to change safely:
    - Add new settings with defaults that keep existing deployments working
"""

from __future__ import annotations

import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Server configuration loaded from environment."""

    # Store
    database_path: str = Field(default="./data/rowsync.db", description="SQLite database file")

    # Upstream change feed
    feed_url: str = Field(
        default="http://127.0.0.1:8000/feed/v1/shape",
        description="Change feed service shape endpoint",
    )
    feed_timeout: float = Field(default=60.0, description="Upstream feed request timeout seconds")
    embed_feed: bool = Field(
        default=True, description="Serve the change feed service from this process under /feed"
    )
    feed_secret: str = Field(
        default="",
        description="Shared secret the proxy sends to the feed service; generated per process when empty",
    )
    live_poll_timeout: float = Field(default=20.0, description="Live request long-poll seconds")
    feed_page_size: int = Field(default=1000, description="Max change records per feed response")

    # HTTP
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8000, description="Bind port")
    api_prefix: str = Field(default="", description="Prefix for all resource routes")
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    # Sessions
    session_tokens: dict[str, str] = Field(
        default_factory=dict,
        description="Static bearer token -> user id map; empty trusts X-User-ID headers",
    )

    # Observability
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="text", description="Log format: text or json")

    model_config = SettingsConfigDict(env_prefix="ROWSYNC_")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info("RowSync configuration:")
        logger.info(f"  Database: {self.database_path}")
        logger.info(f"  Feed URL: {self.feed_url} (embedded={self.embed_feed})")
        logger.info(f"  Live poll timeout: {self.live_poll_timeout}s")
        logger.info(f"  Bind: {self.host}:{self.port}{self.api_prefix}")
        logger.info(f"  Session tokens: {len(self.session_tokens)} configured")
        logger.info(f"  Log level: {self.log_level} ({self.log_format})")
