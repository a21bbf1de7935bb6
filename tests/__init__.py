"""
RowSync Test Suite.

This package contains:
- unit/: Unit tests (temporary SQLite files, in-process ASGI apps)
- integration/: Full flow tests (SDK collection -> gateway -> store -> feed -> proxy)
"""
