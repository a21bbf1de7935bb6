"""
Session values and session resolvers.

Authentication itself is an external capability: the server only asks a
SessionResolver to turn request headers into a Session (or None). Two
resolvers are provided for development and for deployments behind an
authenticating proxy:
- HeaderSessionResolver: trusts X-User-ID / X-Session-ID / X-User-Roles
- StaticTokenSessionResolver: maps bearer tokens to fixed sessions

Invariants:
    - A Session is read-only for the duration of one request
    - Sessions are never persisted by the server
    - Tokens are never logged
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """An authenticated caller.

    Attributes:
        user_id: Authenticated user identifier
        session_id: Identifier of the login session, if known
        roles: Roles granted to the user
        attributes: Any additional identity attributes (org_id, email, ...)
    """

    user_id: str
    session_id: str | None = None
    roles: frozenset[str] = frozenset()
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def get(self, key: str, default: Any = None) -> Any:
        """Look up an identity attribute."""
        return self.attributes.get(key, default)


@runtime_checkable
class SessionResolver(Protocol):
    """Resolves request headers to a session."""

    async def resolve(self, headers: Mapping[str, str]) -> Session | None:
        """Return the caller's session, or None if unauthenticated."""
        ...


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


class HeaderSessionResolver:
    """Resolves sessions from identity headers set by a trusted auth proxy.

    Only use this behind a proxy that strips these headers from client
    requests and sets them after authenticating the caller.
    """

    def __init__(
        self,
        user_header: str = "X-User-ID",
        session_header: str = "X-Session-ID",
        roles_header: str = "X-User-Roles",
    ) -> None:
        self.user_header = user_header.lower()
        self.session_header = session_header.lower()
        self.roles_header = roles_header.lower()

    async def resolve(self, headers: Mapping[str, str]) -> Session | None:
        values = _lower_headers(headers)
        user_id = values.get(self.user_header, "").strip()
        if not user_id:
            return None

        roles = values.get(self.roles_header, "")
        return Session(
            user_id=user_id,
            session_id=values.get(self.session_header) or None,
            roles=frozenset(r.strip() for r in roles.split(",") if r.strip()),
        )


class StaticTokenSessionResolver:
    """Resolves ``Authorization: Bearer <token>`` against a fixed token map.

    Example:
        >>> resolver = StaticTokenSessionResolver({"t0k3n": Session(user_id="u1")})
        >>> await resolver.resolve({"Authorization": "Bearer t0k3n"})
        Session(user_id='u1', ...)
    """

    def __init__(self, sessions: Mapping[str, Session]) -> None:
        self._sessions = dict(sessions)

    @classmethod
    def from_user_map(cls, tokens: Mapping[str, str]) -> StaticTokenSessionResolver:
        """Build from a token -> user_id map (as loaded from settings)."""
        return cls(
            {
                token: Session(user_id=user_id, session_id=f"static:{user_id}")
                for token, user_id in tokens.items()
            }
        )

    async def resolve(self, headers: Mapping[str, str]) -> Session | None:
        authorization = _lower_headers(headers).get("authorization", "")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None

        session = self._sessions.get(token.strip())
        if session is None:
            logger.info("Rejected unknown bearer token")
        return session
