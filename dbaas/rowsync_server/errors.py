"""
Error types for the RowSync server.

Every failure a client can observe is a RowSyncError carrying a
machine-readable kind and an HTTP status code:
- UnauthenticatedError: no resolvable session (401)
- AccessDeniedError: an access predicate denied the write (403)
- NotFoundError: the write matched no row (404)
- ValidationError: payload or identity failed validation (422)
- BadRequestError: malformed feed request (400)
- UpstreamError: the change feed service is unreachable (502)

Invariants:
    - Unauthenticated, AccessDenied and Validation are raised before any store write
    - NotFound is raised from inside a write transaction, which then rolls back
    - Errors are never retried by the server
"""

from __future__ import annotations

from typing import Any


class RowSyncError(Exception):
    """Base exception for errors surfaced to API callers.

    Attributes:
        message: Human-readable error message
        kind: Error kind for programmatic handling
        status_code: HTTP status code used by the API layer
        details: Additional error context
    """

    kind = "INTERNAL"
    status_code = 500

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON error body."""
        body: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class UnauthenticatedError(RowSyncError):
    """The request carried no resolvable session."""

    kind = "UNAUTHENTICATED"
    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class AccessDeniedError(RowSyncError):
    """An access predicate denied the operation."""

    kind = "ACCESS_DENIED"
    status_code = 403

    def __init__(
        self,
        message: str = "Access denied",
        resource: str | None = None,
        row_id: Any = None,
    ) -> None:
        super().__init__(message, details={"resource": resource, "id": row_id})
        self.resource = resource
        self.row_id = row_id


class NotFoundError(RowSyncError):
    """The write matched zero rows."""

    kind = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, row_id: Any) -> None:
        super().__init__("Item not found", details={"resource": resource, "id": row_id})
        self.resource = resource
        self.row_id = row_id


class ValidationError(RowSyncError):
    """Payload failed the resource's shape check or a write-time invariant."""

    kind = "VALIDATION"
    status_code = 422

    def __init__(
        self,
        message: str,
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message, details={"errors": errors or []})
        self.errors = errors or []


class BadRequestError(RowSyncError):
    """A feed request was malformed."""

    kind = "BAD_REQUEST"
    status_code = 400


class UpstreamError(RowSyncError):
    """The upstream change feed service failed or was unreachable."""

    kind = "UPSTREAM_UNAVAILABLE"
    status_code = 502


class RegistrationError(Exception):
    """A resource descriptor is invalid or conflicts with a registered one."""

    pass


class StoreError(Exception):
    """The store backend failed."""

    pass
