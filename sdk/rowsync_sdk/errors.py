"""
Error types for the RowSync SDK.

This module defines all exception types raised by the SDK:
- RowSyncClientError: Base exception
- UnauthenticatedError: The server rejected the session (401)
- AccessDeniedError: An access predicate denied the write (403)
- NotFoundError: The write matched no row (404)
- ValidationError: The payload failed validation (422)
- NetworkError: Transport failure or unexpected response
- SyncTimeoutError: A confirmed write never appeared on the feed

Invariants:
    - All errors inherit from RowSyncClientError
    - Server errors keep the server's kind as ``code``
    - Error messages are actionable
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class RowSyncClientError(Exception):
    """Base exception for all RowSync SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ROWSYNC_ERROR"
        self.details = details or {}


class UnauthenticatedError(RowSyncClientError):
    """The server could not resolve a session for the request."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message, code="UNAUTHENTICATED")


class AccessDeniedError(RowSyncClientError):
    """An access predicate denied the write.

    The message carries the server's deny reason.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="ACCESS_DENIED", details=details)


class NotFoundError(RowSyncClientError):
    """The write matched no row.

    Also raised locally for mutations queued behind an insert that the
    server rejected, since their row never existed.
    """

    def __init__(self, message: str = "Item not found", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="NOT_FOUND", details=details)


class ValidationError(RowSyncClientError):
    """The payload failed the resource's validation.

    Attributes:
        errors: Field-level errors reported by the server
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        super().__init__(message, code="VALIDATION", details={"errors": errors or []})
        self.errors = errors or []


class NetworkError(RowSyncClientError):
    """The request failed in transport or returned an unexpected response.

    Raised when:
    - The server is unreachable or the connection drops
    - The request times out
    - The server returns a status the SDK does not understand
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, code="NETWORK_ERROR", details={"status_code": status_code})
        self.status_code = status_code


class SyncTimeoutError(RowSyncClientError):
    """A write was committed but its txid was not seen on the feed in time.

    The write itself succeeded; only local confirmation is missing.
    """

    def __init__(self, txid: str, timeout: float) -> None:
        super().__init__(
            f"Transaction {txid} not observed on the change feed within {timeout}s",
            code="SYNC_TIMEOUT",
            details={"txid": txid, "timeout": timeout},
        )
        self.txid = txid
        self.timeout = timeout


_KIND_TO_ERROR = {
    "UNAUTHENTICATED": UnauthenticatedError,
    "ACCESS_DENIED": AccessDeniedError,
    "NOT_FOUND": NotFoundError,
    "VALIDATION": ValidationError,
}


def error_from_response(status_code: int, body: Any) -> RowSyncClientError:
    """Build the SDK error for a server error response.

    Args:
        status_code: HTTP status code
        body: Decoded JSON body (``{"kind", "message", "details"}``), or None

    Returns:
        The matching error; NetworkError for unknown kinds
    """
    if not isinstance(body, dict):
        body = {}
    kind = body.get("kind")
    message = body.get("message") or f"HTTP {status_code}"
    details = body.get("details") or {}

    error_cls = _KIND_TO_ERROR.get(kind)
    if error_cls is UnauthenticatedError or (error_cls is None and status_code == 401):
        return UnauthenticatedError(message)
    if error_cls is AccessDeniedError:
        return AccessDeniedError(message, details)
    if error_cls is NotFoundError:
        return NotFoundError(message, details)
    if error_cls is ValidationError:
        return ValidationError(message, details.get("errors"))
    return NetworkError(f"Unexpected response ({status_code}): {message}", status_code)
