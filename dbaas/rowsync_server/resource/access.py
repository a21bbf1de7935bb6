"""
Access decisions and access policies for resource writes.

Each resource carries an AccessPolicy with one predicate per write
operation. A predicate receives the caller's Session and an AccessTarget
and returns an AccessDecision:
- Allow: the write proceeds unchanged
- AllowWithFilter(predicate): the write proceeds, narrowed to rows
  matching the predicate (ANDed with the identity match)
- Deny(reason): the write is rejected before touching the store

Invariants:
    - Predicates are pure: they may read the session and the target, never write
    - A predicate must return one of the three decision types
    - Deny reasons are surfaced verbatim to the caller

How to change safely:
    - New decision variants must be handled by MutationGateway._authorize
    - Prefer composing the helpers below over ad hoc lambdas
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from ..auth import Session
from ..predicate import Eq, Predicate

logger = logging.getLogger(__name__)


class Operation(Enum):
    """Write operations gated by an access policy."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Allow:
    """Allow the operation unchanged."""

    pass


@dataclass(frozen=True)
class AllowWithFilter:
    """Allow the operation on rows matching ``predicate`` only."""

    predicate: Predicate


@dataclass(frozen=True)
class Deny:
    """Deny the operation."""

    reason: str = "Access denied"


AccessDecision = Union[Allow, AllowWithFilter, Deny]

ALLOW = Allow()


@dataclass(frozen=True)
class AccessTarget:
    """What an access predicate is asked about.

    Attributes:
        operation: The write being attempted
        row_id: Identity of the target row (update/delete)
        payload: Proposed data (create/update), already shape-validated
    """

    operation: Operation
    row_id: Any = None
    payload: Mapping[str, Any] = field(default_factory=dict)


AccessPredicate = Callable[[Session, AccessTarget], AccessDecision]


def allow_all(session: Session, target: AccessTarget) -> AccessDecision:
    """Any authenticated session may perform the operation."""
    return ALLOW


def deny_all(session: Session, target: AccessTarget) -> AccessDecision:
    return Deny(f"{target.operation.value} is not permitted on this resource")


def owned_by(column: str) -> AccessPredicate:
    """Restrict an operation to rows whose ``column`` equals the session user.

    For creates the proposed payload is checked directly; for updates and
    deletes the write is narrowed with an ownership filter.

    Example:
        >>> policy = AccessPolicy(update=owned_by("user_id"), delete=owned_by("user_id"))
    """

    def check(session: Session, target: AccessTarget) -> AccessDecision:
        if target.operation is Operation.CREATE:
            owner = target.payload.get(column)
            if owner is not None and owner != session.user_id:
                return Deny(f"Can only create items owned by yourself ({column})")
            return ALLOW

        if column in target.payload and target.payload[column] != session.user_id:
            return Deny(f"Cannot transfer ownership ({column})")
        return AllowWithFilter(Eq(column, session.user_id))

    return check


def require_role(role: str, then: AccessPredicate = allow_all) -> AccessPredicate:
    """Deny unless the session has ``role``; otherwise defer to ``then``."""

    def check(session: Session, target: AccessTarget) -> AccessDecision:
        if not session.has_role(role):
            return Deny(f"Only {role} users may {target.operation.value} items")
        return then(session, target)

    return check


@dataclass(frozen=True)
class AccessPolicy:
    """Access predicates for create, update and delete.

    Unspecified operations default to allowing any authenticated session.
    """

    create: AccessPredicate = allow_all
    update: AccessPredicate = allow_all
    delete: AccessPredicate = allow_all

    def predicate_for(self, operation: Operation) -> AccessPredicate:
        if operation is Operation.CREATE:
            return self.create
        if operation is Operation.UPDATE:
            return self.update
        return self.delete

    def evaluate(self, session: Session, target: AccessTarget) -> AccessDecision:
        """Run the predicate for ``target.operation``.

        Raises:
            TypeError: If the predicate returned something other than a decision
        """
        decision = self.predicate_for(target.operation)(session, target)
        if not isinstance(decision, (Allow, AllowWithFilter, Deny)):
            raise TypeError(
                f"Access predicate for {target.operation.value} returned "
                f"{type(decision).__name__}, expected Allow, AllowWithFilter or Deny"
            )
        return decision
