"""
Mutation gateway: authorized, transactional writes for one resource.

Each create/update/delete runs the same pipeline:

    session -> shape validation -> access predicate -> store transaction

and returns the txid of the committed transaction together with the
item as stored. Clients match that txid against the change feed to
confirm their optimistic writes.

Invariants:
    - Unauthenticated, invalid and denied writes never open a transaction
    - One request, one store transaction; the txid is read inside it
    - AllowWithFilter narrows the write (identity AND filter)
    - A write matching no row rolls back and reports NotFound, or
      AccessDenied if the row exists but the filter excluded it
    - Parent references never form a cycle

How to change safely:
    - Keep all checks that read rows inside the write transaction
    - Never retry a failed write here; retries are a client concern
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..auth import Session
from ..errors import AccessDeniedError, NotFoundError, UnauthenticatedError, ValidationError
from ..predicate import Eq, Predicate, PredicateError, check_columns
from ..resource.access import AccessTarget, AllowWithFilter, Deny, Operation
from ..resource.descriptor import ResourceDescriptor
from ..store.base import Store, StoreTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MutationResult:
    """Outcome of a committed write.

    Attributes:
        txid: Transaction id of the commit
        item: The row as stored (the removed row for deletes)
    """

    txid: str
    item: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"txid": self.txid, "item": self.item}


class MutationGateway:
    """Performs authorized writes against one resource.

    Example:
        >>> gateway = MutationGateway(todos, store)
        >>> result = await gateway.create(session, {"text": "buy milk"})
        >>> result.txid, result.item["id"]
        ('123', 7)
    """

    def __init__(self, descriptor: ResourceDescriptor, store: Store) -> None:
        self.descriptor = descriptor
        self._store = store
        self._spec = descriptor.table_spec

    def _require_session(self, session: Session | None) -> Session:
        if session is None:
            raise UnauthenticatedError()
        return session

    def _authorize(self, session: Session, target: AccessTarget) -> Predicate | None:
        """Evaluate the access policy.

        Returns:
            The filter to narrow the write with, or None

        Raises:
            AccessDeniedError: If the predicate denied the operation
        """
        decision = self.descriptor.access.evaluate(session, target)

        if isinstance(decision, Deny):
            logger.info(
                f"Denied {target.operation.value} on {self.descriptor.name} "
                f"(id={target.row_id}, user={session.user_id}): {decision.reason}"
            )
            raise AccessDeniedError(decision.reason, self.descriptor.name, target.row_id)

        if isinstance(decision, AllowWithFilter):
            try:
                check_columns(decision.predicate, self.descriptor.columns)
            except PredicateError as e:
                raise ValueError(
                    f"Access filter for {self.descriptor.name} is invalid: {e}"
                ) from e
            return decision.predicate
        return None

    async def _raise_missing(self, tx: StoreTransaction, row_id: Any) -> None:
        if await tx.get(self._spec, row_id) is not None:
            raise AccessDeniedError("Access denied", self.descriptor.name, row_id)
        raise NotFoundError(self.descriptor.name, row_id)

    async def _check_parent(
        self,
        tx: StoreTransaction,
        session: Session,
        parent_id: Any,
        row_id: Any = None,
    ) -> None:
        """Check that ``parent_id`` exists and is not ``row_id`` or one of its descendants.

        Raises:
            ValidationError: If the parent is missing, invisible or forms a cycle
        """
        if parent_id is None:
            return

        column = self.descriptor.parent_column
        visible = self.descriptor.filter_for(session)
        parent = await tx.get(self._spec, parent_id)
        if parent is None or (visible is not None and not visible.matches(parent)):
            raise ValidationError(f"Parent {parent_id} does not exist")

        seen: set[Any] = set()
        current: dict[str, Any] | None = parent
        while current is not None:
            current_id = current[self._spec.identity]
            if row_id is not None and current_id == row_id:
                raise ValidationError(
                    f"Setting {column}={parent_id} would make {row_id} its own ancestor"
                )
            seen.add(current_id)
            next_id = current.get(column)
            if next_id is None or next_id in seen:
                break
            current = await tx.get(self._spec, next_id)

    async def create(self, session: Session | None, payload: Any) -> MutationResult:
        """Create a row.

        Args:
            session: Caller session (None if unauthenticated)
            payload: Decoded request body

        Returns:
            MutationResult with the new row

        Raises:
            UnauthenticatedError: If there is no session
            ValidationError: If the payload is invalid
            AccessDeniedError: If the create predicate denies, or the new
                row does not satisfy its filter
        """
        session = self._require_session(session)
        values = self.descriptor.validate_create(payload, session)
        where = self._authorize(session, AccessTarget(Operation.CREATE, payload=values))

        async with self._store.transaction() as tx:
            if self.descriptor.parent_column is not None:
                await self._check_parent(tx, session, values.get(self.descriptor.parent_column))

            row = await tx.insert(self._spec, values)
            if where is not None and not where.matches(row):
                logger.info(
                    f"Denied create on {self.descriptor.name} (user={session.user_id}): "
                    "row does not satisfy access filter"
                )
                raise AccessDeniedError("Access denied", self.descriptor.name)

            item = self.descriptor.serialize_row(row)
            txid = tx.txid

        logger.info(
            f"Created {self.descriptor.name} {row[self._spec.identity]} (txid={txid}, user={session.user_id})"
        )
        return MutationResult(txid=txid, item=item)

    async def update(self, session: Session | None, row_id: Any, payload: Any) -> MutationResult:
        """Update a row.

        Raises:
            UnauthenticatedError: If there is no session
            ValidationError: If the payload is invalid or would create a cycle
            AccessDeniedError: If the update predicate denies or filters the row out
            NotFoundError: If no row has ``row_id``
        """
        session = self._require_session(session)
        patch = self.descriptor.validate_update(payload, session)
        where = self._authorize(session, AccessTarget(Operation.UPDATE, row_id, patch))

        async with self._store.transaction() as tx:
            row = await tx.update(self._spec, row_id, patch, where)
            if row is None:
                await self._raise_missing(tx, row_id)

            # Runs against the updated row; a violation rolls the update back
            column = self.descriptor.parent_column
            if column is not None and column in patch:
                await self._check_parent(tx, session, patch[column], row_id)

            item = self.descriptor.serialize_row(row)
            txid = tx.txid

        logger.info(
            f"Updated {self.descriptor.name} {row_id} (txid={txid}, user={session.user_id})"
        )
        return MutationResult(txid=txid, item=item)

    async def delete(self, session: Session | None, row_id: Any) -> MutationResult:
        """Delete a row.

        Raises:
            UnauthenticatedError: If there is no session
            AccessDeniedError: If the delete predicate denies or filters the row out
            NotFoundError: If no row has ``row_id``
            ValidationError: If other rows still reference this row as parent
        """
        session = self._require_session(session)
        where = self._authorize(session, AccessTarget(Operation.DELETE, row_id))

        async with self._store.transaction() as tx:
            row = await tx.delete(self._spec, row_id, where)
            if row is None:
                await self._raise_missing(tx, row_id)

            column = self.descriptor.parent_column
            if column is not None and await tx.exists(self._spec, Eq(column, row_id)):
                raise ValidationError(f"{self.descriptor.name} {row_id} still has children")

            item = self.descriptor.serialize_row(row)
            txid = tx.txid

        logger.info(
            f"Deleted {self.descriptor.name} {row_id} (txid={txid}, user={session.user_id})"
        )
        return MutationResult(txid=txid, item=item)
