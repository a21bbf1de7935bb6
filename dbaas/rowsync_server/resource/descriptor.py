"""
Resource descriptors.

A ResourceDescriptor is the static contract for one synchronized
resource: where it lives, how rows are identified, which payloads are
valid, who may write and which rows each session may observe.

Descriptors are explicit values supplied at registration time; nothing
is derived by introspecting the store.

Invariants:
    - A descriptor is immutable once constructed
    - The identity column is assigned by the store, never by clients
    - Every column referenced by a row filter exists in the select shape
    - select_shape describes exactly the rows returned to clients

How to change safely:
    - Adding optional fields to a create/update shape is compatible
    - Renaming or removing select_shape fields breaks deployed clients
    - Changing identity or identity_strategy requires a new table

Example:
    >>> todos = ResourceDescriptor(
    ...     name="todos",
    ...     table="todos",
    ...     select_shape=Todo,
    ...     create_shape=TodoCreate,
    ...     update_shape=TodoUpdate,
    ...     access=AccessPolicy(update=owned_by("user_id"), delete=owned_by("user_id")),
    ...     row_filter=lambda session: Eq("user_id", session.user_id),
    ... )
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import pydantic
from pydantic import BaseModel

from ..auth import Session
from ..errors import RegistrationError, ValidationError
from ..predicate import Predicate, check_columns, check_identifier
from ..store.base import IdentityStrategy, TableSpec
from .access import AccessPolicy

SessionDefaults = Callable[[Session], Mapping[str, Any]]


def _pydantic_errors(error: pydantic.ValidationError) -> list[dict[str, Any]]:
    """Convert pydantic errors to a JSON-safe list."""
    return json.loads(error.json(include_url=False))


@dataclass(frozen=True)
class ResourceDescriptor:
    """Static definition of one synchronized resource.

    Attributes:
        name: Resource name (unique per registry)
        table: Store table holding the rows
        select_shape: Model of a row as returned to clients
        create_shape: Model of a valid create payload
        update_shape: Model of a valid update payload (all fields optional)
        base_path: HTTP path of the resource (defaults to /api/<name>)
        identity: Identity column name
        identity_strategy: How the store assigns identities
        access: Access predicates for create, update and delete
        row_filter: Session -> predicate restricting visible rows
        create_defaults: Session -> values stamped on every created row
        update_defaults: Session -> values stamped on every update
        parent_column: Column referencing a parent row of the same resource
    """

    name: str
    table: str
    select_shape: type[BaseModel]
    create_shape: type[BaseModel]
    update_shape: type[BaseModel]
    base_path: str = ""
    identity: str = "id"
    identity_strategy: IdentityStrategy = IdentityStrategy.AUTOINCREMENT
    access: AccessPolicy = field(default_factory=AccessPolicy)
    row_filter: Callable[[Session], Predicate] | None = None
    create_defaults: SessionDefaults | None = None
    update_defaults: SessionDefaults | None = None
    parent_column: str | None = None

    def __post_init__(self) -> None:
        try:
            check_identifier(self.name)
            check_identifier(self.identity)
            TableSpec(self.table, self.identity, self.identity_strategy)
        except ValueError as e:
            raise RegistrationError(f"Invalid resource '{self.name}': {e}") from e

        if not self.base_path:
            object.__setattr__(self, "base_path", f"/api/{self.name}")
        if not self.base_path.startswith("/") or self.base_path.endswith("/"):
            raise RegistrationError(
                f"base_path must start with '/' and not end with '/': {self.base_path}"
            )

        if self.identity not in self.columns:
            raise RegistrationError(
                f"Identity column '{self.identity}' missing from select shape of '{self.name}'"
            )
        if self.parent_column is not None and self.parent_column not in self.columns:
            raise RegistrationError(
                f"Parent column '{self.parent_column}' missing from select shape of '{self.name}'"
            )

    @property
    def columns(self) -> frozenset[str]:
        """Column names visible to clients."""
        return frozenset(self.select_shape.model_fields)

    @property
    def table_spec(self) -> TableSpec:
        return TableSpec(self.table, self.identity, self.identity_strategy)

    def filter_for(self, session: Session) -> Predicate | None:
        """Compute the row-level filter for ``session``.

        Raises:
            PredicateError: If the filter references unknown columns
        """
        if self.row_filter is None:
            return None
        predicate = self.row_filter(session)
        check_columns(predicate, self.columns)
        return predicate

    def validate_create(self, payload: Any, session: Session | None = None) -> dict[str, Any]:
        """Validate a create payload and apply session defaults.

        Args:
            payload: Decoded JSON request body
            session: Caller session, used for create_defaults

        Returns:
            Column values to insert (identity excluded)

        Raises:
            ValidationError: If the payload does not match create_shape
        """
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        try:
            model = self.create_shape.model_validate(payload)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid {self.name} payload", _pydantic_errors(e)) from e

        values = model.model_dump(mode="json")
        if session is not None and self.create_defaults is not None:
            values.update(self.create_defaults(session))
        values.pop(self.identity, None)
        return values

    def validate_update(self, payload: Any, session: Session | None = None) -> dict[str, Any]:
        """Validate an update payload.

        Only fields present in the request are returned, so absent fields
        keep their stored values.

        Raises:
            ValidationError: If the payload does not match update_shape or is empty
        """
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        try:
            model = self.update_shape.model_validate(payload)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid {self.name} payload", _pydantic_errors(e)) from e

        patch = model.model_dump(mode="json", exclude_unset=True)
        patch.pop(self.identity, None)
        if not patch:
            raise ValidationError(f"Update of {self.name} has no fields to change")
        if session is not None and self.update_defaults is not None:
            patch.update(self.update_defaults(session))
        return patch

    def parse_id(self, raw: str) -> Any:
        """Parse an identity from a URL path segment.

        Raises:
            ValidationError: If ``raw`` is not a valid identity
        """
        if self.identity_strategy is IdentityStrategy.UUID:
            try:
                return str(uuid.UUID(raw))
            except ValueError as e:
                raise ValidationError(f"Invalid {self.identity}: {raw!r}") from e

        try:
            return int(raw)
        except ValueError as e:
            raise ValidationError(f"Invalid {self.identity}: {raw!r}") from e

    def serialize_row(self, row: Mapping[str, Any]) -> dict[str, Any]:
        """Render a stored row through select_shape."""
        return self.select_shape.model_validate(dict(row)).model_dump(mode="json")
