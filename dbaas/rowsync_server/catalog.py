"""
Built-in resource catalog.

Defines the resources served by default:
- todos: a user's todo items
- collections: named groups of nodes, with free-form JSON metadata
- nodes: a folder/file tree inside a collection (self-referencing parent_id)

Every resource is owned by the user that created it: user_id is stamped
from the session on create, only the owner may update or delete, and each
session only observes its own rows on the change feed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .auth import Session
from .predicate import Eq, Predicate
from .resource.access import AccessPolicy, owned_by
from .resource.descriptor import ResourceDescriptor
from .resource.registry import ResourceRegistry


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def owner_filter(session: Session) -> Predicate:
    return Eq("user_id", session.user_id)


def stamp_owner(session: Session) -> dict[str, Any]:
    now = _now()
    return {"user_id": session.user_id, "created_at": now, "updated_at": now}


def stamp_updated(session: Session) -> dict[str, Any]:
    return {"updated_at": _now()}


OWNER_POLICY = AccessPolicy(update=owned_by("user_id"), delete=owned_by("user_id"))


class Payload(BaseModel):
    """Create payload. Unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")


class Patch(Payload):
    """Update payload.

    Every field is optional; an explicit null is only accepted for the
    fields listed in ``nullable_fields``.
    """

    nullable_fields: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def reject_nulls(self) -> Patch:
        for name in self.model_fields_set:
            if getattr(self, name) is None and name not in self.nullable_fields:
                raise ValueError(f"{name} cannot be null")
        return self


# ---------------------------------------------------------------------------
# Todos
# ---------------------------------------------------------------------------


class Todo(BaseModel):
    id: int
    text: str
    completed: bool = False
    user_id: str
    created_at: datetime
    updated_at: datetime | None = None


class TodoCreate(Payload):
    text: str = Field(min_length=1, max_length=500)
    completed: bool = False


class TodoUpdate(Patch):
    text: str | None = Field(default=None, min_length=1, max_length=500)
    completed: bool | None = None


todos = ResourceDescriptor(
    name="todos",
    table="todos",
    select_shape=Todo,
    create_shape=TodoCreate,
    update_shape=TodoUpdate,
    access=OWNER_POLICY,
    row_filter=owner_filter,
    create_defaults=stamp_owner,
    update_defaults=stamp_updated,
)


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


class Collection(BaseModel):
    id: int
    name: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    user_id: str
    created_at: datetime
    updated_at: datetime


class CollectionCreate(Payload):
    name: str = Field(min_length=1, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CollectionUpdate(Patch):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    metadata: dict[str, Any] | None = None


collections = ResourceDescriptor(
    name="collections",
    table="collections",
    select_shape=Collection,
    create_shape=CollectionCreate,
    update_shape=CollectionUpdate,
    access=OWNER_POLICY,
    row_filter=owner_filter,
    create_defaults=stamp_owner,
    update_defaults=stamp_updated,
)


# ---------------------------------------------------------------------------
# Nodes (self-referencing, belongs to a collection)
# ---------------------------------------------------------------------------

NodeKind = Literal["folder", "file"]


class Node(BaseModel):
    id: int
    name: str
    kind: NodeKind
    parent_id: int | None = None
    collection_id: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    user_id: str
    created_at: datetime
    updated_at: datetime


class NodeCreate(Payload):
    name: str = Field(min_length=1, max_length=255)
    kind: NodeKind
    parent_id: int | None = None
    collection_id: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class NodeUpdate(Patch):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"parent_id"})

    name: str | None = Field(default=None, min_length=1, max_length=255)
    parent_id: int | None = None
    metadata: dict[str, Any] | None = None


nodes = ResourceDescriptor(
    name="nodes",
    table="nodes",
    select_shape=Node,
    create_shape=NodeCreate,
    update_shape=NodeUpdate,
    access=OWNER_POLICY,
    row_filter=owner_filter,
    create_defaults=stamp_owner,
    update_defaults=stamp_updated,
    parent_column="parent_id",
)


def build_registry() -> ResourceRegistry:
    """Registry with every built-in resource."""
    registry = ResourceRegistry()
    for descriptor in (todos, collections, nodes):
        registry.register(descriptor)
    return registry
