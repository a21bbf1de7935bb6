"""
Resource definitions for RowSync.

This module provides the static model of synchronized resources:
- Row predicates (Eq, In, IsNull, And) shared by writes and feeds
- Access decisions and per-operation access policies
- ResourceDescriptor and the ResourceRegistry

Invariants:
    - Descriptors are immutable once registered
    - Access predicates never write
    - Row filters are computed from the session, never from the request

How to change safely:
    - Add optional fields to shapes rather than renaming existing ones
    - Register all resources before serving
"""

from ..predicate import (
    And,
    Eq,
    In,
    IsNull,
    Predicate,
    PredicateError,
    conjoin,
    predicate_from_dict,
    predicate_from_json,
)
from .access import (
    ALLOW,
    AccessDecision,
    AccessPolicy,
    AccessPredicate,
    AccessTarget,
    Allow,
    AllowWithFilter,
    Deny,
    Operation,
    allow_all,
    deny_all,
    owned_by,
    require_role,
)
from .descriptor import ResourceDescriptor
from .registry import RegistryFrozenError, ResourceRegistry

__all__ = [
    # Predicates
    "Predicate",
    "PredicateError",
    "Eq",
    "In",
    "IsNull",
    "And",
    "conjoin",
    "predicate_from_dict",
    "predicate_from_json",
    # Access
    "Operation",
    "Allow",
    "AllowWithFilter",
    "Deny",
    "ALLOW",
    "AccessDecision",
    "AccessPolicy",
    "AccessPredicate",
    "AccessTarget",
    "allow_all",
    "deny_all",
    "owned_by",
    "require_role",
    # Descriptors
    "ResourceDescriptor",
    "ResourceRegistry",
    "RegistryFrozenError",
]
