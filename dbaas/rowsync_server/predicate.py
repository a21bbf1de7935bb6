"""
Row predicates for access filters and feed subscriptions.

A Predicate is a small, structured boolean expression over a row's
columns. The same value is used in three places:
- compiled to SQL with bound parameters when the gateway narrows a write
- serialized to JSON for the change feed's ``where`` parameter
- evaluated against row dicts when the feed filters committed changes

Supported forms:
    Eq("user_id", "u1")                 column = value
    In("kind", ("folder", "file"))      column IN (...)
    IsNull("parent_id")                 column IS NULL
    And((p1, p2))                       p1 AND p2

Invariants:
    - Column names are plain identifiers, never interpolated user text
    - Values are JSON scalars (str, int, float, bool)
    - to_dict()/predicate_from_dict() round-trip exactly

How to change safely:
    - New node types need matches(), to_sql() and a JSON tag
    - Keep JSON tags stable; subscriptions persist them in handles
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SCALARS = (str, int, float, bool)


class PredicateError(ValueError):
    """Predicate is malformed or references an unknown column."""

    pass


def check_identifier(name: str) -> str:
    """Validate a column or table identifier.

    Raises:
        PredicateError: If the name is not a plain identifier
    """
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise PredicateError(f"Invalid identifier: {name!r}")
    return name


def _check_scalar(value: Any) -> Any:
    if value is None or not isinstance(value, _SCALARS):
        raise PredicateError(f"Predicate values must be JSON scalars, got {value!r}")
    return value


class Predicate:
    """Base class for row predicates."""

    def matches(self, row: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def to_sql(self, column_sql: Callable[[str], str]) -> tuple[str, list[Any]]:
        """Compile to a SQL fragment.

        Args:
            column_sql: Maps a column name to its SQL expression

        Returns:
            Tuple of (sql, params)
        """
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        raise NotImplementedError

    def columns(self) -> set[str]:
        raise NotImplementedError

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    def __and__(self, other: Predicate) -> Predicate:
        return conjoin(self, other)


@dataclass(frozen=True)
class Eq(Predicate):
    column: str
    value: Any

    def __post_init__(self) -> None:
        check_identifier(self.column)
        _check_scalar(self.value)

    def matches(self, row: Mapping[str, Any]) -> bool:
        return self.column in row and row[self.column] == self.value

    def to_sql(self, column_sql: Callable[[str], str]) -> tuple[str, list[Any]]:
        return f"{column_sql(self.column)} = ?", [self.value]

    def to_dict(self) -> dict[str, Any]:
        return {"eq": [self.column, self.value]}

    def columns(self) -> set[str]:
        return {self.column}


@dataclass(frozen=True)
class In(Predicate):
    column: str
    values: tuple[Any, ...]

    def __post_init__(self) -> None:
        check_identifier(self.column)
        # values is always stored as a tuple
        object.__setattr__(self, "values", tuple(_check_scalar(v) for v in self.values))

    def matches(self, row: Mapping[str, Any]) -> bool:
        return self.column in row and row[self.column] in self.values

    def to_sql(self, column_sql: Callable[[str], str]) -> tuple[str, list[Any]]:
        if not self.values:
            return "0", []
        placeholders = ", ".join("?" for _ in self.values)
        return f"{column_sql(self.column)} IN ({placeholders})", list(self.values)

    def to_dict(self) -> dict[str, Any]:
        return {"in": [self.column, list(self.values)]}

    def columns(self) -> set[str]:
        return {self.column}


@dataclass(frozen=True)
class IsNull(Predicate):
    column: str

    def __post_init__(self) -> None:
        check_identifier(self.column)

    def matches(self, row: Mapping[str, Any]) -> bool:
        return row.get(self.column) is None

    def to_sql(self, column_sql: Callable[[str], str]) -> tuple[str, list[Any]]:
        return f"{column_sql(self.column)} IS NULL", []

    def to_dict(self) -> dict[str, Any]:
        return {"is_null": self.column}

    def columns(self) -> set[str]:
        return {self.column}


@dataclass(frozen=True)
class And(Predicate):
    clauses: tuple[Predicate, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "clauses", tuple(self.clauses))
        if not self.clauses:
            raise PredicateError("And() needs at least one clause")
        for clause in self.clauses:
            if not isinstance(clause, Predicate):
                raise PredicateError(f"Not a predicate: {clause!r}")

    def matches(self, row: Mapping[str, Any]) -> bool:
        return all(clause.matches(row) for clause in self.clauses)

    def to_sql(self, column_sql: Callable[[str], str]) -> tuple[str, list[Any]]:
        parts = []
        params: list[Any] = []
        for clause in self.clauses:
            sql, clause_params = clause.to_sql(column_sql)
            parts.append(f"({sql})")
            params.extend(clause_params)
        return " AND ".join(parts), params

    def to_dict(self) -> dict[str, Any]:
        return {"and": [clause.to_dict() for clause in self.clauses]}

    def columns(self) -> set[str]:
        result: set[str] = set()
        for clause in self.clauses:
            result |= clause.columns()
        return result


def conjoin(*predicates: Predicate | None) -> Predicate | None:
    """AND together predicates, skipping None and flattening nested Ands.

    Returns:
        The combined predicate, or None if every input was None
    """
    flat: list[Predicate] = []
    for predicate in predicates:
        if predicate is None:
            continue
        if isinstance(predicate, And):
            flat.extend(predicate.clauses)
        else:
            flat.append(predicate)

    if not flat:
        return None
    if len(flat) == 1:
        return flat[0]
    return And(tuple(flat))


def predicate_from_dict(data: Any) -> Predicate:
    """Rebuild a predicate from its JSON form.

    Raises:
        PredicateError: If the structure is not a known predicate
    """
    if not isinstance(data, dict) or len(data) != 1:
        raise PredicateError(f"Invalid predicate: {data!r}")

    tag, body = next(iter(data.items()))
    try:
        if tag == "eq":
            column, value = body
            return Eq(column, value)
        if tag == "in":
            column, values = body
            if not isinstance(values, list):
                raise PredicateError("'in' expects a list of values")
            return In(column, tuple(values))
        if tag == "is_null":
            return IsNull(body)
        if tag == "and":
            if not isinstance(body, list):
                raise PredicateError("'and' expects a list of predicates")
            return And(tuple(predicate_from_dict(item) for item in body))
    except (TypeError, ValueError) as e:
        if isinstance(e, PredicateError):
            raise
        raise PredicateError(f"Invalid '{tag}' predicate: {body!r}") from e

    raise PredicateError(f"Unknown predicate type: {tag}")


def predicate_from_json(text: str) -> Predicate:
    """Parse a predicate from its JSON text (the feed's ``where`` value)."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise PredicateError(f"Invalid predicate JSON: {e}") from e
    return predicate_from_dict(data)


def check_columns(predicate: Predicate, known: Iterable[str]) -> None:
    """Ensure a predicate only references known columns.

    Raises:
        PredicateError: If an unknown column is referenced
    """
    unknown = predicate.columns() - set(known)
    if unknown:
        raise PredicateError(f"Unknown columns in predicate: {sorted(unknown)}")
