"""
Resource registry.

The registry holds every ResourceDescriptor the server exposes. It is
populated at startup and frozen before the app starts serving.

Invariants:
    - Registry is mutable during startup, frozen before serving
    - Resource names, tables and base paths are unique
    - Lookups after freeze are lock-free

How to change safely:
    - Register all resources before create_app() freezes the registry
    - Never reuse a table for two resources
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator

from ..errors import RegistrationError
from .descriptor import ResourceDescriptor

logger = logging.getLogger(__name__)


class RegistryFrozenError(RegistrationError):
    """Raised when attempting to modify a frozen registry."""

    pass


class ResourceRegistry:
    """Registry of resource descriptors.

    Example:
        >>> registry = ResourceRegistry()
        >>> registry.register(todos)
        >>> registry.freeze()
        >>> registry.get("todos").base_path
        '/api/todos'
    """

    def __init__(self) -> None:
        self._by_name: dict[str, ResourceDescriptor] = {}
        self._by_table: dict[str, ResourceDescriptor] = {}
        self._by_path: dict[str, ResourceDescriptor] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, descriptor: ResourceDescriptor) -> ResourceDescriptor:
        """Register a resource descriptor.

        Args:
            descriptor: The descriptor to register

        Returns:
            The descriptor, so registration can be used inline

        Raises:
            RegistryFrozenError: If the registry is frozen
            RegistrationError: If name, table or base path is already taken
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register resource '{descriptor.name}': registry is frozen"
                )

            if descriptor.name in self._by_name:
                raise RegistrationError(f"Resource '{descriptor.name}' already registered")

            existing = self._by_table.get(descriptor.table)
            if existing is not None:
                raise RegistrationError(
                    f"Table '{descriptor.table}' already backs resource '{existing.name}'"
                )

            existing = self._by_path.get(descriptor.base_path)
            if existing is not None:
                raise RegistrationError(
                    f"Path '{descriptor.base_path}' already serves resource '{existing.name}'"
                )

            self._by_name[descriptor.name] = descriptor
            self._by_table[descriptor.table] = descriptor
            self._by_path[descriptor.base_path] = descriptor
            logger.debug(
                f"Registered resource: {descriptor.name} "
                f"(table={descriptor.table}, path={descriptor.base_path})"
            )
            return descriptor

    def get(self, name: str) -> ResourceDescriptor | None:
        return self._by_name.get(name)

    def get_by_table(self, table: str) -> ResourceDescriptor | None:
        return self._by_table.get(table)

    def __iter__(self) -> Iterator[ResourceDescriptor]:
        return iter(list(self._by_name.values()))

    def __len__(self) -> int:
        return len(self._by_name)

    def freeze(self) -> None:
        """Freeze the registry. Further registrations fail."""
        with self._lock:
            if self._frozen:
                return
            self._frozen = True
            logger.info(f"Resource registry frozen with {len(self._by_name)} resources")
