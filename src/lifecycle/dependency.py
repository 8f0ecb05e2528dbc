"""Dependency ordering for teardown.

Resources declare what they depend on (a lock depends on the resource group
it sits on). Creation runs dependencies first; teardown runs the reverse:
every dependent is removed before the resource it depends on.

Ordering is Kahn's algorithm with sorted queues, so the same graph always
yields the same order. Cycles are rejected before anything runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    key: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    def add_node(self, key: str, depends_on: list[str] | None = None) -> None:
        """Add a node to the dependency graph.

        Args:
            key: Instance key.
            depends_on: Keys this instance depends on.
        """
        if key in self.nodes:
            for dep in depends_on or []:
                if dep not in self.nodes[key].depends_on:
                    self.nodes[key].depends_on.append(dep)
        else:
            self.nodes[key] = DependencyNode(key=key, depends_on=list(depends_on or []))

        # Ensure all dependencies have nodes (even if not yet declared)
        for dep in depends_on or []:
            if dep == key:
                raise CyclicDependencyError(f"'{key}' depends on itself")
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(key=dep)

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.creation_order()

    def creation_order(self) -> list[str]:
        """Return keys in dependency order (dependencies first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        # Edges point from a dependency to its dependents
        dependents: dict[str, list[str]] = {node: [] for node in self.nodes}
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.key)
                in_degree[node.key] += 1

        result: list[str] = []
        queue = [node for node, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self.nodes):
            cycle_nodes = sorted(node for node, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

        return result

    def teardown_order(self) -> list[str]:
        """Return keys in teardown order (dependents before dependencies).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        return list(reversed(self.creation_order()))

    def dependents_of(self, key: str) -> set[str]:
        """Return every key that transitively depends on the given key."""
        direct: dict[str, set[str]] = {node: set() for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                direct[dep].add(node.key)

        seen: set[str] = set()
        stack = list(direct.get(key, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(direct[current])
        return seen
