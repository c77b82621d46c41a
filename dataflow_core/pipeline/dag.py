"""Dataflow DAG - Stage Dependency Graph.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from dataflow_core.errors import ConfigurationError


@dataclass
class DAGNode:
    """A node in the DAG.

    Attributes:
        name: Node name
        dependencies: Upstream dependencies
        data: Node data
    """

    name: str
    dependencies: List[str] = field(default_factory=list)
    data: Any = None


class DAG:
    """Directed acyclic graph over pipeline stages.

    Node insertion order is significant: levels list their members in the
    order nodes were added, so a pipeline's declared stage order is kept
    within each parallel group.

    Supports:
    - Dependency validation
    - Cycle detection with the offending path
    - Parallel level identification
    """

    def __init__(self):
        """Initialize DAG."""
        self._nodes: Dict[str, DAGNode] = {}

    def add_node(
        self,
        name: str,
        dependencies: Optional[List[str]] = None,
        data: Any = None,
    ) -> DAGNode:
        """Add a node to the DAG.

        Args:
            name: Node name
            dependencies: Upstream node names
            data: Optional node data

        Returns:
            Created node

        Raises:
            ConfigurationError: If the name is already taken
        """
        if name in self._nodes:
            raise ConfigurationError(f"Duplicate node: {name}")

        node = DAGNode(name=name, dependencies=list(dependencies or []), data=data)
        self._nodes[name] = node
        return node

    def get_node(self, name: str) -> Optional[DAGNode]:
        return self._nodes.get(name)

    def missing_dependencies(self) -> Dict[str, List[str]]:
        """Map each node to dependencies that reference unknown nodes."""
        missing: Dict[str, List[str]] = {}
        for name, node in self._nodes.items():
            unknown = [d for d in node.dependencies if d not in self._nodes]
            if unknown:
                missing[name] = unknown
        return missing

    def find_cycle(self) -> Optional[List[str]]:
        """Find a dependency cycle using depth-first search.

        Returns:
            Node path forming the cycle (first node repeated at the end),
            or None if the graph is acyclic
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        colors = {name: WHITE for name in self._nodes}
        stack: List[str] = []

        def dfs(node: str) -> Optional[List[str]]:
            colors[node] = GRAY
            stack.append(node)

            for upstream in self._nodes[node].dependencies:
                if upstream not in colors:
                    continue
                if colors[upstream] == GRAY:
                    start = stack.index(upstream)
                    return stack[start:] + [upstream]
                if colors[upstream] == WHITE:
                    cycle = dfs(upstream)
                    if cycle:
                        return cycle

            stack.pop()
            colors[node] = BLACK
            return None

        for node in self._nodes:
            if colors[node] == WHITE:
                cycle = dfs(node)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Check every dependency resolves and the graph is acyclic.

        Raises:
            ConfigurationError: On unknown dependencies or a cycle
        """
        missing = self.missing_dependencies()
        if missing:
            details = ", ".join(f"{k} -> {v}" for k, v in missing.items())
            raise ConfigurationError(f"Unknown dependencies: {details}")

        cycle = self.find_cycle()
        if cycle:
            raise ConfigurationError(
                f"Dependency cycle detected: {' -> '.join(cycle)}"
            )

    def get_parallel_levels(self) -> List[List[str]]:
        """Group nodes into successive ready levels.

        Each level holds every not-yet-placed node whose dependencies all
        sit in earlier levels.

        Returns:
            List of levels, each containing parallel nodes

        Raises:
            ConfigurationError: If no progress can be made
        """
        levels: List[List[str]] = []
        placed: Set[str] = set()
        remaining = list(self._nodes)

        while remaining:
            level = [
                name for name in remaining
                if all(dep in placed for dep in self._nodes[name].dependencies)
            ]

            if not level:
                raise ConfigurationError(
                    f"Cannot order stages, unresolved: {remaining}"
                )

            levels.append(level)
            placed.update(level)
            remaining = [name for name in remaining if name not in placed]

        return levels


__all__ = ["DAG", "DAGNode"]
