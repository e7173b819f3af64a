"""Resource graph and topological scheduling.

This module implements the desired-state graph:
1. Resource declarations with explicit reference edges
2. Validation (closed value type, known targets and outputs, no cycles)
3. Topological sorting for apply order, reversed for destroy
4. Ready-set computation for bounded concurrent execution

DESIGN:
- Every cross-node reference is an edge. Explicit depends_on entries add
  ordering edges without data flow.
- Ties between unconstrained nodes are broken by declaration order, so
  repeated runs produce identical operation sequences.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .errors import GraphCycleError, ValidationError
from .values import Reference, check_value, iter_references

logger = logging.getLogger(__name__)


@dataclass
class ResourceDeclaration:
    """A named node in the resource graph.

    Attributes:
        id: Unique node id (e.g. "container_registry").
        type: Resource type name (see resources.RESOURCE_TYPES).
        inputs: Attribute name -> declared Value.
        outputs: Derived outputs computed after the node is applied.
        depends_on: Explicit ordering edges without data flow.
    """

    id: str
    type: str
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    def references(self) -> list[Reference]:
        """All references in inputs and derived outputs."""
        refs: list[Reference] = []
        for value in (*self.inputs.values(), *self.outputs.values()):
            refs.extend(iter_references(value))
        return refs

    def dependencies(self) -> list[str]:
        """Direct dependencies, in first-seen order."""
        deps: list[str] = []
        for ref in self.references():
            if ref.node_id not in deps:
                deps.append(ref.node_id)
        for dep in self.depends_on:
            if dep not in deps:
                deps.append(dep)
        return deps


@dataclass
class ResourceGraph:
    """Directed acyclic graph of resource declarations.

    Insertion order of `nodes` is the declaration order.
    """

    nodes: dict[str, ResourceDeclaration] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    def add(self, declaration: ResourceDeclaration) -> ResourceDeclaration:
        """Add a declaration to the graph.

        Raises:
            ValidationError: If the node id is already declared.
        """
        if declaration.id in self.nodes:
            raise ValidationError(f"Duplicate node id: {declaration.id}")
        self.nodes[declaration.id] = declaration
        return declaration

    def add_output(self, name: str, value: Any) -> None:
        """Declare a stack-level output."""
        self.outputs[name] = value

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def validate(
        self,
        output_names: Callable[[ResourceDeclaration], set[str]] | None = None,
    ) -> None:
        """Validate the graph.

        Args:
            output_names: Returns the outputs a node exposes. When given,
                every reference must name one of them.

        Raises:
            ValidationError: If values, targets or output names are invalid.
            GraphCycleError: If a cycle is detected.
        """
        errors: list[str] = []

        for node in self.nodes.values():
            for name, value in node.inputs.items():
                errors.extend(check_value(value, f"{node.id}.inputs.{name}"))
            for name, value in node.outputs.items():
                errors.extend(check_value(value, f"{node.id}.outputs.{name}"))

            for ref in node.references():
                if ref.node_id == node.id:
                    errors.append(f"{node.id}: self reference {ref}")
                elif ref.node_id not in self.nodes:
                    errors.append(f"{node.id}: reference to undeclared node {ref}")
                elif output_names is not None:
                    target = self.nodes[ref.node_id]
                    if ref.output not in output_names(target):
                        errors.append(
                            f"{node.id}: {ref} is not an output of type {target.type}"
                        )

            for dep in node.depends_on:
                if dep == node.id:
                    errors.append(f"{node.id}: depends on itself")
                elif dep not in self.nodes:
                    errors.append(f"{node.id}: depends on undeclared node {dep}")

        for name, value in self.outputs.items():
            errors.extend(check_value(value, f"outputs.{name}"))
            for ref in iter_references(value):
                if ref.node_id not in self.nodes:
                    errors.append(f"outputs.{name}: reference to undeclared node {ref}")

        if errors:
            raise ValidationError("Resource graph validation failed", errors)

        # Raises GraphCycleError
        self.topological_sort()

    def topological_sort(self) -> list[str]:
        """Return node ids in dependency order (dependencies first).

        Kahn's algorithm; among ready nodes the earliest declared wins.

        Raises:
            GraphCycleError: If a cycle is detected.
        """
        position = {node_id: index for index, node_id in enumerate(self.nodes)}
        dependents: dict[str, list[str]] = {node_id: [] for node_id in self.nodes}
        in_degree: dict[str, int] = {node_id: 0 for node_id in self.nodes}

        for node in self.nodes.values():
            for dep in node.dependencies():
                if dep in dependents:
                    dependents[dep].append(node.id)
                    in_degree[node.id] += 1

        queue = [(position[n], n) for n, degree in in_degree.items() if degree == 0]
        heapq.heapify(queue)
        result: list[str] = []

        while queue:
            _, current = heapq.heappop(queue)
            result.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(queue, (position[dependent], dependent))

        if len(result) != len(self.nodes):
            remaining = [n for n in self.nodes if in_degree[n] > 0]
            raise GraphCycleError(self._find_cycle(remaining))

        return result

    def destroy_order(self) -> list[str]:
        """Return node ids in teardown order (dependents first)."""
        return list(reversed(self.topological_sort()))

    def dependents(self, node_id: str) -> list[str]:
        """Return all transitive dependents of a node, in declaration order."""
        found: set[str] = set()
        frontier = [node_id]
        while frontier:
            current = frontier.pop()
            for node in self.nodes.values():
                if node.id not in found and current in node.dependencies():
                    found.add(node.id)
                    frontier.append(node.id)
        return [n for n in self.nodes if n in found]

    def get_ready(self, completed: set[str], started: set[str] | None = None) -> list[str]:
        """Get nodes whose dependencies have all completed.

        Args:
            completed: Node ids that finished successfully.
            started: Node ids already running or finished (excluded).

        Returns:
            Ready node ids in declaration order.
        """
        started = started or set()
        ready = []
        for node in self.nodes.values():
            if node.id in completed or node.id in started:
                continue
            if all(dep in completed for dep in node.dependencies()):
                ready.append(node.id)
        return ready

    def _find_cycle(self, remaining: list[str]) -> list[str]:
        """Walk unprocessed nodes until one repeats; return that cycle."""
        remaining_set = set(remaining)
        path: list[str] = []
        current = remaining[0]
        while current not in path:
            path.append(current)
            next_nodes = [
                dep for dep in self.nodes[current].dependencies() if dep in remaining_set
            ]
            if not next_nodes:
                # Unreachable for a Kahn leftover; report what is left
                return remaining
            current = next_nodes[0]
        cycle = path[path.index(current):]
        logger.error("Dependency cycle detected", extra={"cycle": cycle})
        return cycle
