"""Diff engine: desired graph vs. state snapshot -> planned changes.

Per node, the resolved declared inputs are compared with the inputs the
snapshot recorded at the last apply:
- not in the snapshot            -> create
- only mutable inputs changed    -> update in place
- any immutable input changed    -> replace (delete, then create)
- unchanged                      -> no-op
Nodes recorded in the snapshot but absent from the graph are deleted
first, dependents before their dependencies.

Values that depend on a node being created or replaced are unknown until
apply. An unknown input counts as changed; the engine recomputes each diff
with real values just before executing it.

Planning never writes the snapshot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import StateDriftError
from .graph import ResourceGraph
from .resources import ResourceType, get_resource_type
from .state import StateSnapshot
from .values import UNKNOWN, Reference, contains_unknown, resolve, reveal

logger = logging.getLogger(__name__)

# Inputs compared after normalizing Azure region spelling
LOCATION_INPUTS = frozenset({"location"})


class Action(str, Enum):
    """Planned operation for one node."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_OP = "no-op"


@dataclass
class AttributeChange:
    """One changed input."""

    name: str
    before: Any
    after: Any
    forces_replacement: bool = False


@dataclass
class PlannedChange:
    """Planned operation for one node."""

    node_id: str
    type: str
    action: Action
    attributes: list[AttributeChange] = field(default_factory=list)
    inputs: dict[str, Any] = field(default_factory=dict)
    requires_reevaluation: bool = False
    reason: str | None = None


@dataclass
class Plan:
    """Ordered set of planned changes.

    `changes` is in execution order: deletions of removed nodes first,
    then every graph node in topological order.
    """

    changes: list[PlannedChange] = field(default_factory=list)
    drift: list[StateDriftError] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return any(c.action != Action.NO_OP for c in self.changes)

    @property
    def missing(self) -> set[str]:
        """Recorded nodes that no longer exist remotely."""
        return {d.node_id for d in self.drift if d.detail == MISSING_DETAIL}

    @property
    def drifted(self) -> set[str]:
        """Recorded nodes whose realized outputs changed out of band."""
        return {d.node_id for d in self.drift}

    def get(self, node_id: str) -> PlannedChange | None:
        for change in self.changes:
            if change.node_id == node_id:
                return change
        return None

    def counts(self) -> dict[Action, int]:
        counts = {action: 0 for action in Action}
        for change in self.changes:
            counts[change.action] += 1
        return counts

    def summary(self) -> str:
        counts = self.counts()
        return (
            f"Plan: {counts[Action.CREATE]} to add, {counts[Action.UPDATE]} to change, "
            f"{counts[Action.REPLACE]} to replace, {counts[Action.DELETE]} to destroy."
        )


MISSING_DETAIL = "resource no longer exists"


def normalize_location(value: Any) -> Any:
    """`West Europe` and `westeurope` name the same region."""
    if isinstance(value, str):
        return value.replace(" ", "").lower()
    return value


def values_equal(name: str, before: Any, after: Any) -> bool:
    """Compare a recorded and a desired input value."""
    if contains_unknown(after):
        return False
    before, after = reveal(before), reveal(after)
    if name in LOCATION_INPUTS:
        return normalize_location(before) == normalize_location(after)
    return before == after


def diff_inputs(
    resource_type: ResourceType,
    recorded: dict[str, Any],
    desired: dict[str, Any],
) -> list[AttributeChange]:
    """List changed inputs, flagging those that force replacement."""
    changes: list[AttributeChange] = []
    for name in sorted(set(recorded) | set(desired)):
        before = recorded.get(name)
        after = desired.get(name)
        if name in recorded and name in desired and values_equal(name, before, after):
            continue
        changes.append(AttributeChange(
            name=name,
            before=before,
            after=after,
            forces_replacement=name in resource_type.immutable,
        ))
    return changes


def decide_action(changes: list[AttributeChange]) -> Action:
    """Action implied by a list of attribute changes for an existing node."""
    if any(c.forces_replacement for c in changes):
        return Action.REPLACE
    if changes:
        return Action.UPDATE
    return Action.NO_OP


def find_drift(
    snapshot: StateSnapshot,
    realized: dict[str, dict[str, Any] | None],
) -> list[StateDriftError]:
    """Compare refreshed outputs with the outputs the snapshot recorded."""
    drift: list[StateDriftError] = []
    for node_id, resource in snapshot.resources.items():
        if node_id not in realized:
            continue
        current = realized[node_id]
        if current is None:
            drift.append(StateDriftError(node_id, MISSING_DETAIL))
            continue
        changed = sorted(
            name
            for name, value in current.items()
            if name in resource.outputs and reveal(resource.outputs[name]) != reveal(value)
        )
        if changed:
            drift.append(StateDriftError(node_id, f"outputs changed out of band: {changed}"))
    return drift


def plan_changes(
    graph: ResourceGraph,
    snapshot: StateSnapshot,
    realized: dict[str, dict[str, Any] | None] | None = None,
) -> Plan:
    """Compute the plan for a graph against a snapshot.

    Args:
        graph: Validated resource graph.
        snapshot: Last-known realized state.
        realized: Refreshed outputs per recorded node (None = missing).
            Without it the snapshot is trusted as-is.

    Returns:
        Plan in execution order, with drift entries and projected outputs.
    """
    realized = realized or {}
    plan = Plan()

    for node_id in snapshot.destroy_order():
        if node_id not in graph:
            resource = snapshot.resources[node_id]
            plan.changes.append(PlannedChange(
                node_id=node_id,
                type=resource.type,
                action=Action.DELETE,
                reason="removed from configuration",
            ))

    plan.drift = [d for d in find_drift(snapshot, realized) if d.node_id in graph]
    missing = plan.missing
    for entry in plan.drift:
        logger.warning(
            "State drift detected",
            extra={"node_id": entry.node_id, "detail": entry.detail},
        )

    flagged: set[str] = set()
    for node_id in missing:
        flagged.update(graph.dependents(node_id))

    pending: set[str] = set()
    projected: dict[str, dict[str, Any]] = {}

    def lookup(ref: Reference) -> Any:
        return _project(graph, snapshot, realized, projected, pending, ref)

    for node_id in graph.topological_sort():
        node = graph.nodes[node_id]
        resource_type = get_resource_type(node.type)
        recorded = snapshot.get(node_id)
        desired = {name: resolve(value, lookup) for name, value in node.inputs.items()}

        change = PlannedChange(
            node_id=node_id,
            type=node.type,
            action=Action.NO_OP,
            inputs=desired,
            requires_reevaluation=node_id in flagged,
        )

        if recorded is None:
            change.action = Action.CREATE
            change.attributes = diff_inputs(resource_type, {}, desired)
        elif node_id in missing:
            change.action = Action.CREATE
            change.attributes = diff_inputs(resource_type, {}, desired)
            change.reason = "deleted outside of the provisioner"
        else:
            change.attributes = diff_inputs(resource_type, recorded.inputs, desired)
            change.action = decide_action(change.attributes)
            if change.action == Action.NO_OP and node_id in plan.drifted:
                change.action = Action.UPDATE
                change.reason = "realized outputs drifted"

        if change.action in (Action.CREATE, Action.REPLACE):
            pending.add(node_id)
            if change.action == Action.REPLACE:
                flagged.update(graph.dependents(node_id))

        plan.changes.append(change)

    # Dependents of replaced nodes are only known after the loop
    for change in plan.changes:
        if change.node_id in flagged:
            change.requires_reevaluation = True

    plan.outputs = {
        name: resolve(value, lookup) for name, value in graph.outputs.items()
    }

    logger.info(
        "Plan computed",
        extra={
            "changes": {a.value: n for a, n in plan.counts().items()},
            "drift": len(plan.drift),
        },
    )
    return plan


def _project(
    graph: ResourceGraph,
    snapshot: StateSnapshot,
    realized: dict[str, dict[str, Any] | None],
    projected: dict[str, dict[str, Any]],
    pending: set[str],
    ref: Reference,
) -> Any:
    """Best-known value of a reference before apply."""
    node = graph.nodes[ref.node_id]

    # Derived outputs are recomputed from their own references
    if ref.output in node.outputs:
        cache = projected.setdefault(ref.node_id, {})
        if ref.output not in cache:
            cache[ref.output] = resolve(
                node.outputs[ref.output],
                lambda inner: _project(graph, snapshot, realized, projected, pending, inner),
            )
        return cache[ref.output]

    if ref.node_id in pending:
        return UNKNOWN

    current = realized.get(ref.node_id)
    if current is not None and ref.output in current:
        return current[ref.output]

    recorded = snapshot.get(ref.node_id)
    if recorded is None or ref.output not in recorded.outputs:
        return UNKNOWN
    return recorded.outputs[ref.output]
