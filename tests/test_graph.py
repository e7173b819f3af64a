"""Tests for the resource graph: validation, ordering and scheduling."""

from __future__ import annotations

import pytest

from provisioner.errors import GraphCycleError, ValidationError
from provisioner.graph import ResourceDeclaration, ResourceGraph
from provisioner.values import Reference, Template


def _node(node_id: str, *refs: str, depends_on: list[str] | None = None) -> ResourceDeclaration:
    return ResourceDeclaration(
        id=node_id,
        type="test",
        inputs={f"in_{ref}": Reference(ref, "id") for ref in refs},
        depends_on=depends_on or [],
    )


def _graph(*nodes: ResourceDeclaration) -> ResourceGraph:
    graph = ResourceGraph()
    for node in nodes:
        graph.add(node)
    return graph


class TestResourceDeclaration:
    """Tests for dependency discovery on a declaration."""

    def test_dependencies_from_references_and_depends_on(self) -> None:
        node = ResourceDeclaration(
            id="app",
            type="test",
            inputs={
                "env": Reference("env", "id"),
                "image": Template("{s}/x", {"s": Reference("acr", "login_server")}),
            },
            outputs={"url": Reference("env", "domain")},
            depends_on=["grant"],
        )
        assert node.dependencies() == ["env", "acr", "grant"]

    def test_dependencies_are_deduplicated(self) -> None:
        node = _node("a", "b", depends_on=["b"])
        assert node.dependencies() == ["b"]


class TestTopologicalSort:
    """Tests for apply and destroy ordering."""

    def test_dependencies_come_first(self) -> None:
        graph = _graph(_node("app", "env", "db"), _node("env", "rg"), _node("db", "rg"), _node("rg"))
        order = graph.topological_sort()
        assert order.index("rg") < order.index("env") < order.index("app")
        assert order.index("db") < order.index("app")

    def test_ties_broken_by_declaration_order(self) -> None:
        graph = _graph(_node("rg"), _node("c", "rg"), _node("a", "rg"), _node("b", "rg"))
        assert graph.topological_sort() == ["rg", "c", "a", "b"]

    def test_order_is_deterministic(self) -> None:
        graph = _graph(_node("rg"), _node("x", "rg"), _node("y", "rg"), _node("z", "x", "y"))
        assert graph.topological_sort() == graph.topological_sort()

    def test_destroy_order_is_reversed(self) -> None:
        graph = _graph(_node("rg"), _node("env", "rg"), _node("app", "env"))
        assert graph.destroy_order() == ["app", "env", "rg"]

    def test_cycle_is_reported_with_members(self) -> None:
        graph = _graph(_node("a", "b"), _node("b", "c"), _node("c", "a"), _node("d"))
        with pytest.raises(GraphCycleError) as exc_info:
            graph.topological_sort()
        assert set(exc_info.value.members) == {"a", "b", "c"}

    def test_cycle_through_depends_on(self) -> None:
        graph = _graph(_node("a", depends_on=["b"]), _node("b", "a"))
        with pytest.raises(GraphCycleError):
            graph.validate()


class TestValidate:
    """Tests for graph validation."""

    def test_duplicate_node_rejected(self) -> None:
        graph = _graph(_node("a"))
        with pytest.raises(ValidationError, match="Duplicate node id: a"):
            graph.add(_node("a"))

    def test_reference_to_undeclared_node(self) -> None:
        graph = _graph(_node("a", "missing"))
        with pytest.raises(ValidationError) as exc_info:
            graph.validate()
        assert any("undeclared node ${missing.id}" in e for e in exc_info.value.errors)

    def test_self_reference(self) -> None:
        graph = _graph(_node("a", "a"))
        with pytest.raises(ValidationError, match="self reference"):
            graph.validate()

    def test_unknown_output_name(self) -> None:
        graph = _graph(_node("a"), _node("b", "a"))
        with pytest.raises(ValidationError, match="is not an output"):
            graph.validate(output_names=lambda node: {"name"})

    def test_invalid_value_rejected(self) -> None:
        graph = _graph(ResourceDeclaration(id="a", type="test", inputs={"x": None}))
        with pytest.raises(ValidationError, match="a.inputs.x: null"):
            graph.validate()

    def test_depends_on_undeclared(self) -> None:
        graph = _graph(_node("a", depends_on=["ghost"]))
        with pytest.raises(ValidationError, match="depends on undeclared node ghost"):
            graph.validate()

    def test_stack_output_reference_checked(self) -> None:
        graph = _graph(_node("a"))
        graph.add_output("url", Reference("ghost", "url"))
        with pytest.raises(ValidationError, match="outputs.url"):
            graph.validate()

    def test_valid_graph_passes(self) -> None:
        graph = _graph(_node("a"), _node("b", "a"))
        graph.add_output("id", Reference("b", "id"))
        graph.validate(output_names=lambda node: {"id"})


class TestScheduling:
    """Tests for dependents and ready-set computation."""

    def test_dependents_are_transitive(self) -> None:
        graph = _graph(_node("rg"), _node("srv", "rg"), _node("db", "srv"), _node("other"))
        assert graph.dependents("rg") == ["srv", "db"]
        assert graph.dependents("db") == []

    def test_get_ready(self) -> None:
        graph = _graph(_node("rg"), _node("a", "rg"), _node("b", "rg"), _node("c", "a", "b"))
        assert graph.get_ready(set()) == ["rg"]
        assert graph.get_ready({"rg"}) == ["a", "b"]
        assert graph.get_ready({"rg", "a"}, started={"b"}) == []
        assert graph.get_ready({"rg", "a", "b"}) == ["c"]
