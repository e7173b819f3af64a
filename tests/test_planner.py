"""Tests for the diff engine."""

from __future__ import annotations

from provisioner.graph import ResourceDeclaration, ResourceGraph
from provisioner.planner import (
    MISSING_DETAIL,
    Action,
    AttributeChange,
    decide_action,
    diff_inputs,
    find_drift,
    plan_changes,
    values_equal,
)
from provisioner.resources import (
    CONTAINER_REGISTRY,
    POSTGRES_DATABASE,
    POSTGRES_SERVER,
    RESOURCE_GROUP,
    USER_ASSIGNED_IDENTITY,
    get_resource_type,
)
from provisioner.state import ResourceState, StateSnapshot
from provisioner.values import UNKNOWN, Reference, Sensitive

LOGIN_SERVER = "acrshopdev.azurecr.io"


def _graph(
    *,
    rg_location: str = "westeurope",
    registry_sku: str = "Basic",
    with_identity: bool = True,
) -> ResourceGraph:
    graph = ResourceGraph()
    graph.add(ResourceDeclaration(
        id="rg",
        type=RESOURCE_GROUP,
        inputs={"name": "rg-shop-dev", "location": rg_location},
    ))
    graph.add(ResourceDeclaration(
        id="registry",
        type=CONTAINER_REGISTRY,
        inputs={
            "name": "acrshopdev",
            "resource_group": Reference("rg", "name"),
            "location": "westeurope",
            "sku": registry_sku,
        },
    ))
    if with_identity:
        graph.add(ResourceDeclaration(
            id="identity",
            type=USER_ASSIGNED_IDENTITY,
            inputs={
                "name": "id-shop-dev",
                "resource_group": Reference("rg", "name"),
                "location": "westeurope",
            },
        ))
    graph.add_output("login_server", Reference("registry", "login_server"))
    return graph


def _applied() -> StateSnapshot:
    """Snapshot as left behind by applying _graph()."""
    snapshot = StateSnapshot()
    snapshot.put(ResourceState(
        node_id="rg",
        type=RESOURCE_GROUP,
        inputs={"name": "rg-shop-dev", "location": "westeurope"},
        outputs={"id": "/rg", "name": "rg-shop-dev", "location": "westeurope"},
    ))
    snapshot.put(ResourceState(
        node_id="registry",
        type=CONTAINER_REGISTRY,
        inputs={
            "name": "acrshopdev",
            "resource_group": "rg-shop-dev",
            "location": "westeurope",
            "sku": "Basic",
        },
        outputs={"id": "/acr", "name": "acrshopdev", "login_server": LOGIN_SERVER},
        depends_on=["rg"],
    ))
    snapshot.put(ResourceState(
        node_id="identity",
        type=USER_ASSIGNED_IDENTITY,
        inputs={"name": "id-shop-dev", "resource_group": "rg-shop-dev", "location": "westeurope"},
        outputs={"id": "/id", "name": "id-shop-dev", "principal_id": "p", "client_id": "c"},
        depends_on=["rg"],
    ))
    snapshot.outputs = {"login_server": LOGIN_SERVER}
    return snapshot


def _realized(snapshot: StateSnapshot) -> dict:
    return {node_id: dict(r.outputs) for node_id, r in snapshot.resources.items()}


class TestValuesEqual:
    """Tests for input comparison."""

    def test_location_spelling_ignored(self) -> None:
        assert values_equal("location", "westeurope", "West Europe")
        assert not values_equal("name", "westeurope", "West Europe")

    def test_unknown_never_equal(self) -> None:
        assert not values_equal("name", "x", UNKNOWN)

    def test_sensitive_compared_by_value(self) -> None:
        assert values_equal("password", Sensitive("a"), Sensitive("a"))
        assert not values_equal("password", Sensitive("a"), Sensitive("b"))


class TestDiffInputs:
    """Tests for attribute diffs and the implied action."""

    def test_mutable_change(self) -> None:
        registry = get_resource_type(CONTAINER_REGISTRY)
        changes = diff_inputs(registry, {"name": "a", "sku": "Basic"}, {"name": "a", "sku": "Standard"})
        assert changes == [AttributeChange(name="sku", before="Basic", after="Standard")]
        assert decide_action(changes) == Action.UPDATE

    def test_immutable_change_forces_replacement(self) -> None:
        registry = get_resource_type(CONTAINER_REGISTRY)
        changes = diff_inputs(registry, {"name": "a", "sku": "Basic"}, {"name": "b", "sku": "Standard"})
        assert [c.name for c in changes] == ["name", "sku"]
        assert changes[0].forces_replacement
        assert decide_action(changes) == Action.REPLACE

    def test_removed_input_is_a_change(self) -> None:
        registry = get_resource_type(CONTAINER_REGISTRY)
        changes = diff_inputs(registry, {"name": "a", "tags": {"x": "1"}}, {"name": "a"})
        assert changes == [AttributeChange(name="tags", before={"x": "1"}, after=None)]

    def test_no_changes(self) -> None:
        registry = get_resource_type(CONTAINER_REGISTRY)
        assert decide_action(diff_inputs(registry, {"name": "a"}, {"name": "a"})) == Action.NO_OP


class TestPlanChanges:
    """Tests for plan computation against a snapshot."""

    def test_empty_snapshot_creates_everything(self) -> None:
        plan = plan_changes(_graph(), StateSnapshot())

        assert [c.node_id for c in plan.changes] == ["rg", "registry", "identity"]
        assert all(c.action == Action.CREATE for c in plan.changes)
        assert plan.get("registry").inputs["resource_group"] is UNKNOWN
        assert plan.outputs["login_server"] is UNKNOWN
        assert plan.summary() == "Plan: 3 to add, 0 to change, 0 to replace, 0 to destroy."

    def test_applied_snapshot_has_no_changes(self) -> None:
        snapshot = _applied()
        plan = plan_changes(_graph(), snapshot, _realized(snapshot))

        assert not plan.has_changes
        assert not plan.drift
        assert plan.get("registry").inputs["resource_group"] == "rg-shop-dev"
        assert plan.outputs == {"login_server": LOGIN_SERVER}

    def test_region_spelling_is_not_a_change(self) -> None:
        plan = plan_changes(_graph(rg_location="West Europe"), _applied())
        assert plan.get("rg").action == Action.NO_OP

    def test_mutable_change_updates_in_place(self) -> None:
        plan = plan_changes(_graph(registry_sku="Standard"), _applied())

        change = plan.get("registry")
        assert change.action == Action.UPDATE
        assert [a.name for a in change.attributes] == ["sku"]
        assert plan.get("rg").action == Action.NO_OP

    def test_replacement_propagates_unknowns(self) -> None:
        plan = plan_changes(_graph(rg_location="northeurope"), _applied())

        assert plan.get("rg").action == Action.REPLACE
        registry = plan.get("registry")
        assert registry.inputs["resource_group"] is UNKNOWN
        assert registry.requires_reevaluation
        assert plan.get("identity").requires_reevaluation

    def test_removed_node_deleted_first(self) -> None:
        plan = plan_changes(_graph(with_identity=False), _applied())

        first = plan.changes[0]
        assert first.node_id == "identity"
        assert first.action == Action.DELETE
        assert first.reason == "removed from configuration"
        assert plan.summary() == "Plan: 0 to add, 0 to change, 0 to replace, 1 to destroy."

    def test_removed_nodes_deleted_dependents_first(self) -> None:
        snapshot = _applied()
        snapshot.put(ResourceState(node_id="server", type=POSTGRES_SERVER, depends_on=["rg"]))
        snapshot.put(ResourceState(node_id="database", type=POSTGRES_DATABASE, depends_on=["server"]))

        plan = plan_changes(_graph(), snapshot)

        deletions = [c.node_id for c in plan.changes if c.action == Action.DELETE]
        assert deletions == ["database", "server"]

    def test_missing_resource_is_recreated(self) -> None:
        snapshot = _applied()
        realized = _realized(snapshot)
        realized["registry"] = None

        plan = plan_changes(_graph(), snapshot, realized)

        assert plan.missing == {"registry"}
        change = plan.get("registry")
        assert change.action == Action.CREATE
        assert change.reason == "deleted outside of the provisioner"
        assert plan.outputs["login_server"] is UNKNOWN

    def test_missing_dependency_flags_dependents(self) -> None:
        snapshot = _applied()
        realized = _realized(snapshot)
        realized["rg"] = None

        plan = plan_changes(_graph(), snapshot, realized)

        assert plan.get("rg").action == Action.CREATE
        assert plan.get("registry").requires_reevaluation
        assert plan.get("identity").requires_reevaluation

    def test_changed_outputs_reported_as_drift(self) -> None:
        snapshot = _applied()
        realized = _realized(snapshot)
        realized["registry"]["login_server"] = "moved.azurecr.io"

        plan = plan_changes(_graph(), snapshot, realized)

        assert plan.drifted == {"registry"}
        assert "login_server" in plan.drift[0].detail
        change = plan.get("registry")
        assert change.action == Action.UPDATE
        assert change.reason == "realized outputs drifted"
        assert plan.outputs["login_server"] == "moved.azurecr.io"

    def test_planning_does_not_modify_snapshot(self) -> None:
        snapshot = _applied()
        before = snapshot.to_dict()
        plan_changes(_graph(registry_sku="Premium", with_identity=False), snapshot)
        assert snapshot.to_dict() == before


class TestFindDrift:
    """Tests for drift detection."""

    def test_unrefreshed_nodes_ignored(self) -> None:
        assert find_drift(_applied(), {}) == []

    def test_missing_resource(self) -> None:
        drift = find_drift(_applied(), {"rg": None})
        assert len(drift) == 1
        assert drift[0].node_id == "rg"
        assert drift[0].detail == MISSING_DETAIL

    def test_sensitive_outputs_compared_by_value(self) -> None:
        snapshot = StateSnapshot()
        snapshot.put(ResourceState(
            node_id="pw", type="random.password", outputs={"result": Sensitive("a")}
        ))
        assert find_drift(snapshot, {"pw": {"result": Sensitive("a")}}) == []
        assert len(find_drift(snapshot, {"pw": {"result": Sensitive("b")}})) == 1
