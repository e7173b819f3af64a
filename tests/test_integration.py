"""Integration tests for the full stack.

These tests build the graph from a configuration set and apply it with
the real Azure providers against MockAzureContext, covering convergence,
drift, configuration changes and partial failure without actual Azure
connectivity.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from azure_mock import MockAzureContext

from provisioner.builder import build_graph
from provisioner.config import Config
from provisioner.engine import Engine
from provisioner.planner import Action
from provisioner.providers import build_providers
from provisioner.security import get_credential
from provisioner.state import LocalStateBackend
from provisioner.values import Sensitive, reveal

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"
SUPPLIED_PASSWORD = "S3cure/Pass:word#42"
RG_ID = f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-shop-dev"
REGISTRY_ID = f"{RG_ID}/providers/Microsoft.ContainerRegistry/registries/shopdevacr"
SERVER_ID = f"{RG_ID}/providers/Microsoft.DBforPostgreSQL/flexibleServers/psql-shop-dev"


@pytest.fixture
def azure() -> Generator[MockAzureContext, None, None]:
    with MockAzureContext() as ctx:
        yield ctx


@pytest.fixture
def backend(runtime_config: Config) -> LocalStateBackend:
    return LocalStateBackend(runtime_config.state_path)


@pytest.fixture
def engine(azure: MockAzureContext, backend: LocalStateBackend, runtime_config: Config) -> Engine:
    credential = get_credential()
    return Engine(backend, build_providers(credential, SUBSCRIPTION_ID), runtime_config)


class TestFullStack:
    """Tests for provisioning the complete application stack."""

    @pytest.mark.asyncio
    async def test_apply_provisions_every_resource(
        self, engine: Engine, azure: MockAzureContext, stack_data: dict
    ) -> None:
        result = await engine.apply(build_graph(stack_data))

        assert result.success, result.error
        assert result.count(Action.CREATE) == 11
        # The generated password lives only in state
        assert azure.state.resource_count == 10

        assert result.outputs["registry_login_server"] == "shopdevacr.azurecr.io"
        assert result.outputs["app_url"] == "https://ca-shop-dev.westeurope.azurecontainerapps.io"
        connection_string = result.outputs["database_connection_string"]
        assert isinstance(connection_string, Sensitive)
        assert reveal(connection_string).startswith("postgresql://pgadmin:")

    @pytest.mark.asyncio
    async def test_uses_secretless_credential(
        self, engine: Engine, azure: MockAzureContext
    ) -> None:
        credential = azure.credentials[0]
        assert credential.kind == "default"
        assert credential.init_kwargs == {"exclude_environment_credential": True}

    @pytest.mark.asyncio
    async def test_app_wired_to_registry_and_database(
        self, engine: Engine, azure: MockAzureContext, stack_data: dict
    ) -> None:
        await engine.apply(build_graph(stack_data))

        app = azure.state.list_resources("Microsoft.App/containerApps")[0]
        configuration = app.properties["configuration"]
        container = app.properties["template"]["containers"][0]
        assert container["image"] == "shopdevacr.azurecr.io/shop:latest"
        assert configuration["ingress"]["targetPort"] == 8030
        assert {"name": "PORT", "value": "8030"} in container["env"]
        assert {"name": "DB_URL", "secretRef": "db-url"} in container["env"]
        assert configuration["secrets"][0]["value"].endswith("/app?sslmode=require")

        grant = azure.state.list_resources("Microsoft.Authorization/roleAssignments")[0]
        assert grant.resource_id.startswith(REGISTRY_ID + "/providers/")
        assert grant.properties["principalType"] == "ServicePrincipal"

        registry = azure.state.get_resource(REGISTRY_ID)
        assert registry.properties["adminUserEnabled"] is False

    @pytest.mark.asyncio
    async def test_reapply_performs_no_operations(
        self,
        engine: Engine,
        azure: MockAzureContext,
        backend: LocalStateBackend,
        stack_data: dict,
    ) -> None:
        graph = build_graph(stack_data)
        await engine.apply(graph)
        puts = azure.state.operation_count("put")
        serial = backend.read().serial

        result = await engine.apply(build_graph(stack_data))

        assert result.success
        assert result.operations == []
        assert azure.state.operation_count("put") == puts
        assert backend.read().serial == serial

    @pytest.mark.asyncio
    async def test_supplied_password_is_url_encoded(
        self, engine: Engine, azure: MockAzureContext, stack_data: dict
    ) -> None:
        stack_data["pg_admin_password"] = SUPPLIED_PASSWORD

        result = await engine.apply(build_graph(stack_data))

        assert result.count(Action.CREATE) == 10
        server = azure.state.get_resource(SERVER_ID)
        assert server.properties["administratorLoginPassword"] == SUPPLIED_PASSWORD
        connection_string = reveal(result.outputs["database_connection_string"])
        assert "pgadmin:S3cure%2FPass%3Aword%2342@" in connection_string


class TestConfigurationChanges:
    """Tests for converging after configuration changes."""

    @pytest.mark.asyncio
    async def test_scaling_updates_only_the_app(
        self, engine: Engine, azure: MockAzureContext, stack_data: dict
    ) -> None:
        first = await engine.apply(build_graph(stack_data))

        stack_data["max_replicas"] = 5
        result = await engine.apply(build_graph(stack_data))

        assert [(op.node_id, op.action) for op in result.operations] == [
            ("container_app", Action.UPDATE)
        ]
        app = azure.state.list_resources("Microsoft.App/containerApps")[0]
        assert app.properties["template"]["scale"]["maxReplicas"] == 5
        assert result.outputs["app_url"] == first.outputs["app_url"]

    @pytest.mark.asyncio
    async def test_disabling_public_access_removes_firewall_rule_first(
        self, engine: Engine, azure: MockAzureContext, stack_data: dict
    ) -> None:
        await engine.apply(build_graph(stack_data))

        stack_data["pg_public_access"] = False
        result = await engine.apply(build_graph(stack_data))

        assert [(op.node_id, op.action) for op in result.operations] == [
            ("postgres_firewall", Action.DELETE),
            ("postgres_server", Action.UPDATE),
        ]
        firewall_id = f"{SERVER_ID}/firewallRules/AllowAllAzureServicesAndResourcesWithinAzureIps"
        assert azure.state.get_resource(firewall_id) is None
        server = azure.state.get_resource(SERVER_ID)
        assert server.properties["network"] == {"publicNetworkAccess": "Disabled"}


class TestDrift:
    """Tests for resources changed outside of the provisioner."""

    @pytest.mark.asyncio
    async def test_plan_reports_deleted_registry_without_writing(
        self,
        engine: Engine,
        azure: MockAzureContext,
        backend: LocalStateBackend,
        stack_data: dict,
    ) -> None:
        await engine.apply(build_graph(stack_data))
        # Deleting the registry also removes the role assignment scoped to it
        azure.state.delete_resource(REGISTRY_ID)
        before = backend.read().to_dict()
        puts = azure.state.operation_count("put")

        plan = await engine.plan(build_graph(stack_data))

        assert plan.missing == {"container_registry", "acr_pull"}
        assert plan.get("container_registry").action == Action.CREATE
        assert plan.get("container_app").requires_reevaluation
        assert backend.read().to_dict() == before
        assert azure.state.operation_count("put") == puts

    @pytest.mark.asyncio
    async def test_apply_recreates_deleted_registry(
        self, engine: Engine, azure: MockAzureContext, stack_data: dict
    ) -> None:
        await engine.apply(build_graph(stack_data))
        azure.state.delete_resource(REGISTRY_ID)

        result = await engine.apply(build_graph(stack_data))

        assert result.success, result.error
        assert {(op.node_id, op.action) for op in result.operations} == {
            ("container_registry", Action.CREATE),
            ("acr_pull", Action.CREATE),
        }
        assert azure.state.get_resource(REGISTRY_ID) is not None

    @pytest.mark.asyncio
    async def test_changed_outputs_trigger_update(
        self, engine: Engine, azure: MockAzureContext, stack_data: dict
    ) -> None:
        await engine.apply(build_graph(stack_data))
        azure.state.set_property(REGISTRY_ID, "loginServer", "elsewhere.azurecr.io")

        plan = await engine.plan(build_graph(stack_data))

        change = plan.get("container_registry")
        assert change.action == Action.UPDATE
        assert change.reason == "realized outputs drifted"
        assert plan.missing == set()

        result = await engine.apply(build_graph(stack_data))

        assert result.success, result.error
        assert ("container_registry", Action.UPDATE) in {
            (op.node_id, op.action) for op in result.operations
        }
        assert result.outputs["registry_login_server"] == "shopdevacr.azurecr.io"


class TestFailures:
    """Tests for provider failures during a full apply."""

    @pytest.mark.asyncio
    async def test_throttling_is_retried(
        self, engine: Engine, azure: MockAzureContext, stack_data: dict
    ) -> None:
        azure.state.inject_failure("ca-shop-dev", 429, code="TooManyRequests")

        result = await engine.apply(build_graph(stack_data))

        assert result.success, result.error
        app_op = next(op for op in result.operations if op.node_id == "container_app")
        assert app_op.attempts == 2

    @pytest.mark.asyncio
    async def test_partial_failure_then_rerun_converges(
        self,
        engine: Engine,
        azure: MockAzureContext,
        backend: LocalStateBackend,
        stack_data: dict,
    ) -> None:
        azure.state.inject_failure(
            "psql-shop-dev",
            400,
            code="QuotaExceeded",
            message="Subscription quota exceeded for PostgreSQL servers",
        )

        failed = await engine.apply(build_graph(stack_data))

        assert failed.failed_node == "postgres_server"
        assert "quota exceeded" in str(failed.error)
        assert {"postgres_database", "container_app"} <= set(failed.not_started)
        snapshot = backend.read()
        assert snapshot.get("resource_group") is not None
        assert snapshot.get("postgres_server") is None
        assert snapshot.outputs == {}

        result = await engine.apply(build_graph(stack_data))

        assert result.success, result.error
        applied = {op.node_id for op in result.operations}
        assert "postgres_server" in applied
        assert "resource_group" not in applied
        assert len(backend.read().resources) == 11


class TestDestroy:
    """Tests for tearing down the stack."""

    @pytest.mark.asyncio
    async def test_destroy_removes_everything(
        self,
        engine: Engine,
        azure: MockAzureContext,
        backend: LocalStateBackend,
        stack_data: dict,
    ) -> None:
        await engine.apply(build_graph(stack_data))

        result = await engine.destroy()

        assert result.success, result.error
        assert result.count(Action.DELETE) == 11
        assert azure.state.resource_count == 0
        assert backend.read().is_empty()
        assert backend.read().outputs == {}
