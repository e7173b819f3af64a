"""Per-resource declaration schema.

Each resource type declares which inputs it requires or accepts, which of
them are immutable (a change forces replacement), which inputs may carry
sensitive values, and which outputs it exposes once applied.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ValidationError
from .graph import ResourceDeclaration, ResourceGraph
from .values import is_sensitive, iter_references


@dataclass(frozen=True)
class ResourceType:
    """Schema for one resource type."""

    name: str
    required: frozenset[str]
    outputs: frozenset[str]
    optional: frozenset[str] = frozenset()
    immutable: frozenset[str] = frozenset()
    sensitive_outputs: frozenset[str] = frozenset()
    # Inputs allowed to hold sensitive values
    secret_inputs: frozenset[str] = frozenset()
    # Azure resource type and API version; None for locally realized types
    arm_type: str | None = None
    api_version: str | None = None

    @property
    def accepted(self) -> frozenset[str]:
        """All input names this type accepts."""
        return self.required | self.optional

    def check(
        self,
        declaration: ResourceDeclaration,
        sensitive: set[tuple[str, str]] | None = None,
    ) -> list[str]:
        """Validate a declaration against this schema.

        Args:
            declaration: The node to check.
            sensitive: (node id, output) pairs known to be sensitive. Inputs
                referencing them must be declared secret inputs.

        Returns:
            List of error messages (empty if valid).
        """
        errors: list[str] = []
        node = declaration.id
        sensitive = sensitive or set()

        for name in sorted(self.required - set(declaration.inputs)):
            errors.append(f"{node}: required input '{name}' is missing")

        for name in sorted(set(declaration.inputs) - self.accepted):
            errors.append(f"{node}: unknown input '{name}' for type {self.name}")

        for name, value in declaration.inputs.items():
            if name in self.secret_inputs:
                continue
            if is_sensitive(value) or any(
                (ref.node_id, ref.output) in sensitive for ref in iter_references(value)
            ):
                errors.append(f"{node}: input '{name}' must not carry a sensitive value")

        return errors


RESOURCE_GROUP = "azure.resource_group"
LOG_ANALYTICS_WORKSPACE = "azure.log_analytics_workspace"
CONTAINER_REGISTRY = "azure.container_registry"
USER_ASSIGNED_IDENTITY = "azure.user_assigned_identity"
ROLE_ASSIGNMENT = "azure.role_assignment"
RANDOM_PASSWORD = "random.password"
POSTGRES_SERVER = "azure.postgresql_flexible_server"
POSTGRES_FIREWALL_RULE = "azure.postgresql_firewall_rule"
POSTGRES_DATABASE = "azure.postgresql_database"
CONTAINER_APP_ENVIRONMENT = "azure.container_app_environment"
CONTAINER_APP = "azure.container_app"

_LOCATED = frozenset({"name", "resource_group", "location"})

RESOURCE_TYPES: dict[str, ResourceType] = {
    t.name: t
    for t in (
        ResourceType(
            name=RESOURCE_GROUP,
            required=frozenset({"name", "location"}),
            optional=frozenset({"tags"}),
            immutable=frozenset({"name", "location"}),
            outputs=frozenset({"id", "name", "location"}),
            arm_type="Microsoft.Resources/resourceGroups",
            api_version="2022-09-01",
        ),
        ResourceType(
            name=LOG_ANALYTICS_WORKSPACE,
            required=_LOCATED | {"sku"},
            optional=frozenset({"retention_days", "tags"}),
            immutable=_LOCATED,
            outputs=frozenset({"id", "name", "customer_id", "primary_shared_key"}),
            sensitive_outputs=frozenset({"primary_shared_key"}),
            arm_type="Microsoft.OperationalInsights/workspaces",
            api_version="2022-10-01",
        ),
        ResourceType(
            name=CONTAINER_REGISTRY,
            required=_LOCATED | {"sku"},
            optional=frozenset({"admin_user_enabled", "tags"}),
            immutable=_LOCATED,
            outputs=frozenset({"id", "name", "login_server"}),
            arm_type="Microsoft.ContainerRegistry/registries",
            api_version="2023-07-01",
        ),
        ResourceType(
            name=USER_ASSIGNED_IDENTITY,
            required=_LOCATED,
            optional=frozenset({"tags"}),
            immutable=_LOCATED,
            outputs=frozenset({"id", "name", "principal_id", "client_id"}),
            arm_type="Microsoft.ManagedIdentity/userAssignedIdentities",
            api_version="2023-01-31",
        ),
        ResourceType(
            name=ROLE_ASSIGNMENT,
            required=frozenset(
                {"scope", "role_definition_id", "principal_id", "principal_type"}
            ),
            # Role assignments cannot be updated in place
            immutable=frozenset(
                {"scope", "role_definition_id", "principal_id", "principal_type"}
            ),
            outputs=frozenset({"id", "name"}),
            arm_type="Microsoft.Authorization/roleAssignments",
            api_version="2022-04-01",
        ),
        ResourceType(
            name=RANDOM_PASSWORD,
            required=frozenset({"length"}),
            immutable=frozenset({"length"}),
            outputs=frozenset({"result"}),
            sensitive_outputs=frozenset({"result"}),
        ),
        ResourceType(
            name=POSTGRES_SERVER,
            required=_LOCATED
            | {
                "sku_name",
                "sku_tier",
                "version",
                "storage_mb",
                "administrator_login",
                "administrator_password",
                "public_network_access",
            },
            optional=frozenset({"tags"}),
            immutable=_LOCATED | {"administrator_login", "version"},
            secret_inputs=frozenset({"administrator_password"}),
            outputs=frozenset({"id", "name", "fqdn"}),
            arm_type="Microsoft.DBforPostgreSQL/flexibleServers",
            api_version="2022-12-01",
        ),
        ResourceType(
            name=POSTGRES_FIREWALL_RULE,
            required=frozenset({"name", "server_id", "start_ip_address", "end_ip_address"}),
            immutable=frozenset({"name", "server_id"}),
            outputs=frozenset({"id", "name"}),
            arm_type="Microsoft.DBforPostgreSQL/flexibleServers/firewallRules",
            api_version="2022-12-01",
        ),
        ResourceType(
            name=POSTGRES_DATABASE,
            required=frozenset({"name", "server_id", "charset", "collation"}),
            immutable=frozenset({"name", "server_id", "charset", "collation"}),
            outputs=frozenset({"id", "name"}),
            arm_type="Microsoft.DBforPostgreSQL/flexibleServers/databases",
            api_version="2022-12-01",
        ),
        ResourceType(
            name=CONTAINER_APP_ENVIRONMENT,
            required=_LOCATED | {"log_analytics_customer_id", "log_analytics_shared_key"},
            optional=frozenset({"tags"}),
            immutable=_LOCATED,
            secret_inputs=frozenset({"log_analytics_shared_key"}),
            outputs=frozenset({"id", "name", "default_domain"}),
            arm_type="Microsoft.App/managedEnvironments",
            api_version="2023-05-01",
        ),
        ResourceType(
            name=CONTAINER_APP,
            required=_LOCATED
            | {
                "environment_id",
                "identity_id",
                "registry_server",
                "image",
                "cpu",
                "memory",
                "target_port",
                "external_ingress",
                "min_replicas",
                "max_replicas",
                "env",
                "secrets",
            },
            optional=frozenset({"tags"}),
            immutable=_LOCATED | {"environment_id"},
            secret_inputs=frozenset({"secrets"}),
            outputs=frozenset({"id", "name", "fqdn", "url", "latest_revision_name"}),
            arm_type="Microsoft.App/containerApps",
            api_version="2023-05-01",
        ),
    )
}


def get_resource_type(name: str) -> ResourceType:
    """Get the schema for a resource type.

    Raises:
        ValidationError: If the type is not supported.
    """
    resource_type = RESOURCE_TYPES.get(name)
    if resource_type is None:
        raise ValidationError(
            f"Unsupported resource type '{name}'. Supported: {sorted(RESOURCE_TYPES)}"
        )
    return resource_type


def output_names(declaration: ResourceDeclaration) -> set[str]:
    """Outputs a declaration exposes: its type's outputs plus derived ones."""
    return set(get_resource_type(declaration.type).outputs) | set(declaration.outputs)


def sensitive_output_names(declaration: ResourceDeclaration) -> set[str]:
    """Outputs of a declaration that are always sensitive."""
    return set(get_resource_type(declaration.type).sensitive_outputs)


def sensitive_outputs(graph: ResourceGraph) -> set[tuple[str, str]]:
    """Compute every (node id, output) pair that is sensitive.

    Type-level sensitive outputs are the sources. A derived output is
    sensitive when it embeds a sensitive literal or references a sensitive
    output, so the tag follows every downstream reference.

    Requires an acyclic graph.
    """
    found: set[tuple[str, str]] = set()
    for node_id in graph.topological_sort():
        node = graph.nodes[node_id]
        for name in sensitive_output_names(node):
            found.add((node_id, name))
        for name, value in node.outputs.items():
            if is_sensitive(value) or any(
                (ref.node_id, ref.output) in found for ref in iter_references(value)
            ):
                found.add((node_id, name))
    return found
