"""Graph builder: environment configuration set -> resource graph.

Construction is pure. Nothing here talks to Azure; every check runs before
the first remote call.

Graph (dependency order, leaves first):

    resource_group
    ├── log_analytics ──────────────┐
    ├── container_registry ──┐      │
    ├── managed_identity ────┤      │
    │                        └── acr_pull
    ├── postgres_password (only when no password is supplied)
    ├── postgres_server
    │   ├── postgres_firewall (only with public access)
    │   └── postgres_database ──> connection_string (sensitive)
    ├── container_environment <─────┘
    └── container_app <── environment, registry, identity, acr_pull, database
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

from .errors import ValidationError
from .graph import ResourceDeclaration, ResourceGraph
from .models import APP_LISTEN_PORT, StackConfig, parse_stack_config
from .resources import (
    CONTAINER_APP,
    CONTAINER_APP_ENVIRONMENT,
    CONTAINER_REGISTRY,
    LOG_ANALYTICS_WORKSPACE,
    POSTGRES_DATABASE,
    POSTGRES_FIREWALL_RULE,
    POSTGRES_SERVER,
    RANDOM_PASSWORD,
    RESOURCE_GROUP,
    RESOURCE_TYPES,
    ROLE_ASSIGNMENT,
    USER_ASSIGNED_IDENTITY,
    get_resource_type,
    output_names,
    sensitive_outputs,
)
from .security import ACR_PULL_ROLE_ID, GENERATED_PASSWORD_LENGTH, validate_access_grants
from .values import Reference, Sensitive, Template

logger = logging.getLogger(__name__)

# Name of the container app secret holding the connection string
DB_URL_SECRET_NAME = "db-url"

CONNECTION_STRING_FORMAT = (
    "postgresql://{login}:{password}@{host}:5432/{database}?sslmode=require"
)

# Stack-level outputs
OUTPUT_REGISTRY_LOGIN_SERVER = "registry_login_server"
OUTPUT_APP_URL = "app_url"
OUTPUT_DATABASE_CONNECTION_STRING = "database_connection_string"


def resource_names(config: StackConfig) -> dict[str, str]:
    """Azure resource names derived from prefix and environment."""
    base = f"{config.prefix}-{config.environment}"
    return {
        "resource_group": f"rg-{base}",
        "log_analytics": f"log-{base}",
        # Registry names are alphanumeric only
        "container_registry": f"{config.prefix}{config.environment}acr",
        "managed_identity": f"id-{base}",
        "postgres_server": f"psql-{base}",
        "container_environment": f"cae-{base}",
        "container_app": f"ca-{base}",
    }


def build_graph(config: StackConfig | Mapping[str, Any]) -> ResourceGraph:
    """Build the resource graph for a configuration set.

    Args:
        config: A validated StackConfig or raw key/value configuration.

    Returns:
        Validated, acyclic resource graph.

    Raises:
        ValidationError: If the configuration or resulting graph is invalid.
        GraphCycleError: If the graph contains a cycle.
    """
    if not isinstance(config, StackConfig):
        config = parse_stack_config(config)

    # model_construct() skips pydantic validators
    _check_config(config)

    names = resource_names(config)
    tags = config.resource_tags
    graph = ResourceGraph()
    rg_name = Reference("resource_group", "name")

    graph.add(ResourceDeclaration(
        id="resource_group",
        type=RESOURCE_GROUP,
        inputs={"name": names["resource_group"], "location": config.location, "tags": tags},
    ))

    graph.add(ResourceDeclaration(
        id="log_analytics",
        type=LOG_ANALYTICS_WORKSPACE,
        inputs={
            "name": names["log_analytics"],
            "resource_group": rg_name,
            "location": config.location,
            "sku": "PerGB2018",
            "retention_days": config.log_retention_days,
            "tags": tags,
        },
    ))

    graph.add(ResourceDeclaration(
        id="container_registry",
        type=CONTAINER_REGISTRY,
        inputs={
            "name": names["container_registry"],
            "resource_group": rg_name,
            "location": config.location,
            "sku": config.acr_sku,
            "admin_user_enabled": False,
            "tags": tags,
        },
    ))

    graph.add(ResourceDeclaration(
        id="managed_identity",
        type=USER_ASSIGNED_IDENTITY,
        inputs={
            "name": names["managed_identity"],
            "resource_group": rg_name,
            "location": config.location,
            "tags": tags,
        },
    ))

    graph.add(ResourceDeclaration(
        id="acr_pull",
        type=ROLE_ASSIGNMENT,
        inputs={
            "scope": Reference("container_registry", "id"),
            "role_definition_id": ACR_PULL_ROLE_ID,
            "principal_id": Reference("managed_identity", "principal_id"),
            "principal_type": "ServicePrincipal",
        },
    ))

    server_password, url_password = _admin_password(config, graph)

    graph.add(ResourceDeclaration(
        id="postgres_server",
        type=POSTGRES_SERVER,
        inputs={
            "name": names["postgres_server"],
            "resource_group": rg_name,
            "location": config.location,
            "sku_name": config.pg_sku,
            "sku_tier": config.pg_sku_tier,
            "version": config.pg_version,
            "storage_mb": config.pg_storage_mb,
            "administrator_login": config.pg_admin_login,
            "administrator_password": server_password,
            "public_network_access": config.pg_public_access,
            "tags": tags,
        },
    ))

    if config.pg_public_access:
        graph.add(ResourceDeclaration(
            id="postgres_firewall",
            type=POSTGRES_FIREWALL_RULE,
            inputs={
                "name": "AllowAllAzureServicesAndResourcesWithinAzureIps",
                "server_id": Reference("postgres_server", "id"),
                "start_ip_address": "0.0.0.0",
                "end_ip_address": "0.0.0.0",
            },
        ))

    graph.add(ResourceDeclaration(
        id="postgres_database",
        type=POSTGRES_DATABASE,
        inputs={
            "name": config.pg_database_name,
            "server_id": Reference("postgres_server", "id"),
            "charset": "UTF8",
            "collation": "en_US.utf8",
        },
        outputs={
            "connection_string": Template(
                CONNECTION_STRING_FORMAT,
                {
                    "login": config.pg_admin_login,
                    "password": url_password,
                    "host": Reference("postgres_server", "fqdn"),
                    "database": config.pg_database_name,
                },
            ),
        },
        depends_on=["postgres_firewall"] if config.pg_public_access else [],
    ))

    graph.add(ResourceDeclaration(
        id="container_environment",
        type=CONTAINER_APP_ENVIRONMENT,
        inputs={
            "name": names["container_environment"],
            "resource_group": rg_name,
            "location": config.location,
            "log_analytics_customer_id": Reference("log_analytics", "customer_id"),
            "log_analytics_shared_key": Reference("log_analytics", "primary_shared_key"),
            "tags": tags,
        },
    ))

    registry_server = Reference("container_registry", "login_server")
    graph.add(ResourceDeclaration(
        id="container_app",
        type=CONTAINER_APP,
        inputs={
            "name": names["container_app"],
            "resource_group": rg_name,
            "location": config.location,
            "environment_id": Reference("container_environment", "id"),
            "identity_id": Reference("managed_identity", "id"),
            "registry_server": registry_server,
            "image": Template(
                "{server}/{image}:{tag}",
                {
                    "server": registry_server,
                    "image": config.resolved_image_name,
                    "tag": config.image_tag,
                },
            ),
            "cpu": config.app_cpu,
            "memory": config.app_memory,
            "target_port": config.app_port,
            "external_ingress": True,
            "min_replicas": config.min_replicas,
            "max_replicas": config.max_replicas,
            "secrets": [
                {
                    "name": DB_URL_SECRET_NAME,
                    "value": Reference("postgres_database", "connection_string"),
                },
            ],
            "env": [
                {"name": "DB_URL", "secret_ref": DB_URL_SECRET_NAME},
                {"name": "PORT", "value": str(APP_LISTEN_PORT)},
            ],
            "tags": tags,
        },
        # The image pull needs the grant in place
        depends_on=["acr_pull"],
    ))

    graph.add_output(OUTPUT_REGISTRY_LOGIN_SERVER, registry_server)
    graph.add_output(OUTPUT_APP_URL, Reference("container_app", "url"))
    graph.add_output(
        OUTPUT_DATABASE_CONNECTION_STRING,
        Reference("postgres_database", "connection_string"),
    )

    validate_graph(graph)

    logger.info(
        "Built resource graph",
        extra={
            "prefix": config.prefix,
            "environment": config.environment,
            "node_count": len(graph),
            "generated_password": config.pg_admin_password is None,
        },
    )
    return graph


def validate_graph(graph: ResourceGraph) -> None:
    """Run every structural and security check on a graph.

    Raises:
        ValidationError: If schemas, references, or grants are invalid.
        GraphCycleError: If the graph contains a cycle.
    """
    unknown = [
        f"{node.id}: unsupported resource type '{node.type}'"
        for node in graph.nodes.values()
        if node.type not in RESOURCE_TYPES
    ]
    if unknown:
        raise ValidationError("Resource declarations are invalid", unknown)

    graph.validate(output_names=output_names)

    sensitive = sensitive_outputs(graph)
    errors: list[str] = []
    for node in graph.nodes.values():
        errors.extend(get_resource_type(node.type).check(node, sensitive))
    if errors:
        raise ValidationError("Resource declarations are invalid", errors)

    validate_access_grants(graph)


def _admin_password(config: StackConfig, graph: ResourceGraph) -> tuple[Any, Any]:
    """Return (server input, connection string argument) for the admin password.

    Without a supplied password a random.password node is added; its output
    is URL-safe by construction. A supplied password is percent-encoded for
    the connection string.
    """
    if config.pg_admin_password is None:
        graph.add(ResourceDeclaration(
            id="postgres_password",
            type=RANDOM_PASSWORD,
            inputs={"length": GENERATED_PASSWORD_LENGTH},
        ))
        password = Reference("postgres_password", "result")
        return password, password

    secret = config.pg_admin_password.get_secret_value()
    return Sensitive(secret), Sensitive(quote(secret, safe=""))


def _check_config(config: StackConfig) -> None:
    errors: list[str] = []
    if config.app_port != APP_LISTEN_PORT:
        errors.append(
            f"app_port: {config.app_port} does not match the application listen "
            f"port {APP_LISTEN_PORT}"
        )
    if config.min_replicas < 0:
        errors.append("min_replicas: must not be negative")
    if config.max_replicas < 1:
        errors.append("max_replicas: must be at least 1")
    if config.min_replicas > config.max_replicas:
        errors.append("min_replicas: must not exceed max_replicas")
    if errors:
        raise ValidationError("Validation failed for configuration", errors)
