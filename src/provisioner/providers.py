"""Resource providers: realize nodes against Azure or locally.

A provider turns resolved inputs into a realized resource and reports its
outputs. Calls are synchronous and block until the remote operation has
reached a terminal state; the engine runs them in an executor with a
timeout.

Azure resources are managed through the generic ARM resource API
(`resources.begin_create_or_update_by_id`) with a pinned API version per
resource type, so one code path covers every type.

Error mapping at this boundary:
- 408, 429, 5xx, conflicting concurrent operations, transport errors
  -> TransientError (retried by the engine)
- everything else -> ProviderError with node id, attribute and provider message
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.loganalytics import LogAnalyticsManagementClient
from azure.mgmt.resource.resources import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    GenericResource,
    Identity,
    IdentityUserAssignedIdentitiesValue,
    ResourceGroup,
    Sku,
)

from . import resources as rt
from .errors import ProviderError, TransientError
from .resources import RANDOM_PASSWORD, RESOURCE_GROUP, RESOURCE_TYPES, ResourceType
from .security import generate_password
from .values import Sensitive, reveal

if TYPE_CHECKING:
    from azure.core.credentials import TokenCredential

    from .state import ResourceState

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# 409 codes ARM returns while another operation holds the resource
TRANSIENT_CONFLICT_CODES = frozenset({
    "AnotherOperationInProgress",
    "OperationInProgress",
    "ConflictingServerOperation",
    "ServerBusy",
    "RetryableError",
})

ROLE_DEFINITION_ID_FORMAT = (
    "/subscriptions/{subscription_id}/providers/Microsoft.Authorization/roleDefinitions/{guid}"
)


@dataclass
class ProviderResult:
    """Outcome of a create or update."""

    provider_id: str | None
    outputs: dict[str, Any] = field(default_factory=dict)


class Provider(ABC):
    """Realizes nodes of one or more resource types."""

    @abstractmethod
    def create(
        self, node_id: str, resource_type: ResourceType, inputs: dict[str, Any]
    ) -> ProviderResult:
        """Create the resource. Inputs are fully resolved."""

    @abstractmethod
    def update(
        self,
        node_id: str,
        resource_type: ResourceType,
        inputs: dict[str, Any],
        current: ResourceState,
    ) -> ProviderResult:
        """Update mutable attributes in place."""

    @abstractmethod
    def delete(self, node_id: str, resource_type: ResourceType, current: ResourceState) -> None:
        """Delete the resource. Deleting a missing resource is not an error."""

    @abstractmethod
    def read(
        self, node_id: str, resource_type: ResourceType, current: ResourceState
    ) -> dict[str, Any] | None:
        """Return realized outputs, or None if the resource no longer exists."""


class RandomPasswordProvider(Provider):
    """Generates passwords locally. The snapshot is the only record."""

    def create(
        self, node_id: str, resource_type: ResourceType, inputs: dict[str, Any]
    ) -> ProviderResult:
        logger.info("Generating password", extra={"node_id": node_id})
        return ProviderResult(
            provider_id=None,
            outputs={"result": Sensitive(generate_password(int(inputs["length"])))},
        )

    def update(
        self,
        node_id: str,
        resource_type: ResourceType,
        inputs: dict[str, Any],
        current: ResourceState,
    ) -> ProviderResult:
        # Only `length` is an input and it forces replacement
        return ProviderResult(provider_id=None, outputs=dict(current.outputs))

    def delete(self, node_id: str, resource_type: ResourceType, current: ResourceState) -> None:
        return None

    def read(
        self, node_id: str, resource_type: ResourceType, current: ResourceState
    ) -> dict[str, Any] | None:
        return dict(current.outputs)


class AzureProvider(Provider):
    """Realizes Azure resources through Azure Resource Manager.

    Args:
        credential: Token credential (see security.get_credential).
        subscription_id: Target subscription.
    """

    def __init__(self, credential: TokenCredential, subscription_id: str) -> None:
        self._subscription_id = subscription_id
        self._client = ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )
        self._log_analytics = LogAnalyticsManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )

    @property
    def subscription_id(self) -> str:
        return self._subscription_id

    # =========================================================================
    # Provider interface
    # =========================================================================

    def create(
        self, node_id: str, resource_type: ResourceType, inputs: dict[str, Any]
    ) -> ProviderResult:
        return self._put(node_id, resource_type, inputs, "create")

    def update(
        self,
        node_id: str,
        resource_type: ResourceType,
        inputs: dict[str, Any],
        current: ResourceState,
    ) -> ProviderResult:
        # ARM PUT is a full, idempotent replace of the resource model
        return self._put(node_id, resource_type, inputs, "update")

    def delete(self, node_id: str, resource_type: ResourceType, current: ResourceState) -> None:
        inputs = reveal(current.inputs)
        resource_id = current.provider_id or self.resource_id(resource_type, inputs)

        logger.info(
            "Deleting resource",
            extra={"node_id": node_id, "resource_id": resource_id},
        )
        try:
            with _translate_errors(node_id, "delete"):
                if resource_type.name == RESOURCE_GROUP:
                    poller = self._client.resource_groups.begin_delete(inputs["name"])
                else:
                    poller = self._client.resources.begin_delete_by_id(
                        resource_id, resource_type.api_version
                    )
                poller.result()
        except _NotFound:
            logger.warning(
                "Resource already deleted",
                extra={"node_id": node_id, "resource_id": resource_id},
            )

    def read(
        self, node_id: str, resource_type: ResourceType, current: ResourceState
    ) -> dict[str, Any] | None:
        inputs = reveal(current.inputs)
        resource_id = current.provider_id or self.resource_id(resource_type, inputs)

        try:
            with _translate_errors(node_id, "read"):
                if resource_type.name == RESOURCE_GROUP:
                    group = self._client.resource_groups.get(inputs["name"])
                    return self._resource_group_outputs(group)
                resource = self._client.resources.get_by_id(
                    resource_id, resource_type.api_version
                )
                return self._outputs(node_id, resource_type, resource_id, inputs, resource)
        except _NotFound:
            return None

    # =========================================================================
    # Resource ids and bodies
    # =========================================================================

    def resource_id(self, resource_type: ResourceType, inputs: dict[str, Any]) -> str:
        """Compute the ARM id a node's resource is created under."""
        subscription = f"/subscriptions/{self._subscription_id}"
        match resource_type.name:
            case rt.RESOURCE_GROUP:
                return f"{subscription}/resourceGroups/{inputs['name']}"
            case rt.ROLE_ASSIGNMENT:
                name = role_assignment_name(
                    inputs["scope"], inputs["role_definition_id"], inputs["principal_id"]
                )
                return (
                    f"{inputs['scope']}/providers/Microsoft.Authorization/"
                    f"roleAssignments/{name}"
                )
            case rt.POSTGRES_FIREWALL_RULE:
                return f"{inputs['server_id']}/firewallRules/{inputs['name']}"
            case rt.POSTGRES_DATABASE:
                return f"{inputs['server_id']}/databases/{inputs['name']}"
            case _:
                return (
                    f"{subscription}/resourceGroups/{inputs['resource_group']}"
                    f"/providers/{resource_type.arm_type}/{inputs['name']}"
                )

    def build_body(self, resource_type: ResourceType, inputs: dict[str, Any]) -> GenericResource:
        """Build the ARM resource model for a node's revealed inputs."""
        tags = inputs.get("tags") or None

        match resource_type.name:
            case rt.LOG_ANALYTICS_WORKSPACE:
                properties: dict[str, Any] = {"sku": {"name": inputs["sku"]}}
                if "retention_days" in inputs:
                    properties["retentionInDays"] = inputs["retention_days"]
                return GenericResource(location=inputs["location"], tags=tags, properties=properties)

            case rt.CONTAINER_REGISTRY:
                return GenericResource(
                    location=inputs["location"],
                    tags=tags,
                    sku=Sku(name=inputs["sku"]),
                    properties={"adminUserEnabled": bool(inputs.get("admin_user_enabled", False))},
                )

            case rt.USER_ASSIGNED_IDENTITY:
                return GenericResource(location=inputs["location"], tags=tags, properties={})

            case rt.ROLE_ASSIGNMENT:
                role_id = inputs["role_definition_id"]
                if not role_id.startswith("/"):
                    role_id = ROLE_DEFINITION_ID_FORMAT.format(
                        subscription_id=self._subscription_id, guid=role_id
                    )
                return GenericResource(properties={
                    "roleDefinitionId": role_id,
                    "principalId": inputs["principal_id"],
                    "principalType": inputs["principal_type"],
                })

            case rt.POSTGRES_SERVER:
                return GenericResource(
                    location=inputs["location"],
                    tags=tags,
                    sku=Sku(name=inputs["sku_name"], tier=inputs["sku_tier"]),
                    properties={
                        "administratorLogin": inputs["administrator_login"],
                        "administratorLoginPassword": inputs["administrator_password"],
                        "version": inputs["version"],
                        "storage": {"storageSizeGB": int(inputs["storage_mb"]) // 1024},
                        "network": {
                            "publicNetworkAccess": (
                                "Enabled" if inputs["public_network_access"] else "Disabled"
                            ),
                        },
                    },
                )

            case rt.POSTGRES_FIREWALL_RULE:
                return GenericResource(properties={
                    "startIpAddress": inputs["start_ip_address"],
                    "endIpAddress": inputs["end_ip_address"],
                })

            case rt.POSTGRES_DATABASE:
                return GenericResource(properties={
                    "charset": inputs["charset"],
                    "collation": inputs["collation"],
                })

            case rt.CONTAINER_APP_ENVIRONMENT:
                return GenericResource(
                    location=inputs["location"],
                    tags=tags,
                    properties={
                        "appLogsConfiguration": {
                            "destination": "log-analytics",
                            "logAnalyticsConfiguration": {
                                "customerId": inputs["log_analytics_customer_id"],
                                "sharedKey": inputs["log_analytics_shared_key"],
                            },
                        },
                    },
                )

            case rt.CONTAINER_APP:
                return GenericResource(
                    location=inputs["location"],
                    tags=tags,
                    identity=Identity(
                        type="UserAssigned",
                        user_assigned_identities={
                            inputs["identity_id"]: IdentityUserAssignedIdentitiesValue(),
                        },
                    ),
                    properties=_container_app_properties(inputs),
                )

            case _:
                raise ProviderError(
                    f"No request body defined for resource type {resource_type.name}"
                )

    # =========================================================================
    # Internals
    # =========================================================================

    def _put(
        self,
        node_id: str,
        resource_type: ResourceType,
        inputs: dict[str, Any],
        action: str,
    ) -> ProviderResult:
        plain = reveal(inputs)
        resource_id = self.resource_id(resource_type, plain)

        logger.info(
            f"Resource {action}",
            extra={
                "node_id": node_id,
                "resource_type": resource_type.arm_type,
                "resource_id": resource_id,
            },
        )

        try:
            with _translate_errors(node_id, action):
                if resource_type.name == RESOURCE_GROUP:
                    group = self._client.resource_groups.create_or_update(
                        plain["name"],
                        ResourceGroup(location=plain["location"], tags=plain.get("tags") or None),
                    )
                    return ProviderResult(
                        provider_id=group.id or resource_id,
                        outputs=self._resource_group_outputs(group),
                    )

                poller = self._client.resources.begin_create_or_update_by_id(
                    resource_id,
                    resource_type.api_version,
                    self.build_body(resource_type, plain),
                )
                resource = poller.result()
                outputs = self._outputs(node_id, resource_type, resource_id, plain, resource)
        except _NotFound as e:
            # Parent missing (resource group or server deleted out of band)
            raise ProviderError(
                f"Failed to {action} resource: parent resource not found",
                node_id=node_id,
                provider_message=str(e.__cause__),
            ) from e.__cause__

        return ProviderResult(provider_id=outputs["id"], outputs=outputs)

    def _outputs(
        self,
        node_id: str,
        resource_type: ResourceType,
        resource_id: str,
        inputs: dict[str, Any],
        resource: Any,
    ) -> dict[str, Any]:
        properties = getattr(resource, "properties", None) or {}
        outputs: dict[str, Any] = {
            "id": getattr(resource, "id", None) or resource_id,
            "name": getattr(resource, "name", None) or resource_id.rsplit("/", 1)[-1],
        }

        match resource_type.name:
            case rt.LOG_ANALYTICS_WORKSPACE:
                outputs["customer_id"] = properties.get("customerId")
                keys = self._log_analytics.shared_keys.get_shared_keys(
                    inputs["resource_group"], inputs["name"]
                )
                outputs["primary_shared_key"] = Sensitive(keys.primary_shared_key)
            case rt.CONTAINER_REGISTRY:
                outputs["login_server"] = properties.get("loginServer")
            case rt.USER_ASSIGNED_IDENTITY:
                outputs["principal_id"] = properties.get("principalId")
                outputs["client_id"] = properties.get("clientId")
            case rt.POSTGRES_SERVER:
                outputs["fqdn"] = properties.get("fullyQualifiedDomainName")
            case rt.CONTAINER_APP_ENVIRONMENT:
                outputs["default_domain"] = properties.get("defaultDomain")
            case rt.CONTAINER_APP:
                ingress = (properties.get("configuration") or {}).get("ingress") or {}
                fqdn = ingress.get("fqdn")
                outputs["fqdn"] = fqdn
                outputs["url"] = f"https://{fqdn}" if fqdn else None
                outputs["latest_revision_name"] = properties.get("latestRevisionName")

        missing = sorted(name for name in resource_type.outputs if outputs.get(name) is None)
        if missing:
            raise ProviderError(
                "Provider response is missing outputs",
                node_id=node_id,
                attribute=", ".join(missing),
            )
        return outputs

    @staticmethod
    def _resource_group_outputs(group: Any) -> dict[str, Any]:
        return {"id": group.id, "name": group.name, "location": group.location}


def _container_app_properties(inputs: dict[str, Any]) -> dict[str, Any]:
    env = []
    for entry in inputs["env"]:
        if "secret_ref" in entry:
            env.append({"name": entry["name"], "secretRef": entry["secret_ref"]})
        else:
            env.append({"name": entry["name"], "value": entry["value"]})

    return {
        "managedEnvironmentId": inputs["environment_id"],
        "configuration": {
            "activeRevisionsMode": "Single",
            "ingress": {
                "external": bool(inputs["external_ingress"]),
                "targetPort": inputs["target_port"],
                "transport": "auto",
            },
            "registries": [
                {"server": inputs["registry_server"], "identity": inputs["identity_id"]},
            ],
            "secrets": [
                {"name": secret["name"], "value": secret["value"]}
                for secret in inputs["secrets"]
            ],
        },
        "template": {
            "containers": [
                {
                    "name": inputs["name"],
                    "image": inputs["image"],
                    "resources": {"cpu": inputs["cpu"], "memory": inputs["memory"]},
                    "env": env,
                },
            ],
            "scale": {
                "minReplicas": inputs["min_replicas"],
                "maxReplicas": inputs["max_replicas"],
            },
        },
    }


def role_assignment_name(scope: str, role_definition_id: str, principal_id: str) -> str:
    """Deterministic role assignment name, so re-creating it is idempotent."""
    key = f"{scope}|{role_definition_id}|{principal_id}".lower()
    return str(uuid.uuid5(uuid.NAMESPACE_URL, key))


# =============================================================================
# Error mapping
# =============================================================================


class _NotFound(Exception):
    """Internal signal: the target resource does not exist."""

    pass


def is_transient(error: HttpResponseError) -> bool:
    """Check whether an ARM error is worth retrying."""
    if error.status_code in TRANSIENT_STATUS_CODES:
        return True
    if error.status_code == 409:
        code = getattr(error.error, "code", None)
        return code in TRANSIENT_CONFLICT_CODES
    return False


@contextmanager
def _translate_errors(node_id: str, action: str) -> Iterator[None]:
    """Map Azure SDK exceptions onto the provisioner taxonomy."""
    try:
        yield
    except ResourceNotFoundError as e:
        raise _NotFound(str(e)) from e
    except (ServiceRequestError, ServiceResponseError) as e:
        raise TransientError(f"{action} {node_id}: transport error: {e}") from e
    except HttpResponseError as e:
        provider_message = getattr(e.error, "message", None) or e.message or str(e)
        if is_transient(e):
            raise TransientError(
                f"{action} {node_id}: HTTP {e.status_code}: {provider_message}"
            ) from e
        raise ProviderError(
            f"Failed to {action} resource (HTTP {e.status_code})",
            node_id=node_id,
            attribute=getattr(e.error, "target", None),
            provider_message=provider_message,
        ) from e
    except AzureError as e:
        raise ProviderError(
            f"Failed to {action} resource",
            node_id=node_id,
            provider_message=str(e),
        ) from e


def build_providers(credential: TokenCredential, subscription_id: str) -> dict[str, Provider]:
    """Map every supported resource type to its provider."""
    azure = AzureProvider(credential, subscription_id)
    local = RandomPasswordProvider()
    return {
        name: local if name == RANDOM_PASSWORD else azure
        for name in RESOURCE_TYPES
    }

