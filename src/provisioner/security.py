"""Security enforcement: secretless access, generated credentials, least privilege.

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET and friends must never be present in the environment
2. Azure access uses token credentials only (managed identity or developer login)
3. Generated database passwords come from a CSPRNG with a pinned policy
4. The hosted container identity only ever receives AcrPull on its own registry
"""

from __future__ import annotations

import logging
import os
import secrets
import string
from typing import TYPE_CHECKING

from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

from .errors import ProvisionerError, ValidationError
from .resources import CONTAINER_REGISTRY, ROLE_ASSIGNMENT
from .values import Reference

if TYPE_CHECKING:
    from azure.core.credentials import TokenCredential

    from .graph import ResourceGraph

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

# Password policy for generated database administrator passwords
GENERATED_PASSWORD_LENGTH = 24
MIN_GENERATED_PASSWORD_LENGTH = 16
# Symbols that need no escaping in a postgres:// URL userinfo
PASSWORD_SYMBOLS = "-_.~!*"
PASSWORD_CHARACTER_CLASSES: tuple[str, ...] = (
    string.ascii_lowercase,
    string.ascii_uppercase,
    string.digits,
    PASSWORD_SYMBOLS,
)

# Built-in role definition ids
ACR_PULL_ROLE_ID = "7f951dda-4ed3-4680-a7ca-43fe172d538d"
PULL_ONLY_ROLE_IDS: frozenset[str] = frozenset({ACR_PULL_ROLE_ID})

# SECURITY: Roles that must never be granted to the hosted container identity
HIGH_PRIVILEGE_ROLE_IDS: dict[str, str] = {
    "8e3af657-a8ff-443c-a75c-2fe8c4bcb635": "Owner",
    "b24988ac-6180-42a0-ab88-20f7382dd24c": "Contributor",
    "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9": "User Access Administrator",
    "8311e382-0749-4cb8-b61a-304f252e45ec": "AcrPush",
    "c2f4ef07-c644-48eb-af81-4b1b4947fb11": "AcrDelete",
}


class SecretlessViolationError(ProvisionerError):
    """Raised when credential secrets are detected in the environment.

    Azure access is refused until they are removed.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "azure_access_blocked",
                },
            )
            raise SecretlessViolationError(
                f"{env_var} is set. Password and service principal secret "
                "authentication is not allowed; use a managed identity or "
                "'az login' instead."
            )


def get_credential(
    client_id: str | None = None,
    *,
    use_managed_identity: bool = False,
) -> TokenCredential:
    """Get a token credential after verifying secretless architecture.

    Args:
        client_id: Client ID of a user-assigned managed identity.
        use_managed_identity: Use ManagedIdentityCredential only (CI runners,
            hosted agents). Otherwise the developer login chain is used.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if use_managed_identity:
        if client_id:
            logger.info(
                "Using user-assigned managed identity",
                extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
            )
            return ManagedIdentityCredential(client_id=client_id)
        logger.info("Using system-assigned managed identity")
        return ManagedIdentityCredential()

    logger.info("Using default Azure credential chain")
    return DefaultAzureCredential(
        exclude_environment_credential=True,
        managed_identity_client_id=client_id,
    )


def generate_password(length: int = GENERATED_PASSWORD_LENGTH) -> str:
    """Generate a database administrator password.

    Uses the `secrets` CSPRNG. The result always contains at least one
    character from every class in PASSWORD_CHARACTER_CLASSES.

    Raises:
        ValueError: If length is below MIN_GENERATED_PASSWORD_LENGTH.
    """
    if length < MIN_GENERATED_PASSWORD_LENGTH:
        raise ValueError(
            f"Generated passwords must be at least {MIN_GENERATED_PASSWORD_LENGTH} characters"
        )

    alphabet = "".join(PASSWORD_CHARACTER_CLASSES)
    chars = [secrets.choice(cls) for cls in PASSWORD_CHARACTER_CLASSES]
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    # First character is always alphanumeric
    if not chars[0].isalnum():
        swap = next(i for i, c in enumerate(chars) if c.isalnum())
        chars[0], chars[swap] = chars[swap], chars[0]
    return "".join(chars)


def validate_access_grants(graph: ResourceGraph) -> None:
    """Check every role assignment in the graph for least privilege.

    A grant must:
    - use a pull-only role (AcrPull), never a high-privilege role
    - be scoped to the `id` of a container registry node it depends on
    - target a service principal (the managed identity)

    Registries must keep their admin user disabled.

    Raises:
        ValidationError: If any grant or registry violates these rules.
    """
    errors: list[str] = []

    for node in graph.nodes.values():
        if node.type == CONTAINER_REGISTRY and node.inputs.get("admin_user_enabled", False):
            errors.append(f"{node.id}: registry admin user must stay disabled")

        if node.type != ROLE_ASSIGNMENT:
            continue

        role_id = node.inputs.get("role_definition_id")
        if not isinstance(role_id, str):
            errors.append(f"{node.id}: role_definition_id must be a literal role id")
        else:
            guid = role_id.rsplit("/", 1)[-1].lower()
            if guid in HIGH_PRIVILEGE_ROLE_IDS:
                errors.append(
                    f"{node.id}: role '{HIGH_PRIVILEGE_ROLE_IDS[guid]}' is a "
                    "high-privilege role and is denied"
                )
            elif guid not in PULL_ONLY_ROLE_IDS:
                errors.append(f"{node.id}: role {guid} is not a pull-only role")

        scope = node.inputs.get("scope")
        if not isinstance(scope, Reference) or scope.output != "id":
            errors.append(f"{node.id}: scope must reference a registry node's id")
        else:
            target = graph.nodes.get(scope.node_id)
            if target is None or target.type != CONTAINER_REGISTRY:
                errors.append(
                    f"{node.id}: scope {scope} is not a container registry; "
                    "grants are limited to a single registry"
                )

        if node.inputs.get("principal_type") != "ServicePrincipal":
            errors.append(f"{node.id}: principal_type must be ServicePrincipal")

    if errors:
        raise ValidationError("Least-privilege check failed", errors)


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event."""
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
