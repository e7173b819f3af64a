"""Error taxonomy for the provisioner.

Every error that reaches the operator carries enough context to act on:
the node id, the attribute involved and the underlying provider message
where one exists.
"""

from __future__ import annotations

from datetime import datetime


class ProvisionerError(Exception):
    """Base class for all provisioner errors."""

    pass


class ValidationError(ProvisionerError):
    """Raised when the configuration set is missing, malformed or inconsistent.

    Always raised before any remote call is made.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or []
        if self.errors:
            message = message + ":\n  - " + "\n  - ".join(self.errors)
        super().__init__(message)


class GraphCycleError(ProvisionerError):
    """Raised when the resource graph contains a dependency cycle."""

    def __init__(self, members: list[str]) -> None:
        self.members = members
        super().__init__(f"Circular dependency detected involving: {members}")


class ProviderError(ProvisionerError):
    """Raised when a remote provisioning call is rejected.

    Quota, permission and naming conflicts end up here. Not retried.
    """

    def __init__(
        self,
        message: str,
        *,
        node_id: str | None = None,
        attribute: str | None = None,
        provider_message: str | None = None,
    ) -> None:
        self.node_id = node_id
        self.attribute = attribute
        self.provider_message = provider_message
        parts = [message]
        if node_id:
            parts.append(f"node={node_id}")
        if attribute:
            parts.append(f"attribute={attribute}")
        if provider_message:
            parts.append(f"provider: {provider_message}")
        super().__init__(" | ".join(parts))


class TransientError(ProvisionerError):
    """Raised for timeouts and throttling. Retried with bounded backoff."""

    pass


class LockContentionError(ProvisionerError):
    """Raised when the state snapshot is already locked by another run."""

    def __init__(
        self,
        message: str,
        *,
        holder: str | None = None,
        lock_id: str | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        self.holder = holder
        self.lock_id = lock_id
        self.expires_at = expires_at
        if holder:
            message = f"{message} (held by {holder}"
            if lock_id:
                message += f", lock id {lock_id}"
            if expires_at:
                message += f", expires {expires_at.isoformat()}"
            message += ")"
        super().__init__(message)


class StateDriftError(ProvisionerError):
    """A realized resource no longer matches the last-known snapshot.

    Reported as part of a plan. Never corrected without an explicit apply.
    """

    def __init__(self, node_id: str, detail: str) -> None:
        self.node_id = node_id
        self.detail = detail
        super().__init__(f"{node_id}: {detail}")


class StateError(ProvisionerError):
    """Raised when a state snapshot cannot be read, parsed or written."""

    pass


class RunInterruptedError(ProvisionerError):
    """Raised when a run is stopped by a signal.

    Operations already in progress finish and are recorded; nothing new starts.
    """

    pass
