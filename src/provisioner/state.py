"""State snapshot and pluggable state backends with exclusive locking.

The snapshot is the only persistent entity: node id -> realized attributes,
plus the resolved stack outputs. It is an explicit, versioned document:
every write increments `serial`, and `lineage` identifies one snapshot
history across writes.

Only the holder of the lock may write. Locks are leases with an owner and
an expiry:
- LocalStateBackend: a lock file created with O_EXCL next to the snapshot
- BlobStateBackend: an Azure Blob lease on the snapshot blob
A run that cannot acquire the lock fails fast with LockContentionError.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.storage.blob import BlobLeaseClient, BlobServiceClient

from .config import MAX_STATE_FILE_SIZE_BYTES, Config, StateBackendKind
from .errors import LockContentionError, StateError
from .security import get_credential
from .values import decode, encode

if TYPE_CHECKING:
    from azure.core.credentials import TokenCredential

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class ResourceState:
    """Realized attributes of one applied node."""

    node_id: str
    type: str
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    provider_id: str | None = None
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "type": self.type,
            "provider_id": self.provider_id,
            "inputs": encode(self.inputs),
            "outputs": encode(self.outputs),
            "depends_on": list(self.depends_on),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, node_id: str, data: dict[str, Any]) -> ResourceState:
        """Create from dictionary."""
        return cls(
            node_id=node_id,
            type=data["type"],
            provider_id=data.get("provider_id"),
            inputs=decode(data.get("inputs", {})),
            outputs=decode(data.get("outputs", {})),
            depends_on=list(data.get("depends_on", [])),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass
class StateSnapshot:
    """Versioned snapshot of realized infrastructure."""

    lineage: str = field(default_factory=lambda: str(uuid.uuid4()))
    serial: int = 0
    format_version: int = STATE_FORMAT_VERSION
    resources: dict[str, ResourceState] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    def get(self, node_id: str) -> ResourceState | None:
        return self.resources.get(node_id)

    def put(self, resource: ResourceState) -> None:
        self.resources[resource.node_id] = resource

    def remove(self, node_id: str) -> ResourceState | None:
        return self.resources.pop(node_id, None)

    def is_empty(self) -> bool:
        return not self.resources

    def dependents_of(self, node_id: str) -> list[str]:
        """Recorded nodes that depend (transitively) on node_id."""
        found: list[str] = []
        frontier = [node_id]
        while frontier:
            current = frontier.pop()
            for resource in self.resources.values():
                if current in resource.depends_on and resource.node_id not in found:
                    found.append(resource.node_id)
                    frontier.append(resource.node_id)
        return found

    def destroy_order(self) -> list[str]:
        """Recorded nodes ordered dependents-first, using recorded edges.

        Ties keep insertion order reversed, so teardown mirrors creation.
        """
        remaining = list(reversed(list(self.resources)))
        order: list[str] = []
        while remaining:
            for node_id in remaining:
                blocked = any(
                    node_id in self.resources[other].depends_on
                    for other in remaining
                    if other != node_id
                )
                if not blocked:
                    order.append(node_id)
                    remaining.remove(node_id)
                    break
            else:
                # Recorded edges form a cycle; fall back to reverse insertion order
                order.extend(remaining)
                break
        return order

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": self.format_version,
            "lineage": self.lineage,
            "serial": self.serial,
            "resources": {node_id: r.to_dict() for node_id, r in self.resources.items()},
            "outputs": encode(self.outputs),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateSnapshot:
        """Create from dictionary.

        Raises:
            StateError: If the document is malformed or from a newer format.
        """
        try:
            version = int(data.get("format_version", 0))
            if version > STATE_FORMAT_VERSION:
                raise StateError(
                    f"State format version {version} is newer than supported "
                    f"version {STATE_FORMAT_VERSION}"
                )
            return cls(
                lineage=data["lineage"],
                serial=int(data["serial"]),
                format_version=STATE_FORMAT_VERSION,
                resources={
                    node_id: ResourceState.from_dict(node_id, r)
                    for node_id, r in data.get("resources", {}).items()
                },
                outputs=decode(data.get("outputs", {})),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StateError(f"Malformed state snapshot: {e}") from e

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, content: str | bytes) -> StateSnapshot:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateError(f"State snapshot is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise StateError("State snapshot must be a JSON object")
        return cls.from_dict(data)


@dataclass
class StateLock:
    """Exclusive lease on a state snapshot."""

    lock_id: str
    owner: str
    operation: str
    created_at: datetime = field(default_factory=_now)
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _now()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "lock_id": self.lock_id,
            "owner": self.owner,
            "operation": self.operation,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateLock:
        expires_at = data.get("expires_at")
        return cls(
            lock_id=data["lock_id"],
            owner=data["owner"],
            operation=data.get("operation", "unknown"),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )


class StateBackend(ABC):
    """Read/write access to a persisted snapshot, guarded by a lock."""

    @abstractmethod
    def read(self) -> StateSnapshot:
        """Read the snapshot. Returns an empty snapshot if none exists."""

    @abstractmethod
    def write(self, snapshot: StateSnapshot, lock: StateLock) -> None:
        """Persist the snapshot. The caller must hold `lock`."""

    @abstractmethod
    def acquire_lock(self, owner: str, operation: str, lease_seconds: int) -> StateLock:
        """Acquire the exclusive lock or raise LockContentionError."""

    @abstractmethod
    def renew_lock(self, lock: StateLock, lease_seconds: int) -> StateLock:
        """Extend the lease of a held lock."""

    @abstractmethod
    def release_lock(self, lock: StateLock) -> None:
        """Release a held lock."""

    @abstractmethod
    def current_lock(self) -> StateLock | None:
        """Return the lock currently held, if any."""

    @abstractmethod
    def force_unlock(self, lock_id: str) -> None:
        """Remove a lock left behind by a crashed run."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable location of the snapshot."""


# =============================================================================
# Local file backend
# =============================================================================


class LocalStateBackend(StateBackend):
    """Snapshot in a local JSON file, locked by an adjacent lock file.

    Writes go to a temporary file that atomically replaces the snapshot, so
    the snapshot path always holds a complete document. The previous
    snapshot is copied to `<path>.backup` first.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock_path = self._path.with_name(self._path.name + ".lock")
        self._backup_path = self._path.with_name(self._path.name + ".backup")
        self._takeover_path = self._path.with_name(self._path.name + ".lock.takeover")

    @property
    def location(self) -> str:
        return str(self._path)

    def read(self) -> StateSnapshot:
        if not self._path.exists():
            return StateSnapshot()

        try:
            size = self._path.stat().st_size
        except OSError as e:
            raise StateError(f"Failed to stat state file {self._path}: {e}") from e
        if size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes"
            )

        try:
            content = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateError(f"Failed to read state file {self._path}: {e}") from e
        return StateSnapshot.from_json(content)

    def write(self, snapshot: StateSnapshot, lock: StateLock) -> None:
        held = self.current_lock()
        if held is None or held.lock_id != lock.lock_id:
            raise StateError(
                f"Refusing to write {self._path}: lock {lock.lock_id} is no longer held"
            )

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f".{self._path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(snapshot.to_json())
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            if self._path.exists():
                shutil.copy2(self._path, self._backup_path)
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise StateError(f"Failed to write state file {self._path}: {e}") from e
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        logger.debug(
            "State written",
            extra={"path": str(self._path), "serial": snapshot.serial},
        )

    def acquire_lock(self, owner: str, operation: str, lease_seconds: int) -> StateLock:
        lock = StateLock(
            lock_id=str(uuid.uuid4()),
            owner=owner,
            operation=operation,
            expires_at=_now() + timedelta(seconds=lease_seconds),
        )
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            existing = self.current_lock()
            if existing is not None and not existing.is_expired():
                raise LockContentionError(
                    f"State {self._path} is locked",
                    holder=existing.owner,
                    lock_id=existing.lock_id,
                    expires_at=existing.expires_at,
                ) from None
            self._take_over(existing, lock)
        else:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(lock.to_dict(), f)

        logger.info(
            "State lock acquired",
            extra={"path": str(self._path), "lock_id": lock.lock_id, "operation": operation},
        )
        return lock

    def renew_lock(self, lock: StateLock, lease_seconds: int) -> StateLock:
        held = self.current_lock()
        if held is None or held.lock_id != lock.lock_id:
            raise LockContentionError(f"Lock {lock.lock_id} on {self._path} was lost")
        lock.expires_at = _now() + timedelta(seconds=lease_seconds)
        self._write_lock_file(lock)
        return lock

    def release_lock(self, lock: StateLock) -> None:
        held = self.current_lock()
        if held is None or held.lock_id != lock.lock_id:
            logger.warning(
                "State lock already released or taken over",
                extra={"path": str(self._path), "lock_id": lock.lock_id},
            )
            return
        self._lock_path.unlink(missing_ok=True)
        logger.info("State lock released", extra={"path": str(self._path)})

    def current_lock(self) -> StateLock | None:
        try:
            content = self._lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateError(f"Failed to read lock file {self._lock_path}: {e}") from e
        try:
            return StateLock.from_dict(json.loads(content))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            # Partially written lock file; treat as expired
            return StateLock(
                lock_id="unreadable",
                owner="unknown",
                operation="unknown",
                expires_at=datetime.min.replace(tzinfo=UTC),
            )

    def force_unlock(self, lock_id: str) -> None:
        held = self.current_lock()
        if held is None:
            raise StateError(f"State {self._path} is not locked")
        if held.lock_id != lock_id:
            raise StateError(f"Lock id mismatch: state is locked with {held.lock_id}")
        self._lock_path.unlink(missing_ok=True)
        logger.warning(
            "State lock forcibly removed",
            extra={"path": str(self._path), "lock_id": lock_id, "owner": held.owner},
        )

    def _take_over(self, expired: StateLock | None, lock: StateLock) -> None:
        """Replace an expired lock, one contender at a time.

        The takeover marker is created with O_EXCL; whoever holds it checks the
        lock again before replacing it, so two runs cannot both take over.
        """
        try:
            fd = os.open(self._takeover_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            raise LockContentionError(
                f"State {self._path} is locked: another run is taking over the expired lock"
                f" (remove {self._takeover_path} if no run is active)",
                holder=expired.owner if expired else None,
            ) from None
        os.close(fd)

        try:
            current = self.current_lock()
            if current is None or not current.is_expired():
                # Released or taken over since it was read
                raise LockContentionError(
                    f"State {self._path} is locked",
                    holder=current.owner if current else None,
                    lock_id=current.lock_id if current else None,
                    expires_at=current.expires_at if current else None,
                )
            logger.warning(
                "Taking over expired state lock",
                extra={"path": str(self._path), "previous_owner": current.owner},
            )
            self._write_lock_file(lock)
        finally:
            self._takeover_path.unlink(missing_ok=True)

    def _write_lock_file(self, lock: StateLock) -> None:
        tmp_path = self._lock_path.with_name(f".{self._lock_path.name}.{uuid.uuid4().hex}.tmp")
        tmp_path.write_text(json.dumps(lock.to_dict()), encoding="utf-8")
        os.replace(tmp_path, self._lock_path)


# =============================================================================
# Azure Blob backend
# =============================================================================


class BlobStateBackend(StateBackend):
    """Snapshot in an Azure Storage blob, locked with a blob lease.

    Lock details (owner, operation, lock id) are stored as blob metadata so
    contending runs can report who holds the lease.
    """

    def __init__(
        self,
        account_url: str,
        container: str,
        blob_name: str,
        credential: TokenCredential | None = None,
        *,
        service_client: BlobServiceClient | None = None,
    ) -> None:
        self._account_url = account_url
        self._container = container
        self._blob_name = blob_name
        self._service_client = service_client or BlobServiceClient(
            account_url=account_url, credential=credential
        )
        self._container_client = self._service_client.get_container_client(container)
        self._blob_client = self._container_client.get_blob_client(blob_name)
        self._leases: dict[str, BlobLeaseClient] = {}

    @property
    def location(self) -> str:
        return f"{self._account_url.rstrip('/')}/{self._container}/{self._blob_name}"

    def read(self) -> StateSnapshot:
        try:
            content = self._blob_client.download_blob().readall()
        except ResourceNotFoundError:
            return StateSnapshot()
        except AzureError as e:
            raise StateError(f"Failed to read state blob {self.location}: {e}") from e

        if len(content) > MAX_STATE_FILE_SIZE_BYTES:
            raise StateError(
                f"State blob exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes"
            )
        if not content:
            # Placeholder created to hold the lease
            return StateSnapshot()
        return StateSnapshot.from_json(content)

    def write(self, snapshot: StateSnapshot, lock: StateLock) -> None:
        lease = self._lease_for(lock)
        try:
            self._blob_client.upload_blob(
                snapshot.to_json().encode("utf-8"),
                overwrite=True,
                lease=lease,
                metadata=self._lock_metadata(lock),
            )
        except AzureError as e:
            raise StateError(f"Failed to write state blob {self.location}: {e}") from e

        logger.debug(
            "State written",
            extra={"location": self.location, "serial": snapshot.serial},
        )

    def acquire_lock(self, owner: str, operation: str, lease_seconds: int) -> StateLock:
        self._ensure_blob()
        lease = BlobLeaseClient(self._blob_client)

        try:
            lease.acquire(lease_duration=lease_seconds)
        except HttpResponseError as e:
            if e.status_code != 409:
                raise StateError(f"Failed to lock state blob {self.location}: {e}") from e
            holder = self.current_lock()
            raise LockContentionError(
                f"State {self.location} is locked",
                holder=holder.owner if holder else "unknown",
                lock_id=holder.lock_id if holder else None,
            ) from e

        lock = StateLock(
            lock_id=lease.id,
            owner=owner,
            operation=operation,
            expires_at=_now() + timedelta(seconds=lease_seconds),
        )
        self._leases[lock.lock_id] = lease

        try:
            self._blob_client.set_blob_metadata(self._lock_metadata(lock), lease=lease)
        except AzureError as e:
            lease.release()
            del self._leases[lock.lock_id]
            raise StateError(f"Failed to record lock on {self.location}: {e}") from e

        logger.info(
            "State lock acquired",
            extra={"location": self.location, "lock_id": lock.lock_id, "operation": operation},
        )
        return lock

    def renew_lock(self, lock: StateLock, lease_seconds: int) -> StateLock:
        lease = self._lease_for(lock)
        try:
            lease.renew()
        except HttpResponseError as e:
            raise LockContentionError(f"Lock {lock.lock_id} on {self.location} was lost") from e
        lock.expires_at = _now() + timedelta(seconds=lease_seconds)
        return lock

    def release_lock(self, lock: StateLock) -> None:
        lease = self._leases.pop(lock.lock_id, None)
        if lease is None:
            return
        try:
            self._blob_client.set_blob_metadata({}, lease=lease)
            lease.release()
        except HttpResponseError as e:
            logger.warning(
                "Failed to release state lock; it expires with its lease",
                extra={"location": self.location, "lock_id": lock.lock_id, "error": str(e)},
            )
            return
        logger.info("State lock released", extra={"location": self.location})

    def current_lock(self) -> StateLock | None:
        try:
            properties = self._blob_client.get_blob_properties()
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise StateError(f"Failed to read state blob properties: {e}") from e

        if properties.lease.state != "leased":
            return None
        metadata = properties.metadata or {}
        return StateLock(
            lock_id=metadata.get("azp_lock_id", "unknown"),
            owner=metadata.get("azp_lock_owner", "unknown"),
            operation=metadata.get("azp_lock_operation", "unknown"),
            created_at=_parse_time(metadata.get("azp_lock_created")) or _now(),
        )

    def force_unlock(self, lock_id: str) -> None:
        held = self.current_lock()
        if held is None:
            raise StateError(f"State {self.location} is not locked")
        if held.lock_id != lock_id:
            raise StateError(f"Lock id mismatch: state is locked with {held.lock_id}")
        BlobLeaseClient(self._blob_client).break_lease(lease_break_period=0)
        logger.warning(
            "State lock forcibly removed",
            extra={"location": self.location, "lock_id": lock_id, "owner": held.owner},
        )

    def _ensure_blob(self) -> None:
        """Create the container and an empty placeholder blob to lease."""
        try:
            self._container_client.create_container()
        except ResourceExistsError:
            pass
        try:
            self._blob_client.upload_blob(b"", overwrite=False)
        except ResourceExistsError:
            pass
        except HttpResponseError as e:
            # 412 when the blob exists and is leased
            if e.status_code not in (409, 412):
                raise StateError(f"Failed to create state blob {self.location}: {e}") from e

    def _lease_for(self, lock: StateLock) -> BlobLeaseClient:
        lease = self._leases.get(lock.lock_id)
        if lease is None:
            raise StateError(f"Lock {lock.lock_id} is not held by this process")
        return lease

    @staticmethod
    def _lock_metadata(lock: StateLock) -> dict[str, str]:
        return {
            "azp_lock_id": lock.lock_id,
            "azp_lock_owner": lock.owner,
            "azp_lock_operation": lock.operation,
            "azp_lock_created": lock.created_at.isoformat(),
        }


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def create_backend(config: Config, credential: TokenCredential | None = None) -> StateBackend:
    """Create the state backend selected by the runtime configuration.

    Args:
        config: Runtime configuration.
        credential: Token credential for the blob backend. Obtained through
            security.get_credential() when not given.
    """
    if config.state_backend == StateBackendKind.AZURE_BLOB:
        assert config.state_account_url is not None
        if credential is None:
            credential = get_credential(
                config.client_id, use_managed_identity=config.use_managed_identity
            )
        return BlobStateBackend(
            config.state_account_url,
            config.state_container,
            config.state_blob,
            credential,
        )
    return LocalStateBackend(config.state_path)
