"""Runtime configuration with validation.

Runtime settings (state backend, retry budget, timeouts, parallelism) come
from environment variables. The stack itself is configured separately via
the configuration file (see models.StackConfig).
"""

from __future__ import annotations

import getpass
import os
import re
import socket
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class StateBackendKind(str, Enum):
    """Supported state snapshot backends."""

    LOCAL = "local"
    AZURE_BLOB = "azureblob"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_STATE_PATH = "azp.state.json"
DEFAULT_STATE_CONTAINER = "azp-state"
DEFAULT_STATE_BLOB = "azp.state.json"

# Blob leases must be between 15 and 60 seconds
DEFAULT_LOCK_LEASE_SECONDS = 60
MIN_LOCK_LEASE_SECONDS = 15
MAX_LOCK_LEASE_SECONDS = 60

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800
MAX_OPERATION_TIMEOUT_SECONDS = 7200

MAX_PROVIDER_RETRIES = 3
MAX_PROVIDER_RETRIES_LIMIT = 10
RETRY_BACKOFF_BASE_SECONDS = 5
RETRY_BACKOFF_MAX_SECONDS = 120

DEFAULT_MAX_PARALLELISM = 4
MAX_PARALLELISM_LIMIT = 16

# Security constraints - enforced limits to prevent abuse
MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max configuration file
MAX_STATE_FILE_SIZE_BYTES = 16 * 1024 * 1024  # 16MB max state snapshot

VALID_LOG_FORMATS = ("json", "text")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_CONTAINER_PATTERN = r"^[a-z0-9](?!.*--)[a-z0-9-]{1,61}[a-z0-9]$"


def default_lock_owner() -> str:
    """Identity recorded on the state lock: user@host."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


@dataclass(frozen=True)
class Config:
    """Provisioner runtime configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Azure
    subscription_id: str | None = None
    client_id: str | None = None
    use_managed_identity: bool = False

    # State snapshot
    state_backend: StateBackendKind = StateBackendKind.LOCAL
    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))
    state_account_url: str | None = None
    state_container: str = DEFAULT_STATE_CONTAINER
    state_blob: str = DEFAULT_STATE_BLOB
    lock_lease_seconds: int = DEFAULT_LOCK_LEASE_SECONDS
    lock_owner: str = field(default_factory=default_lock_owner)

    # Execution
    max_provider_retries: int = MAX_PROVIDER_RETRIES
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    max_parallelism: int = DEFAULT_MAX_PARALLELISM

    # Logging
    log_format: str = "json"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.state_backend == StateBackendKind.AZURE_BLOB:
            if not self.state_account_url:
                errors.append("AZP_STATE_ACCOUNT_URL is required when state backend is azureblob")
            elif not self.state_account_url.startswith("https://"):
                errors.append("AZP_STATE_ACCOUNT_URL must be an https:// URL")
            if not re.match(VALID_CONTAINER_PATTERN, self.state_container):
                errors.append(f"AZP_STATE_CONTAINER is not a valid container name: {self.state_container}")
            if not self.state_blob:
                errors.append("AZP_STATE_BLOB must not be empty")

        if not (MIN_LOCK_LEASE_SECONDS <= self.lock_lease_seconds <= MAX_LOCK_LEASE_SECONDS):
            errors.append(
                f"AZP_LOCK_LEASE_SECONDS must be between {MIN_LOCK_LEASE_SECONDS} "
                f"and {MAX_LOCK_LEASE_SECONDS} seconds"
            )

        if not self.lock_owner:
            errors.append("AZP_LOCK_OWNER must not be empty")

        if not (0 <= self.max_provider_retries <= MAX_PROVIDER_RETRIES_LIMIT):
            errors.append(
                f"AZP_MAX_PROVIDER_RETRIES must be between 0 and {MAX_PROVIDER_RETRIES_LIMIT}"
            )

        if self.retry_backoff_base_seconds < 0:
            errors.append("AZP_RETRY_BACKOFF_BASE_SECONDS must not be negative")
        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("AZP_RETRY_BACKOFF_MAX_SECONDS must be >= the base backoff")

        if not (1 <= self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS):
            errors.append(
                f"AZP_OPERATION_TIMEOUT_SECONDS must be between 1 and {MAX_OPERATION_TIMEOUT_SECONDS}"
            )

        if not (1 <= self.max_parallelism <= MAX_PARALLELISM_LIMIT):
            errors.append(f"AZP_MAX_PARALLELISM must be between 1 and {MAX_PARALLELISM_LIMIT}")

        if self.log_format not in VALID_LOG_FORMATS:
            errors.append(f"AZP_LOG_FORMAT must be one of {list(VALID_LOG_FORMATS)}")
        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"AZP_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def require_subscription(self) -> str:
        """Return the subscription id or fail for commands that touch Azure."""
        if not self.subscription_id:
            raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required for this command")
        return self.subscription_id

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
            AZP_USE_MANAGED_IDENTITY: Authenticate with managed identity only (default: false)
            AZP_STATE_BACKEND: local or azureblob (default: local)
            AZP_STATE_PATH: Local snapshot path (default: azp.state.json)
            AZP_STATE_ACCOUNT_URL: Storage account URL for azureblob
            AZP_STATE_CONTAINER: Blob container (default: azp-state)
            AZP_STATE_BLOB: Blob name (default: azp.state.json)
            AZP_LOCK_LEASE_SECONDS: Lock lease duration (default: 60)
            AZP_LOCK_OWNER: Identity recorded on the lock (default: user@host)
            AZP_MAX_PROVIDER_RETRIES: Retries for transient errors (default: 3)
            AZP_RETRY_BACKOFF_BASE_SECONDS: Backoff base (default: 5)
            AZP_RETRY_BACKOFF_MAX_SECONDS: Backoff cap (default: 120)
            AZP_OPERATION_TIMEOUT_SECONDS: Per-operation timeout (default: 1800)
            AZP_MAX_PARALLELISM: Concurrent operations (default: 4)
            AZP_LOG_FORMAT: json or text (default: json)
            AZP_LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_backend(value: str | None) -> StateBackendKind:
            if not value:
                return StateBackendKind.LOCAL
            try:
                return StateBackendKind(value)
            except ValueError as e:
                valid = [s.value for s in StateBackendKind]
                raise ConfigurationError(f"AZP_STATE_BACKEND must be one of {valid}: {value}") from e

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            use_managed_identity=get_bool("AZP_USE_MANAGED_IDENTITY", False),
            state_backend=get_backend(os.environ.get("AZP_STATE_BACKEND")),
            state_path=Path(os.environ.get("AZP_STATE_PATH", DEFAULT_STATE_PATH)),
            state_account_url=os.environ.get("AZP_STATE_ACCOUNT_URL") or None,
            state_container=os.environ.get("AZP_STATE_CONTAINER", DEFAULT_STATE_CONTAINER),
            state_blob=os.environ.get("AZP_STATE_BLOB", DEFAULT_STATE_BLOB),
            lock_lease_seconds=get_int("AZP_LOCK_LEASE_SECONDS", DEFAULT_LOCK_LEASE_SECONDS),
            lock_owner=os.environ.get("AZP_LOCK_OWNER") or default_lock_owner(),
            max_provider_retries=get_int("AZP_MAX_PROVIDER_RETRIES", MAX_PROVIDER_RETRIES),
            retry_backoff_base_seconds=get_float(
                "AZP_RETRY_BACKOFF_BASE_SECONDS", RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "AZP_RETRY_BACKOFF_MAX_SECONDS", RETRY_BACKOFF_MAX_SECONDS
            ),
            operation_timeout_seconds=get_int(
                "AZP_OPERATION_TIMEOUT_SECONDS", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            max_parallelism=get_int("AZP_MAX_PARALLELISM", DEFAULT_MAX_PARALLELISM),
            log_format=os.environ.get("AZP_LOG_FORMAT", "json").lower(),
            log_level=os.environ.get("AZP_LOG_LEVEL", "INFO").upper(),
        )
