"""Pydantic model for the environment configuration set.

The configuration set is the only external input to the resource graph.
These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Cross-field consistency checks (ingress port, cpu/memory, replicas)
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Annotated, Any

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

# The port the application is documented to listen on (injected as PORT)
APP_LISTEN_PORT = 8030

# Container Apps consumption profile bounds
MIN_APP_CPU = 0.25
MAX_APP_CPU = 4.0
MAX_REPLICAS = 300

VALID_ACR_SKUS = frozenset({"Basic", "Standard", "Premium"})
VALID_PG_VERSIONS = frozenset({"12", "13", "14", "15", "16"})
VALID_PG_STORAGE_MB = frozenset({
    32768, 65536, 131072, 262144, 524288, 1048576,
    2097152, 4193280, 4194304, 8388608, 16777216, 33553408,
})
PG_SKU_TIERS: dict[str, str] = {
    "B": "Burstable",
    "GP": "GeneralPurpose",
    "MO": "MemoryOptimized",
}
RESERVED_PG_LOGINS = frozenset({
    "azure_superuser", "azure_pg_admin", "admin", "administrator",
    "root", "guest", "public",
})
MIN_SUPPLIED_PASSWORD_LENGTH = 16

VALID_PREFIX_PATTERN = r"^[a-z][a-z0-9]{1,11}$"
VALID_ENVIRONMENT_PATTERN = r"^[a-z][a-z0-9]{0,9}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_MEMORY_PATTERN = r"^(\d+(\.\d+)?)Gi$"
VALID_DATABASE_NAME_PATTERN = r"^[a-zA-Z_][a-zA-Z0-9_]{0,62}$"


class StackConfig(BaseModel):
    """Environment configuration set for the application stack."""

    model_config = {"extra": "forbid", "frozen": True}

    prefix: Annotated[str, Field(pattern=VALID_PREFIX_PATTERN)]
    environment: Annotated[str, Field(pattern=VALID_ENVIRONMENT_PATTERN)] = "dev"
    location: str = "westeurope"

    # Hosted container
    image_name: str | None = None
    image_tag: Annotated[str, Field(min_length=1, max_length=128)] = "latest"
    app_cpu: Annotated[float, Field(ge=MIN_APP_CPU, le=MAX_APP_CPU)] = 0.5
    app_memory: str = "1Gi"
    min_replicas: Annotated[int, Field(ge=0, le=MAX_REPLICAS)] = 1
    max_replicas: Annotated[int, Field(ge=1, le=MAX_REPLICAS)] = 3
    app_port: Annotated[int, Field(ge=1, le=65535)] = APP_LISTEN_PORT

    # Logging workspace and registry
    log_retention_days: Annotated[int, Field(ge=30, le=730)] = 30
    acr_sku: str = "Basic"

    # Managed database
    pg_sku: str = "B_Standard_B1ms"
    pg_version: str = "16"
    pg_storage_mb: int = 32768
    pg_admin_login: Annotated[str, Field(min_length=1, max_length=63)] = "pgadmin"
    pg_admin_password: SecretStr | None = None
    pg_database_name: Annotated[str, Field(pattern=VALID_DATABASE_NAME_PATTERN)] = "app"
    pg_public_access: bool = True

    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("location")
    @classmethod
    def normalize_location(cls, v: str) -> str:
        normalized = v.replace(" ", "").lower()
        if not re.match(VALID_LOCATION_PATTERN, normalized):
            raise ValueError(f"location must be a valid Azure region: {v}")
        return normalized

    @field_validator("app_cpu")
    @classmethod
    def validate_cpu_step(cls, v: float) -> float:
        if not (v * 4).is_integer():
            raise ValueError("app_cpu must be a multiple of 0.25")
        return v

    @field_validator("app_memory")
    @classmethod
    def validate_memory_format(cls, v: str) -> str:
        if not re.match(VALID_MEMORY_PATTERN, v):
            raise ValueError(f"app_memory must look like '1Gi' or '0.5Gi': {v}")
        return v

    @field_validator("app_port")
    @classmethod
    def validate_app_port(cls, v: int) -> int:
        if v != APP_LISTEN_PORT:
            raise ValueError(
                f"app_port {v} does not match the port the application listens on "
                f"({APP_LISTEN_PORT})"
            )
        return v

    @field_validator("acr_sku")
    @classmethod
    def validate_acr_sku(cls, v: str) -> str:
        if v not in VALID_ACR_SKUS:
            raise ValueError(f"acr_sku must be one of {sorted(VALID_ACR_SKUS)}")
        return v

    @field_validator("pg_sku")
    @classmethod
    def validate_pg_sku(cls, v: str) -> str:
        tier_prefix, _, size = v.partition("_")
        if tier_prefix not in PG_SKU_TIERS or not size:
            raise ValueError(
                f"pg_sku must start with one of {sorted(PG_SKU_TIERS)} followed by '_': {v}"
            )
        return v

    @field_validator("pg_version", mode="before")
    @classmethod
    def validate_pg_version(cls, v: Any) -> str:
        v = str(v)
        if v not in VALID_PG_VERSIONS:
            raise ValueError(f"pg_version must be one of {sorted(VALID_PG_VERSIONS)}")
        return v

    @field_validator("pg_storage_mb")
    @classmethod
    def validate_pg_storage(cls, v: int) -> int:
        if v not in VALID_PG_STORAGE_MB:
            raise ValueError(f"pg_storage_mb must be one of {sorted(VALID_PG_STORAGE_MB)}")
        return v

    @field_validator("pg_admin_login")
    @classmethod
    def validate_pg_admin_login(cls, v: str) -> str:
        if v.lower() in RESERVED_PG_LOGINS or v.lower().startswith("pg_"):
            raise ValueError(f"pg_admin_login '{v}' is reserved")
        return v

    @field_validator("pg_admin_password")
    @classmethod
    def validate_pg_admin_password(cls, v: SecretStr | None) -> SecretStr | None:
        if v is None:
            return v
        password = v.get_secret_value()
        if len(password) < MIN_SUPPLIED_PASSWORD_LENGTH:
            raise ValueError(
                f"pg_admin_password must be at least {MIN_SUPPLIED_PASSWORD_LENGTH} characters"
            )
        classes = sum((
            any(c.islower() for c in password),
            any(c.isupper() for c in password),
            any(c.isdigit() for c in password),
            any(not c.isalnum() for c in password),
        ))
        if classes < 3:
            raise ValueError(
                "pg_admin_password must mix at least 3 of: lowercase, uppercase, "
                "digits, symbols"
            )
        return v

    @model_validator(mode="after")
    def validate_consistency(self) -> StackConfig:
        if self.min_replicas > self.max_replicas:
            raise ValueError(
                f"min_replicas ({self.min_replicas}) must not exceed "
                f"max_replicas ({self.max_replicas})"
            )
        memory_gi = float(re.match(VALID_MEMORY_PATTERN, self.app_memory).group(1))
        if memory_gi != self.app_cpu * 2:
            raise ValueError(
                f"app_memory must be twice app_cpu in Gi "
                f"(app_cpu={self.app_cpu} requires {self.app_cpu * 2:g}Gi)"
            )
        return self

    @property
    def pg_sku_tier(self) -> str:
        """Flexible server tier derived from the SKU prefix."""
        return PG_SKU_TIERS[self.pg_sku.partition("_")[0]]

    @property
    def resolved_image_name(self) -> str:
        return self.image_name or self.prefix

    @property
    def resource_tags(self) -> dict[str, str]:
        """Tags applied to every taggable resource; the managed tags win."""
        return {
            **self.tags,
            "environment": self.environment,
            "managed-by": "azp",
        }


def parse_stack_config(data: Mapping[str, Any], source: str = "configuration") -> StackConfig:
    """Validate raw configuration data into a StackConfig.

    Args:
        data: Raw key/value configuration.
        source: Where the data came from, for error messages.

    Raises:
        ValidationError: If any value is missing, out of range or inconsistent.
    """
    try:
        return StackConfig.model_validate(dict(data))
    except PydanticValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"]) or "(root)"
            errors.append(f"{loc}: {error['msg']}")
        raise ValidationError(f"Validation failed for {source}", errors) from e
