"""Configuration file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml

from .config import MAX_CONFIG_FILE_SIZE_BYTES
from .errors import ValidationError
from .models import StackConfig, parse_stack_config

logger = logging.getLogger(__name__)

CONFIG_API_VERSION = "azp/v1"
CONFIG_KIND = "Stack"


def parse_overrides(assignments: Iterable[str]) -> dict[str, Any]:
    """Parse `key=value` CLI overrides.

    Values are parsed as YAML scalars, so `min_replicas=2` is an int,
    `pg_public_access=false` a bool and `pg_admin_password=null` clears a
    value. Later assignments win.

    Raises:
        ValidationError: If an assignment is malformed.
    """
    overrides: dict[str, Any] = {}
    errors: list[str] = []

    for assignment in assignments:
        key, sep, raw = assignment.partition("=")
        key = key.strip()
        if not sep or not key:
            errors.append(f"override must look like key=value: {assignment!r}")
            continue
        try:
            overrides[key] = yaml.safe_load(raw) if raw.strip() else ""
        except yaml.YAMLError as e:
            errors.append(f"{key}: cannot parse value {raw!r}: {e}")

    if errors:
        raise ValidationError("Invalid configuration overrides", errors)
    return overrides


def read_config_file(path: Path) -> dict[str, Any]:
    """Read a configuration file into a raw mapping.

    Supports both a flat mapping and a wrapper of the form:

        apiVersion: azp/v1
        kind: Stack
        spec: {...}

    Raises:
        ValidationError: If the file is missing, too large or malformed.
    """
    if not path.exists():
        raise ValidationError(f"Configuration file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ValidationError(f"Failed to stat configuration file {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ValidationError(
            f"Configuration file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"Failed to read configuration file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ValidationError(f"Configuration file must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        if raw_data["apiVersion"] != CONFIG_API_VERSION:
            raise ValidationError(
                f"Unsupported apiVersion '{raw_data['apiVersion']}' in {path}; "
                f"expected {CONFIG_API_VERSION}"
            )
        if raw_data.get("kind", CONFIG_KIND) != CONFIG_KIND:
            raise ValidationError(f"Unsupported kind '{raw_data.get('kind')}' in {path}")
        spec_data = raw_data["spec"] or {}
        if not isinstance(spec_data, dict):
            raise ValidationError(f"Spec section must be a mapping: {path}")
        return spec_data

    return raw_data


def load_stack_config(
    path: Path | None,
    overrides: Mapping[str, Any] | None = None,
) -> StackConfig:
    """Load and validate the stack configuration.

    Args:
        path: Configuration file, or None to use overrides and defaults only.
        overrides: Values that replace file values (from --var).

    Returns:
        Validated StackConfig.

    Raises:
        ValidationError: If the file or any value is invalid.
    """
    data: dict[str, Any] = read_config_file(path) if path is not None else {}
    overrides = dict(overrides or {})

    # An explicit null override removes the key so its default applies
    for key, value in overrides.items():
        if value is None:
            data.pop(key, None)
        else:
            data[key] = value

    source = str(path) if path is not None else "command line"
    config = parse_stack_config(data, source)

    logger.info(
        "Loaded stack configuration",
        extra={
            "source": source,
            "prefix": config.prefix,
            "environment": config.environment,
            "overrides": sorted(overrides),
        },
    )
    return config
