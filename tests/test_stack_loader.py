"""Tests for configuration file loading and CLI overrides."""

from __future__ import annotations

from pathlib import Path
from unittest import mock

import pytest

from provisioner.errors import ValidationError
from provisioner.stack_loader import load_stack_config, parse_overrides, read_config_file


class TestParseOverrides:
    """Tests for --var key=value parsing."""

    def test_values_are_yaml_typed(self) -> None:
        overrides = parse_overrides([
            "min_replicas=2",
            "pg_public_access=false",
            "app_cpu=0.75",
            "image_tag=v1.2",
            "pg_admin_password=null",
        ])
        assert overrides == {
            "min_replicas": 2,
            "pg_public_access": False,
            "app_cpu": 0.75,
            "image_tag": "v1.2",
            "pg_admin_password": None,
        }

    def test_value_may_contain_equals(self) -> None:
        assert parse_overrides(["image_tag=a=b"]) == {"image_tag": "a=b"}

    def test_later_assignment_wins(self) -> None:
        assert parse_overrides(["environment=dev", "environment=prod"]) == {"environment": "prod"}

    def test_empty_value(self) -> None:
        assert parse_overrides(["image_name="]) == {"image_name": ""}

    @pytest.mark.parametrize("assignment", ["noequals", "=value"])
    def test_malformed_assignment(self, assignment: str) -> None:
        with pytest.raises(ValidationError, match="key=value"):
            parse_overrides([assignment])


class TestReadConfigFile:
    """Tests for reading configuration files."""

    def test_flat_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "azp.yaml"
        path.write_text("prefix: shop\nmin_replicas: 2\n")
        assert read_config_file(path) == {"prefix": "shop", "min_replicas": 2}

    def test_wrapped_document(self, tmp_path: Path) -> None:
        path = tmp_path / "azp.yaml"
        path.write_text("apiVersion: azp/v1\nkind: Stack\nspec:\n  prefix: shop\n")
        assert read_config_file(path) == {"prefix": "shop"}

    def test_unsupported_api_version(self, tmp_path: Path) -> None:
        path = tmp_path / "azp.yaml"
        path.write_text("apiVersion: azp/v9\nspec:\n  prefix: shop\n")
        with pytest.raises(ValidationError, match="Unsupported apiVersion"):
            read_config_file(path)

    def test_unsupported_kind(self, tmp_path: Path) -> None:
        path = tmp_path / "azp.yaml"
        path.write_text("apiVersion: azp/v1\nkind: Cluster\nspec:\n  prefix: shop\n")
        with pytest.raises(ValidationError, match="Unsupported kind"):
            read_config_file(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError, match="not found"):
            read_config_file(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "azp.yaml"
        path.write_text("prefix: [unclosed\n")
        with pytest.raises(ValidationError, match="Invalid YAML"):
            read_config_file(path)

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "azp.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValidationError, match="must contain a YAML mapping"):
            read_config_file(path)

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "azp.yaml"
        path.write_text("")
        assert read_config_file(path) == {}

    def test_file_size_limit(self, tmp_path: Path) -> None:
        path = tmp_path / "azp.yaml"
        path.write_text("prefix: shop\n" + "# padding\n" * 200)
        with mock.patch("provisioner.stack_loader.MAX_CONFIG_FILE_SIZE_BYTES", 100):
            with pytest.raises(ValidationError, match="exceeds maximum size"):
                read_config_file(path)


class TestLoadStackConfig:
    """Tests for loading and validating with overrides."""

    def test_file_and_overrides(self, tmp_path: Path) -> None:
        path = tmp_path / "azp.yaml"
        path.write_text("prefix: shop\nmin_replicas: 1\n")
        config = load_stack_config(path, {"min_replicas": 2, "environment": "prod"})
        assert config.prefix == "shop"
        assert config.min_replicas == 2
        assert config.environment == "prod"

    def test_overrides_only(self) -> None:
        config = load_stack_config(None, {"prefix": "shop"})
        assert config.prefix == "shop"

    def test_null_override_restores_default(self, tmp_path: Path) -> None:
        path = tmp_path / "azp.yaml"
        path.write_text("prefix: shop\npg_admin_password: 'Abcdefgh12345678'\n")
        config = load_stack_config(path, {"pg_admin_password": None})
        assert config.pg_admin_password is None

    def test_invalid_value_names_file(self, tmp_path: Path) -> None:
        path = tmp_path / "azp.yaml"
        path.write_text("prefix: shop\napp_port: 8080\n")
        with pytest.raises(ValidationError) as exc_info:
            load_stack_config(path)
        assert str(path) in str(exc_info.value)
        assert any(e.startswith("app_port") for e in exc_info.value.errors)
