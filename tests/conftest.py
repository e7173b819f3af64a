"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from provisioner.config import Config, StateBackendKind  # noqa: E402

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"

# Meets the supplied-password policy and is URL-unsafe on purpose
SUPPLIED_PASSWORD = "S3cure/Pass:word#42"


@pytest.fixture
def stack_data() -> dict:
    """Minimal valid configuration set."""
    return {"prefix": "shop", "environment": "dev", "location": "westeurope"}


@pytest.fixture
def runtime_config(tmp_path: Path) -> Config:
    """Runtime configuration with a local state file and no retry delays."""
    return Config(
        subscription_id=SUBSCRIPTION_ID,
        state_backend=StateBackendKind.LOCAL,
        state_path=tmp_path / "azp.state.json",
        lock_owner="tester@ci",
        max_provider_retries=2,
        retry_backoff_base_seconds=0,
        retry_backoff_max_seconds=0,
        operation_timeout_seconds=30,
        max_parallelism=4,
    )


@pytest.fixture(autouse=True)
def _clean_credential_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer credentials in the environment out of tests."""
    for name in (
        "AZURE_CLIENT_SECRET",
        "AZURE_CLIENT_CERTIFICATE_PATH",
        "AZURE_CLIENT_CERTIFICATE_PASSWORD",
        "AZURE_USERNAME",
        "AZURE_PASSWORD",
    ):
        monkeypatch.delenv(name, raising=False)
