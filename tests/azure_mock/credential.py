"""Mock Azure token credential for secretless testing.

Stands in for both ManagedIdentityCredential and DefaultAzureCredential and
records how it was constructed, so tests can assert which chain the
provisioner selected.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

# Token validity duration
TOKEN_VALIDITY_HOURS = 1


@dataclass
class MockAccessToken:
    """Mimics azure.core.credentials.AccessToken."""

    token: str
    expires_on: int


class MockTokenCredential:
    """Returns fake tokens without Azure connectivity.

    Args:
        kind: "managed_identity" or "default".
        client_id: Optional user-assigned identity client ID.
    """

    def __init__(self, kind: str = "managed_identity", client_id: str | None = None, **kwargs: Any) -> None:
        self.kind = kind
        self.client_id = client_id
        self.init_kwargs = kwargs
        self._get_token_calls: list[tuple[str, ...]] = []

    def get_token(self, *scopes: str, **kwargs: Any) -> MockAccessToken:
        self._get_token_calls.append(scopes)
        expires_on = datetime.now(UTC) + timedelta(hours=TOKEN_VALIDITY_HOURS)
        identity_part = self.client_id or "system-assigned"
        return MockAccessToken(
            token=f"mock-token-{len(self._get_token_calls)}-{identity_part}",
            expires_on=int(expires_on.timestamp()),
        )

    def close(self) -> None:
        pass
