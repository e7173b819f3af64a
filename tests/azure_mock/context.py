"""Azure Mock Context for integration testing.

Provides a context manager that patches the Azure SDK clients used by the
provisioner with in-memory mock implementations.
"""

from __future__ import annotations

from typing import Any
from unittest import mock

from .credential import MockTokenCredential
from .resources import MockLogAnalyticsClient, MockResourceClient, MockResourceState


class MockAzureContext:
    """Context manager for Azure API mocking in tests.

    Patches:
    - provisioner.providers.ResourceManagementClient -> MockResourceClient
    - provisioner.providers.LogAnalyticsManagementClient -> MockLogAnalyticsClient
    - provisioner.security.ManagedIdentityCredential / DefaultAzureCredential
      -> MockTokenCredential

    Usage:
        with MockAzureContext() as ctx:
            providers = build_providers(get_credential(), SUBSCRIPTION_ID)
            ...
            assert ctx.state.resource_count == 10
    """

    def __init__(self) -> None:
        self._state: MockResourceState | None = None
        self._credentials: list[MockTokenCredential] = []
        self._patches: list[Any] = []

    @property
    def state(self) -> MockResourceState:
        """Get the mock resource state.

        Raises:
            RuntimeError: If accessed outside of context.
        """
        if self._state is None:
            raise RuntimeError("MockAzureContext must be used as a context manager")
        return self._state

    @property
    def credentials(self) -> list[MockTokenCredential]:
        """Credentials constructed while the context was active."""
        return list(self._credentials)

    def __enter__(self) -> MockAzureContext:
        """Enter the mock context, applying patches."""
        state = MockResourceState()
        self._state = state

        def managed_identity(**kwargs: Any) -> MockTokenCredential:
            credential = MockTokenCredential("managed_identity", **kwargs)
            self._credentials.append(credential)
            return credential

        def default_chain(**kwargs: Any) -> MockTokenCredential:
            credential = MockTokenCredential(
                "default", client_id=kwargs.pop("managed_identity_client_id", None), **kwargs
            )
            self._credentials.append(credential)
            return credential

        def resource_client(credential: Any, subscription_id: str) -> MockResourceClient:
            return MockResourceClient(state=state, subscription_id=subscription_id)

        def log_analytics_client(credential: Any, subscription_id: str) -> MockLogAnalyticsClient:
            return MockLogAnalyticsClient(state=state, subscription_id=subscription_id)

        self._patches = [
            mock.patch("provisioner.security.ManagedIdentityCredential", side_effect=managed_identity),
            mock.patch("provisioner.security.DefaultAzureCredential", side_effect=default_chain),
            mock.patch("provisioner.providers.ResourceManagementClient", side_effect=resource_client),
            mock.patch(
                "provisioner.providers.LogAnalyticsManagementClient",
                side_effect=log_analytics_client,
            ),
        ]
        for patch in self._patches:
            patch.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit the mock context, removing patches."""
        for patch in reversed(self._patches):
            patch.stop()
        self._patches.clear()
