"""Azure API Mock for Integration Testing.

In-memory implementation of the Azure Resource Manager, Log Analytics and
identity APIs the provisioner uses, so providers and the engine can be
exercised end to end without Azure connectivity.

Key Features:
- Resources addressed by ARM id, with parent checks (resource group, server)
- Computed properties filled in on PUT (login server, FQDN, principal id)
- Failure injection by resource id and operation (429, 5xx, 4xx, transport)
- Out-of-band deletion and property changes for drift scenarios

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        providers = build_providers(get_credential(), SUBSCRIPTION_ID)
        ...
        assert ctx.state.resource_count == 10
"""

from .context import MockAzureContext
from .credential import MockTokenCredential
from .resources import (
    MockLogAnalyticsClient,
    MockResource,
    MockResourceClient,
    MockResourceState,
    make_http_error,
)

__all__ = [
    "MockAzureContext",
    "MockLogAnalyticsClient",
    "MockResource",
    "MockResourceClient",
    "MockResourceState",
    "MockTokenCredential",
    "make_http_error",
]
