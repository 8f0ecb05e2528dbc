"""Azure API Mock for integration testing.

In-memory stand-ins for the ARM and Resource Graph clients used by the
resource kinds, with fault injection for eventual-consistency scenarios.

Usage:
    from azure_mock import MockResourceClient, MockResourceState

    state = MockResourceState()
    client = MockResourceClient(state, SUBSCRIPTION_ID)
    registry = KindRegistry.builtin(client, SUBSCRIPTION_ID)

    state.inject_error("read", 429, "TooManyRequests", times=2)
    state.set_read_lag(3)
"""

from .context import MockAzureContext
from .credential import MockCredential
from .graph import MockResourceGraphClient
from .resources import (
    MockLROPoller,
    MockResource,
    MockResourceClient,
    MockResourceState,
    http_error,
)

__all__ = [
    "MockAzureContext",
    "MockCredential",
    "MockLROPoller",
    "MockResource",
    "MockResourceClient",
    "MockResourceGraphClient",
    "MockResourceState",
    "http_error",
]
