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

from azure_mock import MockResourceClient, MockResourceState  # noqa: E402

from lifecycle.config import Config  # noqa: E402
from lifecycle.kinds.registry import KindRegistry  # noqa: E402
from lifecycle.reconciler import Reconciler  # noqa: E402
from lifecycle.retry import RetryPolicy  # noqa: E402

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"

# Millisecond backoff so eventual-consistency scenarios finish quickly
FAST_POLICY = RetryPolicy(
    initial_delay=0.001, multiplier=1.0, max_delay=0.001, max_wait=2.0, jitter=0.0
)
FAST_SETTLE = RetryPolicy(
    initial_delay=0.001, multiplier=1.0, max_delay=0.001, max_wait=0.5, jitter=0.0
)


def rg_id(name: str) -> str:
    return f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{name}"


@pytest.fixture
def config() -> Config:
    """Valid test configuration."""
    return Config(subscription_id=SUBSCRIPTION_ID, max_concurrency=4)


@pytest.fixture
def state() -> MockResourceState:
    """Fresh in-memory ARM state."""
    return MockResourceState()


@pytest.fixture
def client(state: MockResourceState) -> MockResourceClient:
    """Mock ARM client over the shared state."""
    return MockResourceClient(state, SUBSCRIPTION_ID)


@pytest.fixture
def registry(client: MockResourceClient) -> KindRegistry:
    """Built-in kinds with a fast destroy settle policy."""
    return KindRegistry.builtin(client, SUBSCRIPTION_ID, destroy_settle=FAST_SETTLE)


@pytest.fixture
def reconciler(registry: KindRegistry, config: Config) -> Reconciler:
    """Reconciler with fast polling."""
    return Reconciler(registry, config, policy=FAST_POLICY)
