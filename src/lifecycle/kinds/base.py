"""Capability interface implemented once per resource kind.

A kind translates between the opaque desired/observed payloads the core
handles and the Azure SDK calls that manage the resource. Kind methods are
synchronous and raise Azure SDK exceptions unchanged: the dispatcher runs
them off the event loop and translates errors at that single boundary.

Long-running operations are started with polling=False. They return as soon
as ARM accepts the request; waiting for the outcome belongs to the poller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from azure.mgmt.resource import ResourceManagementClient

from ..poller import PollStep
from ..schema import ResourceSchema

SUCCEEDED_STATES = frozenset({"succeeded"})
FAILED_STATES = frozenset({"failed", "canceled"})


def provider_path(resource_id: str) -> tuple[str, str]:
    """Return (namespace, resource type) of a provider-scoped resource ID.

    Example:
        /subscriptions/s/resourceGroups/rg/providers/Microsoft.Storage/storageAccounts/acc
        -> ("Microsoft.Storage", "storageAccounts")
    """
    marker = "/providers/"
    index = resource_id.lower().rfind(marker)
    if index < 0:
        raise ValueError(f"Not a provider-scoped resource ID: {resource_id}")
    rest = [p for p in resource_id[index + len(marker) :].split("/") if p]
    if len(rest) < 3:
        raise ValueError(f"Incomplete provider path in resource ID: {resource_id}")
    namespace = rest[0]
    type_segments = rest[1::2]
    return namespace, "/".join(type_segments)


class ResourceKind(ABC):
    """Per-kind capability interface.

    Attributes:
        name: Kind name used in manifests and logs.
        provider_namespace: Resource provider that must be registered for
            this kind to be usable.
    """

    name: str = ""
    provider_namespace: str = ""

    def __init__(self, client: ResourceManagementClient) -> None:
        """Initialize the kind.

        Args:
            client: Shared ARM client handle, used read-only by the kind.
        """
        self._client = client

    @property
    @abstractmethod
    def schema(self) -> ResourceSchema:
        """Declared schema of this kind."""

    @abstractmethod
    def create(self, desired: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Issue the create call.

        Returns:
            (resource id, observed payload as returned by the create call)
        """

    @abstractmethod
    def read(self, resource_id: str) -> dict[str, Any] | None:
        """Fetch current remote state.

        Returns:
            The observed payload, or None when the API signals absence with
            an empty result instead of a not-found error.
        """

    @abstractmethod
    def update(
        self, resource_id: str, desired: dict[str, Any], observed: dict[str, Any]
    ) -> dict[str, Any]:
        """Apply mutable changes in place and return the new observed payload."""

    @abstractmethod
    def delete(self, resource_id: str) -> None:
        """Issue the delete call. Not-found errors propagate unchanged."""

    def derive_id(self, desired: dict[str, Any]) -> str | None:
        """Remote ID implied by the desired state, for kinds with deterministic IDs."""
        return None

    def prepare(self, resource_id: str, desired: dict[str, Any]) -> None:
        """Take hints for calls on an existing resource from its desired state.

        Local only, never a remote call. The default takes no hints.
        """

    def probe(self) -> str | None:
        """Cheap idempotent read deciding whether this kind can run here.

        Returns:
            None when the kind is usable, otherwise the skip reason.

        Raises:
            AzureError: Probe call failed. The gate inspects the error code
                to tell a structural skip from a failure.
        """
        provider = self._client.providers.get(self.provider_namespace)
        state = getattr(provider, "registration_state", None)
        if (state or "").lower() != "registered":
            return f"Resource provider {self.provider_namespace} is {state or 'not registered'}"
        return None

    def readiness(self, observed: dict[str, Any]) -> PollStep:
        """Classify an observation made after a mutating call."""
        state = observed.get("provisioning_state")
        if state is None or state.lower() in SUCCEEDED_STATES:
            return PollStep.done(observed)
        if state.lower() in FAILED_STATES:
            return PollStep.failed(f"provisioning state is {state}")
        return PollStep.keep_waiting(f"provisioning state is {state}")

    def is_cleared(self, observed: dict[str, Any] | None) -> bool:
        """Empty-state predicate for kinds that cannot be removed remotely."""
        return not observed

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
