"""Resource groups.

Deletion is asynchronous on the ARM side: begin_delete returns while the
group (and everything in it) is still being torn down, and reads keep
succeeding with provisioningState "Deleting" for a while. The schema
therefore declares a destroy settle policy so verification polls.
"""

from __future__ import annotations

from typing import Any

from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import ResourceGroup, ResourceGroupPatchable

from ..poller import PollStep
from ..retry import RetryPolicy
from ..schema import DestroyConvention, FieldMutability, FieldSpec, ResourceSchema
from .base import ResourceKind

DEFAULT_DESTROY_SETTLE = RetryPolicy(initial_delay=5.0, max_delay=30.0, max_wait=1800.0)


def resource_group_name(resource_id: str) -> str:
    """Extract the resource group name from an ARM resource ID."""
    parts = [p for p in resource_id.strip("/").split("/") if p]
    for i, part in enumerate(parts[:-1]):
        if part.lower() == "resourcegroups":
            return parts[i + 1]
    raise ValueError(f"No resource group segment in resource ID: {resource_id}")


class ResourceGroupKind(ResourceKind):
    """A resource group in the configured subscription.

    A desired state without a location is created in default_location.
    """

    name = "resource_group"
    provider_namespace = "Microsoft.Resources"

    def __init__(
        self,
        client: ResourceManagementClient,
        destroy_settle: RetryPolicy | None = DEFAULT_DESTROY_SETTLE,
        subscription_id: str = "",
        default_location: str | None = None,
    ) -> None:
        super().__init__(client)
        self._subscription_id = subscription_id
        self._default_location = default_location
        self._schema = ResourceSchema(
            kind=self.name,
            fields=(
                FieldSpec("name", FieldMutability.IMMUTABLE, case_insensitive=True),
                FieldSpec("location", FieldMutability.IMMUTABLE, case_insensitive=True),
                FieldSpec("tags"),
                FieldSpec("id", FieldMutability.COMPUTED),
                FieldSpec("provisioning_state", FieldMutability.COMPUTED),
            ),
            destroy_convention=DestroyConvention.NOT_FOUND,
            destroy_settle=destroy_settle,
        )

    @property
    def schema(self) -> ResourceSchema:
        return self._schema

    def derive_id(self, desired: dict[str, Any]) -> str | None:
        if not self._subscription_id or not desired.get("name"):
            return None
        return f"/subscriptions/{self._subscription_id}/resourceGroups/{desired['name']}"

    def create(self, desired: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        location = desired.get("location") or self._default_location
        if not location:
            raise ValueError(f"Resource group '{desired['name']}' has no location and no default")
        group = self._client.resource_groups.create_or_update(
            desired["name"],
            ResourceGroup(location=location, tags=desired.get("tags") or None),
        )
        return group.id, self._to_observed(group)

    def read(self, resource_id: str) -> dict[str, Any] | None:
        group = self._client.resource_groups.get(resource_group_name(resource_id))
        return self._to_observed(group) if group is not None else None

    def update(
        self, resource_id: str, desired: dict[str, Any], observed: dict[str, Any]
    ) -> dict[str, Any]:
        group = self._client.resource_groups.update(
            resource_group_name(resource_id),
            ResourceGroupPatchable(tags=desired.get("tags", observed.get("tags")) or {}),
        )
        return self._to_observed(group)

    def delete(self, resource_id: str) -> None:
        self._client.resource_groups.begin_delete(resource_group_name(resource_id), polling=False)

    def readiness(self, observed: dict[str, Any]) -> PollStep:
        if (observed.get("provisioning_state") or "").lower() == "deleting":
            return PollStep.failed("resource group is being deleted")
        return super().readiness(observed)

    @staticmethod
    def _to_observed(group: Any) -> dict[str, Any]:
        properties = getattr(group, "properties", None)
        return {
            "id": group.id,
            "name": group.name,
            "location": (group.location or "").lower(),
            "tags": dict(group.tags or {}),
            "provisioning_state": getattr(properties, "provisioning_state", None),
        }
