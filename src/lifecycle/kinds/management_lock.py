"""Management locks on a parent scope.

A CanNotDelete lock blocks deletion of the scope it sits on, so locks are
the typical dependent that has to be detached before their parent resource
group can be destroyed.
"""

from __future__ import annotations

from typing import Any

from azure.mgmt.resource.resources.models import GenericResource

from ..schema import FieldMutability, FieldSpec, ResourceSchema
from .base import ResourceKind

LOCK_API_VERSION = "2020-05-01"
LOCK_PROVIDER_SEGMENT = "/providers/Microsoft.Authorization/locks/"


def lock_id(scope: str, name: str) -> str:
    return f"{scope.rstrip('/')}{LOCK_PROVIDER_SEGMENT}{name}"


def split_lock_id(resource_id: str) -> tuple[str, str]:
    """Return (scope, lock name) of a lock resource ID."""
    index = resource_id.lower().rfind(LOCK_PROVIDER_SEGMENT.lower())
    if index < 0:
        raise ValueError(f"Not a management lock ID: {resource_id}")
    return resource_id[:index], resource_id[index + len(LOCK_PROVIDER_SEGMENT) :]


class ManagementLockKind(ResourceKind):
    """A management lock (Microsoft.Authorization/locks)."""

    name = "management_lock"
    provider_namespace = "Microsoft.Authorization"

    _schema = ResourceSchema(
        kind="management_lock",
        fields=(
            FieldSpec("scope", FieldMutability.IMMUTABLE, case_insensitive=True),
            FieldSpec("name", FieldMutability.IMMUTABLE, case_insensitive=True),
            FieldSpec("level"),
            FieldSpec("notes"),
            FieldSpec("id", FieldMutability.COMPUTED),
        ),
    )

    @property
    def schema(self) -> ResourceSchema:
        return self._schema

    def derive_id(self, desired: dict[str, Any]) -> str | None:
        if not desired.get("scope") or not desired.get("name"):
            return None
        return lock_id(desired["scope"], desired["name"])

    def create(self, desired: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        resource_id = lock_id(desired["scope"], desired["name"])
        resource = self._put(resource_id, desired)
        return resource_id, self._to_observed(resource_id, resource)

    def read(self, resource_id: str) -> dict[str, Any] | None:
        resource = self._client.resources.get_by_id(resource_id, LOCK_API_VERSION)
        return self._to_observed(resource_id, resource) if resource is not None else None

    def update(
        self, resource_id: str, desired: dict[str, Any], observed: dict[str, Any]
    ) -> dict[str, Any]:
        resource = self._put(resource_id, {**observed, **desired})
        return self._to_observed(resource_id, resource)

    def delete(self, resource_id: str) -> None:
        self._client.resources.begin_delete_by_id(resource_id, LOCK_API_VERSION, polling=False)

    def _put(self, resource_id: str, desired: dict[str, Any]) -> Any:
        properties = {"level": desired.get("level", "CanNotDelete")}
        if desired.get("notes"):
            properties["notes"] = desired["notes"]
        poller = self._client.resources.begin_create_or_update_by_id(
            resource_id,
            LOCK_API_VERSION,
            GenericResource(properties=properties),
            polling=False,
        )
        return poller.result()

    @staticmethod
    def _to_observed(resource_id: str, resource: Any) -> dict[str, Any]:
        scope, name = split_lock_id(resource_id)
        properties = dict(getattr(resource, "properties", None) or {})
        observed: dict[str, Any] = {
            "id": getattr(resource, "id", None) or resource_id,
            "scope": scope,
            "name": name,
            "level": properties.get("level"),
        }
        if properties.get("notes"):
            observed["notes"] = properties["notes"]
        return observed
