"""Arbitrary ARM resources addressed by ID.

The API version is part of the desired state and immutable: ARM does not
store it, so the observed api_version is the one this kind last used for
the resource. For a resource this process has not touched yet, the desired
api_version is used when known, otherwise the provider's latest stable
version is resolved. Versions are cached per ID.
"""

from __future__ import annotations

import logging
from typing import Any

from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from ..schema import FieldMutability, FieldSpec, ResourceSchema
from .base import ResourceKind, provider_path

logger = logging.getLogger(__name__)


class GenericResourceKind(ResourceKind):
    """Any provider-scoped ARM resource."""

    name = "arm_resource"
    provider_namespace = "Microsoft.Resources"

    def __init__(self, client: ResourceManagementClient) -> None:
        super().__init__(client)
        self._api_versions: dict[str, str] = {}
        self._schema = ResourceSchema(
            kind=self.name,
            fields=(
                FieldSpec("resource_id", FieldMutability.IMMUTABLE, case_insensitive=True),
                FieldSpec("api_version", FieldMutability.IMMUTABLE),
                FieldSpec("location", FieldMutability.IMMUTABLE, case_insensitive=True),
                FieldSpec("properties", partial=True),
                FieldSpec("tags"),
                FieldSpec("provisioning_state", FieldMutability.COMPUTED),
            ),
        )

    @property
    def schema(self) -> ResourceSchema:
        return self._schema

    def derive_id(self, desired: dict[str, Any]) -> str | None:
        return desired.get("resource_id") or None

    def prepare(self, resource_id: str, desired: dict[str, Any]) -> None:
        # A version already in use wins, so a changed api_version shows as drift
        preferred = desired.get("api_version")
        if preferred:
            self._api_versions.setdefault(resource_id.lower(), preferred)

    def create(self, desired: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        resource_id = desired["resource_id"]
        resource = self._put(resource_id, desired)
        return resource_id, self._to_observed(resource_id, resource) if resource is not None else {}

    def read(self, resource_id: str) -> dict[str, Any] | None:
        resource = self._client.resources.get_by_id(resource_id, self.api_version(resource_id))
        return self._to_observed(resource_id, resource) if resource is not None else None

    def update(
        self, resource_id: str, desired: dict[str, Any], observed: dict[str, Any]
    ) -> dict[str, Any]:
        merged = {
            "location": observed.get("location"),
            "tags": observed.get("tags", {}),
            **desired,
            # Keys the server added stay as observed, desired keys win
            "properties": {**observed.get("properties", {}), **desired.get("properties", {})},
        }
        resource = self._put(resource_id, merged)
        return self._to_observed(resource_id, resource) if resource is not None else observed

    def delete(self, resource_id: str) -> None:
        self._client.resources.begin_delete_by_id(
            resource_id, self.api_version(resource_id), polling=False
        )

    def api_version(self, resource_id: str, preferred: str | None = None) -> str:
        """Return the API version to use for a resource ID.

        Raises:
            ValueError: No API version is known for the resource type.
        """
        key = resource_id.lower()
        if preferred:
            self._api_versions[key] = preferred
            return preferred
        if key in self._api_versions:
            return self._api_versions[key]

        namespace, resource_type = provider_path(resource_id)
        provider = self._client.providers.get(namespace)
        for registered in getattr(provider, "resource_types", None) or []:
            if (registered.resource_type or "").lower() != resource_type.lower():
                continue
            versions = list(registered.api_versions or [])
            stable = [v for v in versions if "preview" not in v.lower()]
            if stable or versions:
                version = max(stable or versions)
                logger.debug(
                    "Resolved API version",
                    extra={"resource_type": f"{namespace}/{resource_type}", "api_version": version},
                )
                self._api_versions[key] = version
                return version

        raise ValueError(f"No API version registered for {namespace}/{resource_type}")

    def _put(self, resource_id: str, desired: dict[str, Any]) -> Any:
        api_version = self.api_version(resource_id, desired.get("api_version"))
        poller = self._client.resources.begin_create_or_update_by_id(
            resource_id,
            api_version,
            GenericResource(
                location=desired.get("location"),
                properties=desired.get("properties", {}),
                tags=desired.get("tags") or None,
            ),
            polling=False,
        )
        # No polling: result() is the initial response body, possibly empty (202)
        return poller.result()

    def _to_observed(self, resource_id: str, resource: Any) -> dict[str, Any]:
        properties = dict(resource.properties or {})
        provisioning_state = properties.pop("provisioningState", None)
        observed: dict[str, Any] = {
            "resource_id": resource.id,
            "properties": properties,
            "tags": dict(resource.tags or {}),
            "provisioning_state": provisioning_state,
        }
        api_version = self._api_versions.get(resource_id.lower())
        if api_version:
            observed["api_version"] = api_version
        if resource.location:
            observed["location"] = resource.location.lower()
        return observed
