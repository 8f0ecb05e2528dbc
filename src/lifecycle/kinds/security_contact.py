"""Subscription security contact settings.

This is an association rather than a standalone resource: the settings
object always exists once the Microsoft.Security provider is registered, it
has no identifier of its own (the instance ID is derived from the
subscription), and it cannot be deleted. Destroy resets it to defaults
(disabled, no emails, no phone) and verification looks for that empty
state instead of a not-found error.

The remote side may repopulate emails after they were cleared (for
example from the subscription's owner roles), so a still-present
verification after destroy is an accepted outcome for this kind.

WIRE FORMAT (properties of Microsoft.Security/securityContacts):
    {"emails": "soc@example.com;oncall@example.com",
     "phone": "+41441234567",
     "isEnabled": true,
     "notificationsByRole": {"state": "On", "roles": ["Owner"]},
     "notificationsSources": [{"sourceType": "Alert", "minimalSeverity": "High"}]}

The desired payload exposes the email list as emergency_contacts, one
{"email_address": ...} entry per address.
"""

from __future__ import annotations

from typing import Any

from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from ..models import EMAIL_SEPARATOR
from ..schema import DestroyConvention, FieldMutability, FieldSpec, ResourceSchema
from .base import ResourceKind

SECURITY_CONTACT_API_VERSION = "2023-12-01-preview"
SETTINGS_NAME = "default"
ALERT_SOURCE = "Alert"


def settings_id(subscription_id: str) -> str:
    return (
        f"/subscriptions/{subscription_id}"
        f"/providers/Microsoft.Security/securityContacts/{SETTINGS_NAME}"
    )


def emails_to_wire(contacts: list[dict[str, Any]]) -> str:
    """Join emergency contacts into the semicolon-separated emails string."""
    return EMAIL_SEPARATOR.join(c["email_address"] for c in contacts if c.get("email_address"))


def emails_from_wire(emails: str | None) -> list[dict[str, Any]]:
    """Split the emails string into emergency contacts. Blank entries are dropped."""
    return [
        {"email_address": address.strip()}
        for address in (emails or "").split(EMAIL_SEPARATOR)
        if address.strip()
    ]


def settings_to_wire(desired: dict[str, Any]) -> dict[str, Any]:
    roles = list(desired.get("notify_roles") or [])
    severity = desired.get("alert_minimal_severity")
    return {
        "emails": emails_to_wire(desired.get("emergency_contacts") or []),
        "phone": desired.get("phone") or "",
        "isEnabled": bool(desired.get("enabled", True)),
        "notificationsByRole": {"state": "On" if roles else "Off", "roles": roles},
        "notificationsSources": (
            [{"sourceType": ALERT_SOURCE, "minimalSeverity": severity}] if severity else []
        ),
    }


def settings_from_wire(properties: dict[str, Any]) -> dict[str, Any]:
    by_role = properties.get("notificationsByRole") or {}
    severity = None
    for source in properties.get("notificationsSources") or []:
        if source.get("sourceType") == ALERT_SOURCE:
            severity = source.get("minimalSeverity")
    return {
        "enabled": bool(properties.get("isEnabled", False)),
        "emergency_contacts": emails_from_wire(properties.get("emails")),
        "phone": properties.get("phone") or None,
        "notify_roles": list(by_role.get("roles") or []) if by_role.get("state") == "On" else [],
        "alert_minimal_severity": severity,
    }


class SecurityContactKind(ResourceKind):
    """Security contact settings of one subscription."""

    name = "security_contact"
    provider_namespace = "Microsoft.Security"

    def __init__(self, client: ResourceManagementClient, subscription_id: str) -> None:
        super().__init__(client)
        self._settings_id = settings_id(subscription_id)
        self._schema = ResourceSchema(
            kind=self.name,
            fields=(
                FieldSpec("enabled"),
                FieldSpec(
                    "emergency_contacts",
                    ordered=False,
                    case_insensitive=True,
                    identity_keys=("email_address",),
                ),
                FieldSpec("phone"),
                FieldSpec("notify_roles", ordered=False),
                FieldSpec("alert_minimal_severity"),
                FieldSpec("id", FieldMutability.COMPUTED),
            ),
            destroy_convention=DestroyConvention.EMPTY_STATE,
            residual_after_destroy=True,
        )

    @property
    def schema(self) -> ResourceSchema:
        return self._schema

    @property
    def settings_id(self) -> str:
        return self._settings_id

    def derive_id(self, desired: dict[str, Any]) -> str | None:
        return self._settings_id

    def create(self, desired: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        resource = self._put(desired)
        return self._settings_id, self._to_observed(resource)

    def read(self, resource_id: str) -> dict[str, Any] | None:
        resource = self._client.resources.get_by_id(resource_id, SECURITY_CONTACT_API_VERSION)
        return self._to_observed(resource) if resource is not None else None

    def update(
        self, resource_id: str, desired: dict[str, Any], observed: dict[str, Any]
    ) -> dict[str, Any]:
        # PUT replaces the whole object, fields left out of desired keep their value
        resource = self._put({**observed, **desired})
        return self._to_observed(resource)

    def delete(self, resource_id: str) -> None:
        self._put({"enabled": False})

    def probe(self) -> str | None:
        reason = super().probe()
        if reason is not None:
            return reason
        try:
            self._client.resources.get_by_id(self._settings_id, SECURITY_CONTACT_API_VERSION)
        except ResourceNotFoundError:
            # Never configured on this subscription, still usable
            pass
        return None

    def is_cleared(self, observed: dict[str, Any] | None) -> bool:
        return not observed or not (observed.get("emergency_contacts") or observed.get("phone"))

    def _put(self, desired: dict[str, Any]) -> Any:
        poller = self._client.resources.begin_create_or_update_by_id(
            self._settings_id,
            SECURITY_CONTACT_API_VERSION,
            GenericResource(properties=settings_to_wire(desired)),
            polling=False,
        )
        return poller.result()

    def _to_observed(self, resource: Any) -> dict[str, Any]:
        properties = dict(getattr(resource, "properties", None) or {})
        return {
            "id": getattr(resource, "id", None) or self._settings_id,
            **settings_from_wire(properties),
        }
