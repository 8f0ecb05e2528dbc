"""Resource instances and typed desired-state payloads.

ResourceInstance is the unit under management. The pydantic models validate
desired state at the boundary (manifest loading, CLI) and reduce it to the
plain dictionaries the core treats as opaque payloads.
"""

from __future__ import annotations

import asyncio
import itertools
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator

VALID_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
VALID_PHONE_PATTERN = r"^\+[1-9]\d{1,14}$"  # E.164
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]{1,90}$"
MAX_EMERGENCY_CONTACTS = 10
EMAIL_SEPARATOR = ";"  # Joins addresses on the wire

NotificationRole = Literal["AccountAdmin", "Contributor", "Owner", "ServiceAdmin"]
AlertSeverity = Literal["High", "Medium", "Low"]


class ResourceStatus(str, Enum):
    """Lifecycle status of a managed instance."""

    ABSENT = "absent"
    CREATING = "creating"
    READY = "ready"
    UPDATING = "updating"
    DELETING = "deleting"
    GONE = "gone"
    FAILED = "failed"


# Serial numbers of instances, unique within the process
_SERIALS = itertools.count(1)


class InvalidTransitionError(Exception):
    """Raised when a status change would break the id/status invariant."""

    pass


@dataclass
class ResourceInstance:
    """A resource under management.

    Invariant: id is non-empty iff status is not ABSENT. A create that fails
    before the remote assigned an id leaves the instance ABSENT with the
    error recorded.
    """

    kind: str
    desired: dict[str, Any] = field(default_factory=dict)
    id: str = ""
    observed: dict[str, Any] = field(default_factory=dict)
    status: ResourceStatus = ResourceStatus.ABSENT
    residual: str | None = None  # Accepted leftover state after destroy
    error: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)
    serial: int = field(
        default_factory=lambda: next(_SERIALS), init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if bool(self.id) != (self.status != ResourceStatus.ABSENT):
            raise InvalidTransitionError(
                f"Instance of kind '{self.kind}' has id={self.id!r} with status {self.status.value}"
            )

    @property
    def key(self) -> str:
        """Key used for ordering and logging.

        Instances without an id are told apart by their serial number.
        """
        if self.id:
            return f"{self.kind}:{self.id}"
        return f"{self.kind}:<new-{self.serial}>"

    def assign_id(self, resource_id: str, status: ResourceStatus = ResourceStatus.CREATING) -> None:
        """Record the remote identifier handed out by a successful create."""
        if not resource_id:
            raise InvalidTransitionError(f"Empty id returned for kind '{self.kind}'")
        if status == ResourceStatus.ABSENT:
            raise InvalidTransitionError("Cannot assign an id to an absent instance")
        self.id = resource_id
        self.status = status

    def transition(self, status: ResourceStatus) -> None:
        """Move to a new status while keeping the id/status invariant."""
        if status == ResourceStatus.ABSENT:
            raise InvalidTransitionError("Use clear_id() to return an instance to absent")
        if not self.id:
            raise InvalidTransitionError(
                f"Instance of kind '{self.kind}' has no id, cannot become {status.value}"
            )
        self.status = status

    def clear_id(self) -> None:
        """Forget the remote identity (resource removed out of band)."""
        self.id = ""
        self.observed = {}
        self.status = ResourceStatus.ABSENT

    def mark_failed(self, error: BaseException) -> None:
        """Record a failure; only instances with an id can become FAILED."""
        self.error = str(error)
        if self.id:
            self.status = ResourceStatus.FAILED


# =============================================================================
# Typed desired-state payloads
# =============================================================================


class EmergencyContact(BaseModel):
    """One notification email address of the security contact settings."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    email_address: str = Field(alias="emailAddress")

    @field_validator("email_address")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if not re.match(VALID_EMAIL_PATTERN, v) or EMAIL_SEPARATOR in v:
            raise ValueError(f"email_address is not a valid address: {v}")
        return v

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump()


class SecurityContactSettings(BaseModel):
    """Subscription-level security contact settings (association kind).

    The remote object holds one phone number for the whole subscription;
    emails, roles and alert severity are the other notification targets.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    enabled: bool = True
    emergency_contacts: list[EmergencyContact] = Field(
        default_factory=list, alias="emergencyContacts", max_length=MAX_EMERGENCY_CONTACTS
    )
    phone: str | None = None
    notify_roles: list[NotificationRole] | None = Field(None, alias="notifyRoles")
    alert_minimal_severity: AlertSeverity | None = Field(None, alias="alertMinimalSeverity")

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        if v is not None and not re.match(VALID_PHONE_PATTERN, v):
            raise ValueError(f"phone must be in E.164 format: {v}")
        return v

    @field_validator("emergency_contacts")
    @classmethod
    def validate_unique_emails(cls, v: list[EmergencyContact]) -> list[EmergencyContact]:
        addresses = [c.email_address.lower() for c in v]
        if len(set(addresses)) != len(addresses):
            raise ValueError("emergency_contacts lists the same address twice")
        return v

    def to_desired(self) -> dict[str, Any]:
        desired: dict[str, Any] = {
            "enabled": self.enabled,
            "emergency_contacts": [c.to_payload() for c in self.emergency_contacts],
        }
        if self.phone is not None:
            desired["phone"] = self.phone
        if self.notify_roles is not None:
            desired["notify_roles"] = list(self.notify_roles)
        if self.alert_minimal_severity is not None:
            desired["alert_minimal_severity"] = self.alert_minimal_severity
        return desired


class ResourceGroupSpec(BaseModel):
    """Desired state of a resource group."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(pattern=VALID_RESOURCE_GROUP_PATTERN)]
    location: str | None = None  # Defaults to AZURE_LOCATION
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if v.endswith("."):
            raise ValueError("resource group name cannot end with a period")
        return v

    def to_desired(self) -> dict[str, Any]:
        desired: dict[str, Any] = {"name": self.name, "tags": self.tags}
        if self.location:
            desired["location"] = self.location.lower()
        return desired


class ManagementLockSpec(BaseModel):
    """Desired state of a management lock on a parent scope."""

    model_config = {"extra": "ignore"}

    scope: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1, max_length=260)]
    level: str = "CanNotDelete"
    notes: Annotated[str | None, Field(max_length=512)] = None

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = {"CanNotDelete", "ReadOnly"}
        if v not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return v

    @field_validator("scope")
    @classmethod
    def validate_scope(cls, v: str) -> str:
        if not v.startswith("/subscriptions/"):
            raise ValueError("scope must be an ARM resource ID")
        return v.rstrip("/")

    def to_desired(self) -> dict[str, Any]:
        desired: dict[str, Any] = {"scope": self.scope, "name": self.name, "level": self.level}
        if self.notes is not None:
            desired["notes"] = self.notes
        return desired


class GenericResourceSpec(BaseModel):
    """Desired state of an arbitrary ARM resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    resource_id: str = Field(alias="resourceId")
    api_version: str = Field(alias="apiVersion")
    location: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("resource_id")
    @classmethod
    def validate_resource_id(cls, v: str) -> str:
        if not v.startswith("/subscriptions/") or "/providers/" not in v:
            raise ValueError("resource_id must be a provider-scoped ARM resource ID")
        return v.rstrip("/")

    def to_desired(self) -> dict[str, Any]:
        desired: dict[str, Any] = {
            "resource_id": self.resource_id,
            "api_version": self.api_version,
            "properties": self.properties,
            "tags": self.tags,
        }
        if self.location:
            desired["location"] = self.location.lower()
        return desired


DESIRED_MODELS: dict[str, type[BaseModel]] = {
    "resource_group": ResourceGroupSpec,
    "management_lock": ManagementLockSpec,
    "arm_resource": GenericResourceSpec,
    "security_contact": SecurityContactSettings,
}


def validate_desired(kind: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Validate a raw desired-state payload and reduce it to a plain dict.

    Raises:
        ValueError: If the kind is unknown.
        pydantic.ValidationError: If the payload is invalid.
    """
    model = DESIRED_MODELS.get(kind)
    if model is None:
        raise ValueError(f"Unknown resource kind '{kind}'. Valid kinds: {sorted(DESIRED_MODELS)}")
    return model.model_validate(payload).to_desired()  # type: ignore[attr-defined]
