"""Declared schema per resource kind.

The schema tells the core which fields it may compare and how, and how a
kind signals that it has been destroyed. Field shapes themselves stay
opaque: the core only sees names and mutability.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .retry import RetryPolicy


class FieldMutability(str, Enum):
    """How a field may change after creation."""

    MUTABLE = "mutable"  # Changed in place by update
    IMMUTABLE = "immutable"  # Change forces replacement
    COMPUTED = "computed"  # Server-assigned, never compared


class DestroyConvention(str, Enum):
    """How the remote API signals that a resource is gone."""

    NOT_FOUND = "not_found"  # Reads fail with not-found
    EMPTY_STATE = "empty_state"  # Reads succeed with a cleared payload


@dataclass(frozen=True)
class FieldSpec:
    """Comparison metadata for a single field.

    Attributes:
        name: Field name in desired/observed payloads.
        mutability: Mutable, immutable or computed.
        ordered: For list values, whether order is significant.
        case_insensitive: Compare string values ignoring case.
        identity_keys: For unordered lists of objects, the keys that
            identify an element. Other keys are still compared, the
            identity keys only decide which element pairs with which.
        partial: For dict values, compare only the keys present in the
            desired value. Keys added by the server stay unmanaged.
    """

    name: str
    mutability: FieldMutability = FieldMutability.MUTABLE
    ordered: bool = True
    case_insensitive: bool = False
    identity_keys: tuple[str, ...] = ()
    partial: bool = False


@dataclass(frozen=True)
class ResourceSchema:
    """Schema of a resource kind.

    Attributes:
        kind: Kind name.
        fields: Field declarations.
        destroy_convention: How destruction is observed remotely.
        destroy_settle: When set, destroy verification polls with this
            policy until the resource reads as destroyed.
        residual_after_destroy: The remote side may repopulate state after
            a destroy, so a still-present verification is an accepted
            outcome for this kind rather than a failure.
    """

    kind: str
    fields: tuple[FieldSpec, ...]
    destroy_convention: DestroyConvention = DestroyConvention.NOT_FOUND
    destroy_settle: RetryPolicy | None = None
    residual_after_destroy: bool = False
    _index: dict[str, FieldSpec] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        index = {spec.name: spec for spec in self.fields}
        if len(index) != len(self.fields):
            raise ValueError(f"Duplicate field names in schema for '{self.kind}'")
        object.__setattr__(self, "_index", index)

    def get_field(self, name: str) -> FieldSpec | None:
        """Look up a field by name."""
        return self._index.get(name)

    def comparable_fields(self) -> list[FieldSpec]:
        """Fields that take part in drift detection."""
        return [f for f in self.fields if f.mutability != FieldMutability.COMPUTED]

    def computed_fields(self) -> list[FieldSpec]:
        """Server-assigned fields."""
        return [f for f in self.fields if f.mutability == FieldMutability.COMPUTED]

    def desired_view(self, observed: dict) -> dict:
        """Project an observed payload onto its non-computed fields."""
        return {
            spec.name: observed[spec.name]
            for spec in self.comparable_fields()
            if spec.name in observed
        }
