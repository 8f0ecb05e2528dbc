"""Drift detection between desired and observed state.

diff() is a pure function of (schema, desired, observed). Only fields that
the schema declares and the desired state sets take part; computed fields
are never compared and a field absent from the desired state is unmanaged.

NORMALIZATION (applied to both sides before comparing):
- Empty equivalence: None, "", [] and {} are the same value, also inside
  nested objects (keys holding an empty value are dropped)
- Case-insensitive strings, for fields that declare it
- Unordered lists compare as multisets of canonical JSON
- Partial dicts compare only the keys present in the desired value

Any immutable field change forces replacement; mutable-only changes are
applied in place.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .schema import FieldMutability, FieldSpec, ResourceSchema

logger = logging.getLogger(__name__)


class DriftAction(str, Enum):
    """What reconciliation has to do about the observed drift."""

    NOOP = "noop"
    UPDATE = "update"  # Mutable fields only, in place
    REPLACE = "replace"  # At least one immutable field differs


@dataclass(frozen=True)
class FieldChange:
    """A single drifted field.

    Attributes:
        name: Field name.
        mutability: Mutability declared by the schema.
        desired: Desired value (as given).
        observed: Observed value (as read), None when missing.
        detail: Element-level summary for unordered lists with identity keys.
    """

    name: str
    mutability: FieldMutability
    desired: Any
    observed: Any
    detail: str = ""


@dataclass(frozen=True)
class DriftResult:
    """Outcome of diff()."""

    action: DriftAction
    changes: tuple[FieldChange, ...] = ()

    @property
    def has_drift(self) -> bool:
        return self.action != DriftAction.NOOP

    @property
    def changed_fields(self) -> list[str]:
        return [c.name for c in self.changes]

    def summary(self) -> str:
        if not self.changes:
            return "no drift"
        parts = []
        for change in self.changes:
            part = f"{change.name} ({change.mutability.value})"
            if change.detail:
                part += f": {change.detail}"
            parts.append(part)
        return f"{self.action.value}: " + "; ".join(parts)


def normalize(value: Any, case_insensitive: bool = False) -> Any:
    """Normalize a value for comparison.

    Empty strings, lists and dicts become None, recursively.
    """
    if isinstance(value, str):
        if case_insensitive:
            value = value.lower()
        return value or None
    if isinstance(value, dict):
        items = {k: normalize(v, case_insensitive) for k, v in value.items()}
        return {k: v for k, v in items.items() if v is not None} or None
    if isinstance(value, list | tuple):
        return [normalize(v, case_insensitive) for v in value] or None
    return value


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def values_equal(spec: FieldSpec, desired: Any, observed: Any) -> bool:
    """Compare one field's desired and observed values under its rules."""
    want = normalize(desired, spec.case_insensitive)
    have = normalize(observed, spec.case_insensitive)

    if spec.partial and isinstance(want, dict) and isinstance(have, dict):
        have = {k: have[k] for k in want if k in have} or None

    if not spec.ordered and isinstance(want, list) and isinstance(have, list):
        return Counter(map(_canonical, want)) == Counter(map(_canonical, have))

    return _canonical(want) == _canonical(have)


def _identity(element: Any, keys: tuple[str, ...]) -> str:
    if not isinstance(element, dict):
        return _canonical(element)
    return "/".join(str(element.get(k, "")).lower() for k in keys)


def _describe_list_delta(spec: FieldSpec, desired: Any, observed: Any) -> str:
    """Summarize added/removed/modified elements keyed by identity keys."""
    want = normalize(desired, spec.case_insensitive) or []
    have = normalize(observed, spec.case_insensitive) or []
    want_by = {_identity(e, spec.identity_keys): e for e in want}
    have_by = {_identity(e, spec.identity_keys): e for e in have}

    added = sorted(set(want_by) - set(have_by))
    removed = sorted(set(have_by) - set(want_by))
    modified = sorted(
        k for k in set(want_by) & set(have_by) if _canonical(want_by[k]) != _canonical(have_by[k])
    )

    parts = []
    if added:
        parts.append(f"add {', '.join(added)}")
    if removed:
        parts.append(f"remove {', '.join(removed)}")
    if modified:
        parts.append(f"modify {', '.join(modified)}")
    return "; ".join(parts)


def diff(
    schema: ResourceSchema,
    desired: dict[str, Any],
    observed: dict[str, Any],
) -> DriftResult:
    """Compare desired state against observed state.

    Args:
        schema: Declared schema of the kind.
        desired: Desired payload. Keys the schema does not declare are ignored.
        observed: Observed payload as read from the remote.

    Returns:
        DriftResult with NOOP, UPDATE (mutable changes only) or REPLACE.
    """
    changes: list[FieldChange] = []

    for spec in schema.comparable_fields():
        if spec.name not in desired:
            continue

        want = desired[spec.name]
        have = observed.get(spec.name)
        if values_equal(spec, want, have):
            continue

        detail = ""
        if spec.identity_keys and isinstance(want or [], list) and isinstance(have or [], list):
            detail = _describe_list_delta(spec, want, have)

        changes.append(
            FieldChange(
                name=spec.name,
                mutability=spec.mutability,
                desired=want,
                observed=have,
                detail=detail,
            )
        )

    if any(c.mutability == FieldMutability.IMMUTABLE for c in changes):
        action = DriftAction.REPLACE
    elif changes:
        action = DriftAction.UPDATE
    else:
        action = DriftAction.NOOP

    if changes:
        logger.debug(
            "Drift detected",
            extra={
                "kind": schema.kind,
                "action": action.value,
                "fields": [c.name for c in changes],
            },
        )

    return DriftResult(action=action, changes=tuple(changes))
