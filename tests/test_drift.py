"""Tests for drift detection."""

from __future__ import annotations

import pytest

from lifecycle.drift import DriftAction, diff, normalize, values_equal
from lifecycle.schema import FieldMutability, FieldSpec, ResourceSchema

SCHEMA = ResourceSchema(
    kind="widget",
    fields=(
        FieldSpec("name", FieldMutability.IMMUTABLE, case_insensitive=True),
        FieldSpec("size"),
        FieldSpec("tags"),
        FieldSpec("settings", partial=True),
        FieldSpec("members", ordered=False, identity_keys=("email",)),
        FieldSpec("steps"),
        FieldSpec("etag", FieldMutability.COMPUTED),
    ),
)


class TestNormalize:
    """Tests for normalize()."""

    @pytest.mark.parametrize("value", [None, "", [], {}, {"a": ""}, {"a": {"b": []}}])
    def test_empty_values_collapse_to_none(self, value: object) -> None:
        assert normalize(value) is None

    def test_case_folding(self) -> None:
        assert normalize("WestEurope", case_insensitive=True) == "westeurope"
        assert normalize("WestEurope") == "WestEurope"

    def test_nested_empty_keys_dropped(self) -> None:
        assert normalize({"a": 1, "b": None, "c": {"d": ""}}) == {"a": 1}


class TestValuesEqual:
    """Tests for values_equal()."""

    def test_unordered_list_is_multiset(self) -> None:
        spec = FieldSpec("members", ordered=False)
        assert values_equal(spec, [{"email": "a"}, {"email": "b"}], [{"email": "b"}, {"email": "a"}])

    def test_unordered_list_counts_duplicates(self) -> None:
        spec = FieldSpec("members", ordered=False)
        assert not values_equal(spec, ["a", "a", "b"], ["a", "b", "b"])

    def test_ordered_list_order_matters(self) -> None:
        spec = FieldSpec("steps")
        assert not values_equal(spec, ["a", "b"], ["b", "a"])

    def test_partial_dict_ignores_server_keys(self) -> None:
        spec = FieldSpec("settings", partial=True)
        assert values_equal(spec, {"tier": "hot"}, {"tier": "hot", "createdBy": "server"})
        assert not values_equal(spec, {"tier": "hot"}, {"tier": "cool", "createdBy": "server"})

    def test_full_dict_compares_every_key(self) -> None:
        spec = FieldSpec("tags")
        assert not values_equal(spec, {"env": "dev"}, {"env": "dev", "owner": "x"})


class TestDiff:
    """Tests for diff()."""

    def test_identical_state_is_noop(self) -> None:
        desired = {"name": "w1", "size": 3, "tags": {"env": "dev"}}
        result = diff(SCHEMA, desired, {**desired, "etag": "abc"})
        assert result.action == DriftAction.NOOP
        assert not result.has_drift
        assert result.summary() == "no drift"

    def test_empty_equivalence(self) -> None:
        result = diff(SCHEMA, {"tags": {}, "members": []}, {"tags": None})
        assert result.action == DriftAction.NOOP

    def test_case_insensitive_field(self) -> None:
        result = diff(SCHEMA, {"name": "Widget-1"}, {"name": "widget-1"})
        assert result.action == DriftAction.NOOP

    def test_unmanaged_fields_are_ignored(self) -> None:
        """Fields absent from the desired state never drift."""
        result = diff(SCHEMA, {"size": 3}, {"size": 3, "tags": {"owner": "someone"}})
        assert result.action == DriftAction.NOOP

    def test_undeclared_fields_are_ignored(self) -> None:
        result = diff(SCHEMA, {"size": 3, "color": "red"}, {"size": 3, "color": "blue"})
        assert result.action == DriftAction.NOOP

    def test_computed_fields_never_compared(self) -> None:
        result = diff(SCHEMA, {"etag": "old"}, {"etag": "new"})
        assert result.action == DriftAction.NOOP

    def test_mutable_change_is_update(self) -> None:
        result = diff(SCHEMA, {"size": 4, "tags": {"env": "dev"}}, {"size": 3, "tags": {}})
        assert result.action == DriftAction.UPDATE
        assert result.changed_fields == ["size", "tags"]

    def test_immutable_change_is_replace(self) -> None:
        """Any immutable change wins over mutable changes."""
        result = diff(SCHEMA, {"name": "w2", "size": 4}, {"name": "w1", "size": 3})
        assert result.action == DriftAction.REPLACE
        assert set(result.changed_fields) == {"name", "size"}
        assert "name (immutable)" in result.summary()

    def test_missing_observed_field_is_drift(self) -> None:
        result = diff(SCHEMA, {"size": 3}, {})
        assert result.action == DriftAction.UPDATE
        assert result.changes[0].observed is None

    def test_identity_keys_describe_element_changes(self) -> None:
        desired = {
            "members": [
                {"email": "a@example.com", "role": "owner"},
                {"email": "b@example.com", "role": "reader"},
            ]
        }
        observed = {
            "members": [
                {"email": "A@example.com", "role": "reader"},
                {"email": "c@example.com", "role": "reader"},
            ]
        }
        result = diff(SCHEMA, desired, observed)
        assert result.action == DriftAction.UPDATE
        detail = result.changes[0].detail
        assert "add b@example.com" in detail
        assert "remove c@example.com" in detail
        assert "modify a@example.com" in detail

    def test_unordered_members_reordered_is_noop(self) -> None:
        members = [{"email": "a@example.com"}, {"email": "b@example.com"}]
        result = diff(SCHEMA, {"members": members}, {"members": list(reversed(members))})
        assert result.action == DriftAction.NOOP


class TestResourceSchema:
    """Tests for ResourceSchema."""

    def test_duplicate_fields_rejected(self) -> None:
        with pytest.raises(ValueError, match="Duplicate"):
            ResourceSchema(kind="x", fields=(FieldSpec("a"), FieldSpec("a")))

    def test_get_field(self) -> None:
        assert SCHEMA.get_field("size") == FieldSpec("size")
        assert SCHEMA.get_field("nope") is None

    def test_desired_view_drops_computed(self) -> None:
        view = SCHEMA.desired_view({"name": "w", "etag": "x", "other": 1})
        assert view == {"name": "w"}
