"""Tests for the reconciler against the in-memory ARM mock.

Covers the eventual-consistency scenarios: throttled creates, read-after-
write lag, provisioning sequences, out-of-band drift and removal, and
isolation between independent instances.
"""

from __future__ import annotations

import asyncio
import time

import pytest
from azure_mock import MockResource, MockResourceClient, MockResourceState
from conftest import FAST_POLICY, FAST_SETTLE, SUBSCRIPTION_ID, rg_id

from lifecycle.config import Config

from lifecycle.errors import (
    NotFoundError,
    PreconditionSkipped,
    ReconcileCancelledError,
    RemoteValidationError,
    TerminalFailureError,
)
from lifecycle.kinds.management_lock import lock_id
from lifecycle.kinds.registry import KindRegistry, UnknownKindError
from lifecycle.kinds.security_contact import settings_id
from lifecycle.models import ResourceStatus
from lifecycle.poller import PollProgress
from lifecycle.reconciler import OutcomeStatus, Reconciler, ReconcileRequest
from lifecycle.verifier import ExistsStatus

RG_TYPE = "Microsoft.Resources/resourceGroups"
STORAGE_ID = rg_id("rg-data") + "/providers/Microsoft.Storage/storageAccounts/lcrdata"
CONTACTS = [{"email_address": "soc@example.com"}]
PHONE = "+41441234567"


def group(name: str, location: str = "westeurope", **tags: str) -> dict:
    return {"name": name, "location": location, "tags": dict(tags)}


def put_group(state: MockResourceState, name: str, location: str = "westeurope", **tags: str) -> None:
    state.put_resource(MockResource(rg_id(name), RG_TYPE, name, location=location, tags=tags))


class TestCreate:
    """Tests for reconcile() without an id."""

    @pytest.mark.asyncio
    async def test_create_waits_through_provisioning(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        state.set_provisioning_sequence(["Accepted", "Creating", "Succeeded"])

        instance = await reconciler.reconcile("resource_group", None, group("rg-a", env="dev"))

        assert instance.status == ResourceStatus.READY
        assert instance.id == rg_id("rg-a")
        assert instance.observed["provisioning_state"] == "Succeeded"
        assert instance.observed["tags"] == {"env": "dev"}
        assert instance.error is None

    @pytest.mark.asyncio
    async def test_throttled_create_is_retried(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        state.inject_error("create", 429, "TooManyRequests", times=2)

        instance = await reconciler.reconcile("resource_group", None, group("rg-a"))

        assert instance.status == ResourceStatus.READY
        assert state.call_count("create", rg_id("rg-a")) == 3

    @pytest.mark.asyncio
    async def test_read_after_create_lag(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        """Not-found reads right after a create never fail the reconcile."""
        state.set_read_lag(4)
        events: list[PollProgress] = []

        instance = await reconciler.reconcile(
            "resource_group", None, group("rg-a"), on_progress=events.append
        )

        assert instance.status == ResourceStatus.READY
        assert any(e.detail == "not visible yet" for e in events)

    @pytest.mark.asyncio
    async def test_failed_provisioning_marks_instance_failed(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        state.set_provisioning_sequence(["Accepted", "Creating", "Failed"])

        with pytest.raises(TerminalFailureError) as exc_info:
            await reconciler.reconcile("resource_group", None, group("rg-a"))

        assert exc_info.value.kind == "resource_group"
        assert exc_info.value.resource_id == rg_id("rg-a")
        instance = reconciler.instance_for("resource_group", rg_id("rg-a"), group("rg-a"))
        assert instance.status == ResourceStatus.FAILED
        assert "Failed" in (instance.error or "")

    @pytest.mark.asyncio
    async def test_rejected_create_leaves_instance_absent(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        state.inject_error("create", 400, "LocationNotAvailableForResourceGroup")
        instance = reconciler.instance_for("resource_group", "", group("rg-a"))

        with pytest.raises(RemoteValidationError):
            await reconciler.reconcile_instance(instance)

        assert instance.status == ResourceStatus.ABSENT
        assert instance.id == ""
        assert "LocationNotAvailableForResourceGroup" in (instance.error or "")
        assert state.call_count("create") == 1

    @pytest.mark.asyncio
    async def test_arm_resource_with_server_added_properties(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        desired = {
            "resource_id": STORAGE_ID,
            "api_version": "2023-01-01",
            "location": "westeurope",
            "properties": {"minimumTlsVersion": "TLS1_2"},
            "tags": {},
        }
        instance = await reconciler.reconcile("arm_resource", None, desired)
        assert instance.id == STORAGE_ID

        state.modify_resource(
            STORAGE_ID,
            properties={"minimumTlsVersion": "TLS1_2", "primaryEndpoints": {"blob": "https://x"}},
        )
        result = await reconciler.verify_exists("arm_resource", STORAGE_ID, desired)
        assert result.status == ExistsStatus.MATCHES

    @pytest.mark.asyncio
    async def test_arm_resource_api_version_change_replaces(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        desired = {
            "resource_id": STORAGE_ID,
            "api_version": "2021-01-01",
            "location": "westeurope",
            "properties": {"accessTier": "Hot"},
        }
        await reconciler.reconcile("arm_resource", None, desired)

        instance = await reconciler.reconcile(
            "arm_resource", STORAGE_ID, {**desired, "api_version": "2023-05-01"}
        )

        assert instance.status == ResourceStatus.READY
        assert instance.observed["api_version"] == "2023-05-01"
        assert state.call_count("delete", STORAGE_ID) == 1
        assert state.call_count("create", STORAGE_ID) == 2


class TestConverge:
    """Tests for reconcile() with an id."""

    @pytest.mark.asyncio
    async def test_matching_resource_is_noop(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        put_group(state, "rg-a", env="dev")

        instance = await reconciler.reconcile(
            "resource_group", rg_id("rg-a"), group("rg-a", "WestEurope", env="dev")
        )

        assert instance.status == ResourceStatus.READY
        assert state.call_count("create") == 0
        assert state.call_count("update") == 0

    @pytest.mark.asyncio
    async def test_tag_drift_is_updated_in_place(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        put_group(state, "rg-a", env="prod")

        instance = await reconciler.reconcile(
            "resource_group", rg_id("rg-a"), group("rg-a", env="dev")
        )

        assert instance.status == ResourceStatus.READY
        assert state.get_resource(rg_id("rg-a")).tags == {"env": "dev"}  # type: ignore[union-attr]
        assert state.call_count("update") == 1
        assert state.call_count("delete") == 0

    @pytest.mark.asyncio
    async def test_location_change_replaces(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        put_group(state, "rg-a")

        instance = await reconciler.reconcile(
            "resource_group", rg_id("rg-a"), group("rg-a", "northeurope")
        )

        assert instance.status == ResourceStatus.READY
        assert state.call_count("delete", rg_id("rg-a")) == 1
        assert state.call_count("create", rg_id("rg-a")) == 1
        assert state.get_resource(rg_id("rg-a")).location == "northeurope"  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_removed_out_of_band_is_recreated(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        put_group(state, "rg-a")
        instance = await reconciler.reconcile("resource_group", rg_id("rg-a"), group("rg-a"))
        state.remove_resource(rg_id("rg-a"))

        again = await reconciler.reconcile("resource_group", rg_id("rg-a"), group("rg-a"))

        assert again is instance
        assert again.status == ResourceStatus.READY
        assert state.get_resource(rg_id("rg-a")) is not None

    @pytest.mark.asyncio
    async def test_same_id_shares_instance(self, reconciler: Reconciler) -> None:
        first = reconciler.instance_for("resource_group", rg_id("rg-a"), group("rg-a"))
        second = reconciler.instance_for("resource_group", rg_id("RG-A"), group("rg-a", env="x"))
        assert first is second
        assert second.desired["tags"] == {"env": "x"}

    @pytest.mark.asyncio
    async def test_update_rejected_marks_failed(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        put_group(state, "rg-a", env="prod")
        state.inject_error("update", 400, "InvalidTagName")

        with pytest.raises(RemoteValidationError):
            await reconciler.reconcile("resource_group", rg_id("rg-a"), group("rg-a", env="dev"))

        instance = reconciler.instance_for("resource_group", rg_id("rg-a"), group("rg-a"))
        assert instance.status == ResourceStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_instance_recovers_on_next_reconcile(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        put_group(state, "rg-a", env="prod")
        state.inject_error("update", 409, "Conflict")
        with pytest.raises(RemoteValidationError):
            await reconciler.reconcile("resource_group", rg_id("rg-a"), group("rg-a", env="dev"))

        instance = await reconciler.reconcile(
            "resource_group", rg_id("rg-a"), group("rg-a", env="dev")
        )
        assert instance.status == ResourceStatus.READY
        assert instance.error is None


class TestImport:
    """Tests for import_by_id()."""

    @pytest.mark.asyncio
    async def test_import_then_reconcile_is_noop(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        put_group(state, "rg-a", owner="platform")

        instance = await reconciler.import_by_id("resource_group", rg_id("rg-a"))

        assert instance.status == ResourceStatus.READY
        assert instance.observed["provisioning_state"] == "Succeeded"
        assert "provisioning_state" not in instance.desired
        assert instance.desired["tags"] == {"owner": "platform"}

        await reconciler.reconcile("resource_group", instance.id, instance.desired)
        assert state.call_count("update") == 0
        assert state.call_count("create") == 0

    @pytest.mark.asyncio
    async def test_import_missing_resource(self, reconciler: Reconciler) -> None:
        with pytest.raises(NotFoundError):
            await reconciler.import_by_id("resource_group", rg_id("missing"))


class TestSecurityContacts:
    """Tests for the association kind."""

    @pytest.mark.asyncio
    async def test_drift_after_out_of_band_disable(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        desired = {"enabled": True, "emergency_contacts": CONTACTS, "phone": PHONE}
        instance = await reconciler.reconcile("security_contact", None, desired)
        assert instance.id == settings_id(SUBSCRIPTION_ID)

        state.modify_resource(
            instance.id,
            properties={"isEnabled": False, "emails": "soc@example.com", "phone": PHONE},
        )
        result = await reconciler.verify_exists("security_contact", instance.id, desired)
        assert result.status == ExistsStatus.MISMATCH
        assert result.drift is not None
        assert result.drift.changed_fields == ["enabled"]

        await reconciler.reconcile("security_contact", instance.id, desired)
        result = await reconciler.verify_exists("security_contact", instance.id, desired)
        assert result.matches

    @pytest.mark.asyncio
    async def test_destroy_then_verify_destroyed(self, reconciler: Reconciler) -> None:
        desired = {"enabled": True, "emergency_contacts": CONTACTS}
        instance = await reconciler.reconcile("security_contact", None, desired)

        await reconciler.destroy(instance)
        verification = await reconciler.verify_destroyed("security_contact", instance.id)

        assert verification.destroyed
        assert instance.residual is None

    @pytest.mark.asyncio
    async def test_unregistered_provider_skips(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        state.set_provider_state("Microsoft.Security", "NotRegistered")

        with pytest.raises(PreconditionSkipped):
            await reconciler.reconcile("security_contact", None, {"enabled": True})

        assert state.call_count("create") == 0


class TestReconcileMany:
    """Tests for reconcile_many()."""

    @pytest.mark.asyncio
    async def test_outcomes_are_isolated(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        """A skip and a failure never affect the other instances."""
        state.set_provider_state("Microsoft.Security", "NotRegistered")
        lock = lock_id(rg_id("rg-b"), "keep")
        state.inject_error("create", 403, "AuthorizationFailed", times=10, resource_id=lock)

        outcomes = await reconciler.reconcile_many(
            [
                ReconcileRequest("resource_group", group("rg-a"), name="group-a"),
                ReconcileRequest("security_contact", {"enabled": True}, name="contacts"),
                ReconcileRequest(
                    "management_lock", {"scope": rg_id("rg-b"), "name": "keep"}, name="lock"
                ),
                ReconcileRequest("resource_group", group("rg-c")),
                ReconcileRequest("virtual_machine", {}, name="vm"),
            ]
        )

        assert [o.status for o in outcomes] == [
            OutcomeStatus.SUCCEEDED,
            OutcomeStatus.SKIPPED,
            OutcomeStatus.FAILED,
            OutcomeStatus.SUCCEEDED,
            OutcomeStatus.FAILED,
        ]
        assert outcomes[0].request.label == "group-a"
        assert outcomes[3].request.label == "resource_group"
        assert "Microsoft.Security" in outcomes[1].reason
        assert "AuthorizationFailed" in outcomes[2].reason
        assert isinstance(outcomes[4].error, UnknownKindError)
        assert all(o.end_time is not None for o in outcomes)
        assert state.get_resource(rg_id("rg-c")) is not None

    @pytest.mark.asyncio
    async def test_payload_the_kind_cannot_map_fails_only_its_request(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        outcomes = await reconciler.reconcile_many(
            [
                ReconcileRequest("resource_group", {"location": "westeurope"}, name="nameless"),
                ReconcileRequest("resource_group", group("rg-a"), name="group-a"),
            ]
        )

        assert [o.status for o in outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.SUCCEEDED]
        assert isinstance(outcomes[0].error, RemoteValidationError)
        assert "name" in outcomes[0].reason
        assert state.get_resource(rg_id("rg-a")) is not None

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_failed_outcome(
        self,
        reconciler: Reconciler,
        registry: KindRegistry,
        state: MockResourceState,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        state.put_resource(MockResource(rg_id("rg-a"), RG_TYPE, "rg-a", location="westeurope"))

        def broken_prepare(resource_id: str, desired: dict) -> None:
            raise RuntimeError("kind bug")

        monkeypatch.setattr(registry.get("resource_group"), "prepare", broken_prepare)

        outcomes = await reconciler.reconcile_many(
            [
                ReconcileRequest("resource_group", group("rg-a"), id=rg_id("rg-a")),
                ReconcileRequest(
                    "management_lock", {"scope": rg_id("rg-a"), "name": "keep"}, name="lock"
                ),
            ]
        )

        assert [o.status for o in outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.SUCCEEDED]
        assert isinstance(outcomes[0].error, RuntimeError)
        assert outcomes[0].reason == "RuntimeError: kind bug"
        assert outcomes[0].instance is not None
        assert outcomes[0].instance.status == ResourceStatus.FAILED
        assert outcomes[0].end_time is not None

    @pytest.mark.asyncio
    async def test_concurrent_run_matches_sequential_run(self, config: Config) -> None:
        """Running independent requests together ends where running them one by one does."""
        base = rg_id("rg-base")
        requests = [
            ReconcileRequest("resource_group", group("rg-a", env="ci"), name="a"),
            ReconcileRequest("resource_group", group("rg-b", "northeurope", team="x"), name="b"),
            ReconcileRequest("resource_group", group("rg-c"), name="c"),
            ReconcileRequest("management_lock", {"scope": base, "name": "keep"}, name="lock"),
            ReconcileRequest(
                "management_lock", {"scope": base, "name": "denied"}, name="denied-lock"
            ),
            ReconcileRequest(
                "security_contact",
                {"enabled": True, "emergency_contacts": CONTACTS, "phone": PHONE},
                name="contacts",
            ),
            ReconcileRequest("resource_group", group("rg-d", env="ci"), id=rg_id("rg-d")),
        ]

        def environment() -> tuple[Reconciler, MockResourceState]:
            state = MockResourceState()
            for name in ("rg-base", "rg-d"):
                state.put_resource(MockResource(rg_id(name), RG_TYPE, name, location="westeurope"))
            state.inject_error("create", 429, "TooManyRequests", times=2, resource_id=rg_id("rg-b"))
            state.inject_error("read", 503, "ServiceUnavailable", resource_id=rg_id("rg-c"))
            state.inject_error(
                "create", 403, "AuthorizationFailed", times=10, resource_id=lock_id(base, "denied")
            )
            client = MockResourceClient(state, SUBSCRIPTION_ID)
            registry = KindRegistry.builtin(client, SUBSCRIPTION_ID, destroy_settle=FAST_SETTLE)
            return Reconciler(registry, config, policy=FAST_POLICY), state

        def snapshot(state: MockResourceState) -> dict:
            return {
                r.resource_id.lower(): (r.location, r.tags, r.properties, r.provisioning_state)
                for r in state.list_resources()
            }

        concurrent, concurrent_state = environment()
        together = await concurrent.reconcile_many(requests)

        sequential, sequential_state = environment()
        one_by_one = []
        for request in requests:
            one_by_one.extend(await sequential.reconcile_many([request]))

        assert [o.status for o in together] == [o.status for o in one_by_one]
        assert [type(o.error) for o in together] == [type(o.error) for o in one_by_one]
        assert [o.instance.status for o in together if o.instance] == [
            o.instance.status for o in one_by_one if o.instance
        ]
        assert together[4].status == OutcomeStatus.FAILED
        assert snapshot(concurrent_state) == snapshot(sequential_state)
        assert len(snapshot(concurrent_state)) == 7

    @pytest.mark.asyncio
    async def test_empty_request_list(self, reconciler: Reconciler) -> None:
        assert await reconciler.reconcile_many([]) == []


class TestCancellation:
    """Tests for cancel events and deadlines."""

    @pytest.mark.asyncio
    async def test_cancel_during_readiness_wait(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        state.set_provisioning_sequence(["Creating"] * 5000)
        cancel = asyncio.Event()
        asyncio.get_event_loop().call_later(0.05, cancel.set)

        with pytest.raises(ReconcileCancelledError):
            await reconciler.reconcile(
                "resource_group", None, group("rg-a"), cancel_event=cancel
            )

        instance = reconciler.instance_for("resource_group", rg_id("rg-a"), group("rg-a"))
        assert instance.status == ResourceStatus.FAILED

    @pytest.mark.asyncio
    async def test_deadline_in_the_past(
        self, reconciler: Reconciler, state: MockResourceState
    ) -> None:
        with pytest.raises(ReconcileCancelledError):
            await reconciler.reconcile(
                "resource_group", None, group("rg-a"), deadline=time.monotonic() - 1
            )
        assert state.call_count("create") == 0

    @pytest.mark.asyncio
    async def test_unknown_kind(self, reconciler: Reconciler) -> None:
        with pytest.raises(UnknownKindError):
            await reconciler.reconcile("virtual_machine", None, {})
