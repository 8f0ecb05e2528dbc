"""Resource lifecycle reconciliation.

Entry points:
1. reconcile(kind, id, desired): pre-check, then create or read/diff/update
2. import_by_id(kind, id): adopt an existing resource
3. verify_exists / verify_destroyed: verification for test harnesses
4. destroy(instance, dependents): ordered teardown
5. reconcile_many(requests): independent instances in parallel

RECONCILE FLOW:
- No id: create, wait for readiness, then poll until the resource reads back
  matching the desired state (create-then-verify)
- With id: read; not-found means removed out of band and triggers a
  recreate. Otherwise diff: noop, in-place update (+ readiness wait), or
  replace (destroy, then create)

Failures set the instance FAILED (or leave it ABSENT with the error
recorded when no id was ever assigned) and propagate with context. A
PreconditionSkipped propagates as a skip, never as a failure.

The ARM client handle is injected through the kind registry; there is no
process-wide client.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import DEFAULT_CALL_TIMEOUT_SECONDS, DEFAULT_MAX_CONCURRENCY, Config
from .dispatcher import CrudDispatcher
from .drift import DriftAction, diff
from .errors import PreconditionSkipped, ReconcileError
from .kinds.base import ResourceKind
from .kinds.registry import KindRegistry, UnknownKindError
from .models import ResourceInstance, ResourceStatus
from .orchestrator import Dependent, DestroyOrchestrator, DestroyReport
from .poller import Poller, ProgressCallback, readiness_predicate
from .precheck import PrecheckGate
from .retry import RetryPolicy
from .verifier import DestroyVerification, ExistsResult, Verifier

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    """Per-instance result of reconcile_many()."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileRequest:
    """One instance to reconcile.

    Attributes:
        kind: Kind name.
        desired: Desired payload.
        id: Remote ID, empty to create.
        name: Label used in reports (defaults to the kind).
    """

    kind: str
    desired: dict[str, Any]
    id: str = ""
    name: str = ""

    @property
    def label(self) -> str:
        return self.name or self.kind


@dataclass
class ReconcileOutcome:
    """Result of reconciling one request."""

    request: ReconcileRequest
    status: OutcomeStatus
    instance: ResourceInstance | None = None
    reason: str = ""
    error: BaseException | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED


class Reconciler:
    """Drives resource instances toward their desired state.

    Instances reconciled through this object are tracked in memory by
    (kind, id) so that concurrent calls for the same resource share one
    instance and its lock. Nothing is persisted.
    """

    def __init__(
        self,
        registry: KindRegistry,
        config: Config | None = None,
        *,
        poller: Poller | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            registry: Kinds available to this reconciler (carries the client).
            config: Configuration; defaults apply when omitted.
            poller: Poll loop (inject a seeded one for reproducible tests).
            policy: Retry/poll policy; derived from config when omitted.
        """
        self._registry = registry
        self._config = config
        self._policy = policy or (RetryPolicy.from_config(config) if config else RetryPolicy())
        self._poller = poller or Poller()
        call_timeout = config.call_timeout_seconds if config else DEFAULT_CALL_TIMEOUT_SECONDS
        self._dispatcher = CrudDispatcher(call_timeout)
        self._gate = PrecheckGate(
            self._policy, poller=self._poller, call_timeout_seconds=call_timeout
        )
        self._verifier = Verifier(self._dispatcher, self._poller)
        self._orchestrator = DestroyOrchestrator(
            registry,
            self._dispatcher,
            self._verifier,
            self._poller,
            self._policy,
            gate=self._gate,
        )
        self._max_concurrency = config.max_concurrency if config else DEFAULT_MAX_CONCURRENCY
        self._instances: dict[str, ResourceInstance] = {}

    @property
    def registry(self) -> KindRegistry:
        return self._registry

    @property
    def gate(self) -> PrecheckGate:
        return self._gate

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # =========================================================================
    # Entry points
    # =========================================================================

    async def reconcile(
        self,
        kind: str,
        resource_id: str | None,
        desired: dict[str, Any],
        *,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ResourceInstance:
        """Converge one resource to its desired state.

        Args:
            kind: Kind name.
            resource_id: Remote ID of an existing resource, empty/None to create.
            desired: Desired payload.
            cancel_event: Setting it aborts any wait with ReconcileCancelledError.
            deadline: Monotonic time after which waits abort.
            on_progress: Receives PollProgress events while waiting.

        Returns:
            The instance, READY on success.

        Raises:
            PreconditionSkipped: The kind cannot run in this subscription.
            UnknownKindError: No such kind.
            ReconcileError: Reconciliation failed (instance is FAILED).
        """
        instance = self.instance_for(kind, resource_id or "", desired)
        return await self.reconcile_instance(
            instance, cancel_event=cancel_event, deadline=deadline, on_progress=on_progress
        )

    async def reconcile_instance(
        self,
        instance: ResourceInstance,
        *,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ResourceInstance:
        """Converge an instance held by the caller. See reconcile()."""
        kind = self._registry.get(instance.kind)
        waits = {"cancel_event": cancel_event, "deadline": deadline, "on_progress": on_progress}

        async with instance.lock:
            try:
                # Skips propagate untouched, probe failures mark the instance
                await self._gate.require(kind)
                if not instance.id:
                    await self._create(kind, instance, waits)
                else:
                    kind.prepare(instance.id, instance.desired)
                    await self._converge(kind, instance, waits)
            except ReconcileError as e:
                instance.mark_failed(e)
                logger.error(
                    "Reconciliation failed",
                    extra={
                        "kind": kind.name,
                        "resource_id": instance.id,
                        "error_type": type(e).__name__,
                        "error": str(e),
                    },
                )
                raise

            instance.error = None
        return instance

    async def import_by_id(self, kind: str, resource_id: str) -> ResourceInstance:
        """Adopt an existing resource.

        Reads every field, computed ones included. The instance's desired
        state is the non-computed projection of what was read, so an
        immediate reconcile is a no-op.

        Raises:
            NotFoundError: The resource does not exist.
        """
        resource_kind = self._registry.get(kind)
        await self._gate.require(resource_kind)

        observed = await self._poller.call(
            lambda: self._dispatcher.read(resource_kind, resource_id),
            self._policy,
            description=f"import of {kind} {resource_id}",
            kind=kind,
            resource_id=resource_id,
            operation="import",
        )
        instance = ResourceInstance(
            kind=kind,
            desired=resource_kind.schema.desired_view(observed),
            id=resource_id,
            observed=observed,
            status=ResourceStatus.READY,
        )
        self._track(instance)
        logger.info("Imported", extra={"kind": kind, "resource_id": resource_id})
        return instance

    async def verify_exists(
        self, kind: str, resource_id: str, desired: dict[str, Any]
    ) -> ExistsResult:
        """Check once that a resource exists and matches the desired state.

        Raises:
            NotFoundError: The resource does not exist.
        """
        resource_kind = self._registry.get(kind)
        await self._gate.require(resource_kind)
        resource_kind.prepare(resource_id, desired)
        return await self._verifier.verify_exists(resource_kind, resource_id, desired)

    async def verify_destroyed(
        self,
        kind: str,
        resource_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
    ) -> DestroyVerification:
        """Check that a resource is destroyed according to its kind's convention."""
        resource_kind = self._registry.get(kind)
        await self._gate.require(resource_kind)
        return await self._verifier.verify_destroyed(
            resource_kind, resource_id, cancel_event=cancel_event, deadline=deadline
        )

    async def destroy(
        self,
        instance: ResourceInstance,
        dependents: Sequence[Dependent] = (),
        *,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> DestroyReport:
        """Destroy an instance after its dependents. Safe to call repeatedly."""
        return await self._orchestrator.destroy(
            instance,
            dependents,
            cancel_event=cancel_event,
            deadline=deadline,
            on_progress=on_progress,
        )

    async def reconcile_many(
        self,
        requests: Sequence[ReconcileRequest],
        *,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
    ) -> list[ReconcileOutcome]:
        """Reconcile independent instances concurrently.

        At most config.max_concurrency run at once. Each request gets its own
        outcome: a skip or a failure in one never affects the others.

        Returns:
            Outcomes in request order.
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run_one(request: ReconcileRequest) -> ReconcileOutcome:
            async with semaphore:
                outcome = ReconcileOutcome(request=request, status=OutcomeStatus.SUCCEEDED)
                try:
                    outcome.instance = self.instance_for(request.kind, request.id, request.desired)
                    await self.reconcile_instance(
                        outcome.instance, cancel_event=cancel_event, deadline=deadline
                    )
                except PreconditionSkipped as e:
                    outcome.status = OutcomeStatus.SKIPPED
                    outcome.reason = e.reason
                except (ReconcileError, UnknownKindError) as e:
                    outcome.status = OutcomeStatus.FAILED
                    outcome.reason = str(e)
                    outcome.error = e
                except Exception as e:
                    logger.exception(
                        "Unexpected error during reconciliation",
                        extra={"entry": request.label, "kind": request.kind},
                    )
                    if outcome.instance is not None:
                        outcome.instance.mark_failed(e)
                    outcome.status = OutcomeStatus.FAILED
                    outcome.reason = f"{type(e).__name__}: {e}"
                    outcome.error = e
                outcome.end_time = datetime.now(UTC)
                self._log_outcome(outcome)
                return outcome

        return list(await asyncio.gather(*(run_one(r) for r in requests)))

    def instance_for(self, kind: str, resource_id: str, desired: dict[str, Any]) -> ResourceInstance:
        """Return the tracked instance for (kind, id), or a new one.

        Raises:
            UnknownKindError: No such kind.
        """
        self._registry.get(kind)
        if resource_id:
            tracked = self._instances.get(f"{kind}:{resource_id.lower()}")
            if tracked is not None:
                tracked.desired = dict(desired)
                return tracked
            instance = ResourceInstance(
                kind=kind, desired=dict(desired), id=resource_id, status=ResourceStatus.READY
            )
            self._track(instance)
            return instance
        return ResourceInstance(kind=kind, desired=dict(desired))

    # =========================================================================
    # Lifecycle steps (caller holds instance.lock)
    # =========================================================================

    async def _create(
        self, kind: ResourceKind, instance: ResourceInstance, waits: dict[str, Any]
    ) -> None:
        start = time.monotonic()
        resource_id, observed = await self._poller.call(
            lambda: self._dispatcher.create(kind, instance.desired),
            self._policy,
            description=f"create of {kind.name}",
            kind=kind.name,
            operation="create",
            **waits,
        )
        instance.assign_id(resource_id, ResourceStatus.CREATING)
        instance.observed = observed
        self._track(instance)

        await self._await_ready(kind, instance, "create", waits)
        logger.info(
            "Created",
            extra={
                "kind": kind.name,
                "resource_id": resource_id,
                "duration_seconds": round(time.monotonic() - start, 2),
            },
        )

    async def _converge(
        self, kind: ResourceKind, instance: ResourceInstance, waits: dict[str, Any]
    ) -> None:
        resource_id = instance.id
        observed = await self._poller.call(
            lambda: self._dispatcher.read_optional(kind, resource_id),
            self._policy,
            description=f"read of {kind.name} {resource_id}",
            kind=kind.name,
            resource_id=resource_id,
            operation="read",
            **waits,
        )
        if observed is None:
            logger.warning(
                "Resource removed out of band, recreating",
                extra={"kind": kind.name, "resource_id": resource_id},
            )
            self._untrack(instance)
            instance.clear_id()
            await self._create(kind, instance, waits)
            return

        instance.observed = observed
        drift = diff(kind.schema, instance.desired, observed)

        match drift.action:
            case DriftAction.NOOP:
                instance.transition(ResourceStatus.READY)
                logger.debug("No drift", extra={"kind": kind.name, "resource_id": resource_id})

            case DriftAction.UPDATE:
                logger.info(
                    "Drift detected, updating in place",
                    extra={
                        "kind": kind.name,
                        "resource_id": resource_id,
                        "fields": drift.changed_fields,
                    },
                )
                instance.transition(ResourceStatus.UPDATING)
                instance.observed = await self._poller.call(
                    lambda: self._dispatcher.update(
                        kind, resource_id, instance.desired, observed
                    ),
                    self._policy,
                    description=f"update of {kind.name} {resource_id}",
                    kind=kind.name,
                    resource_id=resource_id,
                    operation="update",
                    **waits,
                )
                await self._await_ready(kind, instance, "update", waits)

            case DriftAction.REPLACE:
                logger.warning(
                    "Immutable field changed, replacing",
                    extra={
                        "kind": kind.name,
                        "resource_id": resource_id,
                        "fields": drift.changed_fields,
                    },
                )
                await self._orchestrator.destroy_locked(instance, **waits)
                self._untrack(instance)
                instance.clear_id()
                await self._create(kind, instance, waits)

    async def _await_ready(
        self,
        kind: ResourceKind,
        instance: ResourceInstance,
        operation: str,
        waits: dict[str, Any],
    ) -> None:
        resource_id = instance.id
        await self._poller.wait(
            lambda: self._dispatcher.read_optional(kind, resource_id),
            readiness_predicate(kind),
            self._policy,
            description=f"{kind.name} {resource_id} to become ready",
            kind=kind.name,
            resource_id=resource_id,
            operation=operation,
            **waits,
        )
        result = await self._verifier.await_exists(
            kind, resource_id, instance.desired, self._policy, **waits
        )
        instance.observed = result.observed
        instance.transition(ResourceStatus.READY)

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def _track(self, instance: ResourceInstance) -> None:
        self._instances[f"{instance.kind}:{instance.id.lower()}"] = instance

    def _untrack(self, instance: ResourceInstance) -> None:
        self._instances.pop(f"{instance.kind}:{instance.id.lower()}", None)

    def _log_outcome(self, outcome: ReconcileOutcome) -> None:
        """Log a reconcile outcome with structured data."""
        extra: dict[str, Any] = {
            "entry": outcome.request.label,
            "kind": outcome.request.kind,
            "status": outcome.status.value,
            "duration_seconds": outcome.duration_seconds,
        }
        if outcome.instance is not None and outcome.instance.id:
            extra["resource_id"] = outcome.instance.id

        match outcome.status:
            case OutcomeStatus.FAILED:
                extra["error"] = outcome.reason
                logger.error("Reconcile outcome", extra=extra)
            case OutcomeStatus.SKIPPED:
                extra["reason"] = outcome.reason
                logger.warning("Reconcile outcome", extra=extra)
            case _:
                logger.info("Reconcile outcome", extra=extra)
