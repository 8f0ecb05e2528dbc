"""Destroy orchestration.

Tears a resource down together with everything that depends on it:
dependents first, in reverse dependency order, then the resource itself.
Each instance goes through delete (not-found is success), DELETING,
destroy verification, and finally GONE.

A failure marks the failing instance FAILED, stops the sequence and is
raised. Nothing is rolled back: instances already destroyed stay destroyed.
Destroying an already-destroyed instance succeeds, so destroy can be rerun.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from .dependency import DependencyGraph
from .dispatcher import CrudDispatcher
from .errors import ReconcileError, TerminalFailureError
from .kinds.registry import KindRegistry
from .models import ResourceInstance, ResourceStatus
from .poller import Poller, ProgressCallback
from .precheck import PrecheckGate
from .retry import RetryPolicy
from .verifier import DestroyVerification, Verifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Dependent:
    """An instance that must be destroyed before what it depends on.

    Attributes:
        instance: The dependent instance.
        depends_on: Instances it depends on. Empty means it depends on the
            destroy target directly.
    """

    instance: ResourceInstance
    depends_on: tuple[ResourceInstance, ...] = ()


@dataclass(frozen=True)
class DestroyStep:
    """What happened to one instance during a destroy."""

    key: str
    kind: str
    resource_id: str
    already_gone: bool
    verification: DestroyVerification | None = None

    @property
    def residual(self) -> str | None:
        if self.verification is not None and not self.verification.destroyed:
            return self.verification.detail
        return None


@dataclass(frozen=True)
class DestroyReport:
    """Per-instance steps of a destroy, in execution order."""

    target: str
    steps: tuple[DestroyStep, ...] = ()

    @property
    def residuals(self) -> dict[str, str]:
        return {s.key: s.residual for s in self.steps if s.residual is not None}


class DestroyOrchestrator:
    """Destroys an instance and its dependents in a safe order."""

    def __init__(
        self,
        registry: KindRegistry,
        dispatcher: CrudDispatcher,
        verifier: Verifier,
        poller: Poller,
        policy: RetryPolicy,
        gate: PrecheckGate | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            registry: Kind lookup.
            dispatcher: CRUD dispatcher for delete calls.
            verifier: Destroy verification.
            poller: Retry loop absorbing transient delete failures.
            policy: Retry policy for delete calls.
            gate: Pre-check gate consulted before touching a kind.
        """
        self._registry = registry
        self._dispatcher = dispatcher
        self._verifier = verifier
        self._poller = poller
        self._policy = policy
        self._gate = gate

    async def destroy(
        self,
        instance: ResourceInstance,
        dependents: Sequence[Dependent] = (),
        *,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> DestroyReport:
        """Destroy an instance after all of its dependents.

        Raises:
            CyclicDependencyError: Dependents form a cycle.
            PreconditionSkipped: A kind involved is unavailable.
            ReconcileError: A delete or verification failed; the failing
                instance is FAILED and later instances are untouched.
        """
        by_key: dict[str, ResourceInstance] = {instance.key: instance}
        graph = DependencyGraph()
        graph.add_node(instance.key)
        for dependent in dependents:
            if dependent.instance is instance:
                raise ValueError(f"{instance.key} cannot be its own dependent")
            by_key[dependent.instance.key] = dependent.instance
            parents = dependent.depends_on or (instance,)
            graph.add_node(dependent.instance.key, [p.key for p in parents])

        order = [key for key in graph.teardown_order() if key in by_key]
        logger.info(
            "Destroy planned",
            extra={"target": instance.key, "order": order},
        )

        steps: list[DestroyStep] = []
        for key in order:
            steps.append(
                await self._destroy_one(
                    by_key[key],
                    cancel_event=cancel_event,
                    deadline=deadline,
                    on_progress=on_progress,
                )
            )

        return DestroyReport(target=instance.key, steps=tuple(steps))

    async def _destroy_one(
        self,
        instance: ResourceInstance,
        *,
        cancel_event: asyncio.Event | None,
        deadline: float | None,
        on_progress: ProgressCallback | None,
    ) -> DestroyStep:
        async with instance.lock:
            return await self.destroy_locked(
                instance, cancel_event=cancel_event, deadline=deadline, on_progress=on_progress
            )

    async def destroy_locked(
        self,
        instance: ResourceInstance,
        *,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> DestroyStep:
        """Destroy a single instance whose lock the caller already holds."""
        kind = self._registry.get(instance.kind)
        if not instance.id:
            # Never created: nothing to remove
            return DestroyStep(
                key=instance.key, kind=instance.kind, resource_id="", already_gone=True
            )

        if self._gate is not None:
            await self._gate.require(kind)

        resource_id = instance.id
        kind.prepare(resource_id, instance.desired)
        context = {
            "kind": kind.name,
            "resource_id": resource_id,
            "cancel_event": cancel_event,
            "deadline": deadline,
            "on_progress": on_progress,
        }
        try:
            instance.transition(ResourceStatus.DELETING)
            removed = await self._poller.call(
                lambda: self._dispatcher.delete(kind, resource_id),
                self._policy,
                description=f"delete of {kind.name} {resource_id}",
                operation="delete",
                **context,
            )
            verification = await self._verifier.verify_destroyed(
                kind,
                resource_id,
                cancel_event=cancel_event,
                deadline=deadline,
                on_progress=on_progress,
            )
            if not verification.destroyed and not kind.schema.residual_after_destroy:
                raise TerminalFailureError(
                    f"Resource still present after destroy: {verification.detail}",
                    kind=kind.name,
                    resource_id=resource_id,
                    operation="verify_destroyed",
                )
        except ReconcileError as e:
            instance.mark_failed(e)
            logger.error(
                "Destroy failed",
                extra={"kind": kind.name, "resource_id": resource_id, "error": str(e)},
            )
            raise

        instance.residual = None if verification.destroyed else verification.detail
        if instance.residual is not None:
            logger.warning(
                "Destroy left accepted residual state",
                extra={
                    "kind": kind.name,
                    "resource_id": resource_id,
                    "residual": instance.residual,
                },
            )
        instance.observed = {}
        instance.error = None
        instance.transition(ResourceStatus.GONE)

        logger.info(
            "Destroyed",
            extra={"kind": kind.name, "resource_id": resource_id, "already_gone": not removed},
        )
        return DestroyStep(
            key=instance.key,
            kind=kind.name,
            resource_id=resource_id,
            already_gone=not removed,
            verification=verification,
        )
