"""Existence and destroy verification.

Proves that a resource exists with the desired attributes, or that it has
been fully destroyed. Destroyed means different things per kind:

- NOT_FOUND convention: only a not-found read counts as destroyed
- EMPTY_STATE convention: a not-found read or a cleared payload counts

Kinds whose deletion is asynchronous declare a destroy settle policy; their
verification polls until the resource reads as destroyed and reports
STILL_PRESENT if it never does.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .dispatcher import CrudDispatcher
from .drift import DriftResult, diff
from .errors import NotFoundError, PollTimeoutError
from .kinds.base import ResourceKind
from .poller import Poller, PollStep, ProgressCallback
from .retry import RetryPolicy
from .schema import DestroyConvention

logger = logging.getLogger(__name__)


class ExistsStatus(str, Enum):
    MATCHES = "matches"
    MISMATCH = "mismatch"


class DestroyStatus(str, Enum):
    DESTROYED = "destroyed"
    STILL_PRESENT = "still_present"


@dataclass(frozen=True)
class ExistsResult:
    """Outcome of verify_exists().

    Attributes:
        status: MATCHES or MISMATCH.
        observed: Observed payload the verdict is based on.
        drift: Drift between desired and observed (NOOP when matching).
    """

    status: ExistsStatus
    observed: dict[str, Any] = field(default_factory=dict)
    drift: DriftResult | None = None

    @property
    def matches(self) -> bool:
        return self.status == ExistsStatus.MATCHES


@dataclass(frozen=True)
class DestroyVerification:
    """Outcome of verify_destroyed().

    Attributes:
        status: DESTROYED or STILL_PRESENT.
        detail: Why the resource is considered still present.
        observed: Last observed payload (empty when not found).
    """

    status: DestroyStatus
    detail: str = ""
    observed: dict[str, Any] = field(default_factory=dict)

    @property
    def destroyed(self) -> bool:
        return self.status == DestroyStatus.DESTROYED


class Verifier:
    """Existence/destroy verification on top of the dispatcher and poller."""

    def __init__(self, dispatcher: CrudDispatcher, poller: Poller) -> None:
        self._dispatcher = dispatcher
        self._poller = poller

    async def verify_exists(
        self, kind: ResourceKind, resource_id: str, desired: dict[str, Any]
    ) -> ExistsResult:
        """Read the resource once and compare it against the desired state.

        Raises:
            NotFoundError: The resource does not exist.
        """
        observed = await self._dispatcher.read(kind, resource_id)
        drift = diff(kind.schema, desired, observed)
        status = ExistsStatus.MISMATCH if drift.has_drift else ExistsStatus.MATCHES
        return ExistsResult(status=status, observed=observed, drift=drift)

    async def await_exists(
        self,
        kind: ResourceKind,
        resource_id: str,
        desired: dict[str, Any],
        policy: RetryPolicy,
        *,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExistsResult:
        """Poll until the resource exists and matches the desired state.

        Not-found and mismatching reads keep waiting (read-after-write
        flicker). A resource that never matches ends in PollTimeoutError,
        never in a silent success.
        """

        async def fetch() -> ExistsResult | None:
            try:
                return await self.verify_exists(kind, resource_id, desired)
            except NotFoundError:
                return None

        def predicate(result: ExistsResult | None) -> PollStep:
            if result is None:
                return PollStep.keep_waiting("not visible yet")
            if not result.matches:
                # SAFETY: verify_exists always attaches the drift
                assert result.drift is not None
                return PollStep.keep_waiting(result.drift.summary())
            return PollStep.done(result)

        return await self._poller.wait(
            fetch,
            predicate,
            policy,
            description=f"{kind.name} {resource_id} to match desired state",
            cancel_event=cancel_event,
            deadline=deadline,
            on_progress=on_progress,
            kind=kind.name,
            resource_id=resource_id,
            operation="verify_exists",
        )

    async def verify_destroyed(
        self,
        kind: ResourceKind,
        resource_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> DestroyVerification:
        """Check that a resource is gone according to its kind's convention.

        Returns STILL_PRESENT instead of raising when the resource does not
        read as destroyed (after the settle policy's wait, if declared).
        Other read errors propagate.
        """
        settle = kind.schema.destroy_settle
        if settle is None:
            return self._classify_destroyed(
                kind, await self._dispatcher.read_optional(kind, resource_id)
            )

        last: DestroyVerification | None = None

        async def fetch() -> DestroyVerification:
            nonlocal last
            last = self._classify_destroyed(
                kind, await self._dispatcher.read_optional(kind, resource_id)
            )
            return last

        def predicate(verification: DestroyVerification) -> PollStep:
            if verification.destroyed:
                return PollStep.done(verification)
            return PollStep.keep_waiting(verification.detail)

        try:
            return await self._poller.wait(
                fetch,
                predicate,
                settle,
                description=f"{kind.name} {resource_id} to be destroyed",
                cancel_event=cancel_event,
                deadline=deadline,
                on_progress=on_progress,
                kind=kind.name,
                resource_id=resource_id,
                operation="verify_destroyed",
            )
        except PollTimeoutError as e:
            logger.warning(
                "Resource still present after settle wait",
                extra={"kind": kind.name, "resource_id": resource_id, "error": str(e)},
            )
            if last is not None:
                return last
            return DestroyVerification(status=DestroyStatus.STILL_PRESENT, detail=str(e))

    @staticmethod
    def _classify_destroyed(
        kind: ResourceKind, observed: dict[str, Any] | None
    ) -> DestroyVerification:
        if observed is None:
            return DestroyVerification(status=DestroyStatus.DESTROYED)

        if kind.schema.destroy_convention == DestroyConvention.EMPTY_STATE and kind.is_cleared(
            observed
        ):
            return DestroyVerification(status=DestroyStatus.DESTROYED, observed=observed)

        state = observed.get("provisioning_state")
        detail = "resource still readable"
        if kind.schema.destroy_convention == DestroyConvention.EMPTY_STATE:
            detail = "state not cleared"
        elif state:
            detail = f"resource still readable (provisioning state {state})"
        return DestroyVerification(
            status=DestroyStatus.STILL_PRESENT, detail=detail, observed=observed
        )
