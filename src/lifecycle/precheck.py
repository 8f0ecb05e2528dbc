"""Capability pre-check gate.

Before any lifecycle operation on a kind, a cheap idempotent read decides
whether the kind can run in the target subscription at all. Structural
unavailability (provider not registered, feature not enabled) is a skip,
not a failure: a skipped kind never reaches the dispatcher.

The gate is read-only and reaches one verdict per kind per run; concurrent
callers for the same kind share one check. Throttling and network errors
during the probe are retried like any other transient error.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from azure.core.exceptions import AzureError

from .config import DEFAULT_CALL_TIMEOUT_SECONDS
from .errors import (
    PreconditionSkipped,
    ReconcileError,
    TransientError,
    remote_error_code,
    translate_azure_error,
)
from .kinds.base import ResourceKind
from .poller import Poller
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

# ARM error codes meaning "this subscription cannot use the feature"
SKIP_ERROR_CODES = frozenset(
    {
        "MissingSubscriptionRegistration",
        "SubscriptionNotRegistered",
        "FeatureNotEnabled",
        "NoRegisteredProviderFound",
        "DisallowedProvider",
        "SubscriptionNotFound",
    }
)


class PrecheckStatus(str, Enum):
    """Outcome of a pre-check."""

    OK = "ok"
    SKIP = "skip"
    FAIL = "fail"


@dataclass(frozen=True)
class PrecheckOutcome:
    """Result of probing one kind.

    Attributes:
        status: ok, skip or fail.
        reason: Skip reason (skip only).
        error: Translated probe failure (fail only).
    """

    status: PrecheckStatus
    reason: str = ""
    error: ReconcileError | None = None

    @classmethod
    def ok(cls) -> PrecheckOutcome:
        return cls(PrecheckStatus.OK)

    @classmethod
    def skip(cls, reason: str) -> PrecheckOutcome:
        return cls(PrecheckStatus.SKIP, reason=reason)

    @classmethod
    def fail(cls, error: ReconcileError) -> PrecheckOutcome:
        return cls(PrecheckStatus.FAIL, reason=str(error), error=error)


async def precheck(
    kind: ResourceKind,
    policy: RetryPolicy | None = None,
    *,
    poller: Poller | None = None,
    call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
) -> PrecheckOutcome:
    """Probe a kind, retrying transient probe failures.

    Args:
        kind: Kind to probe.
        policy: Backoff for transient probe failures (defaults apply when omitted).
        poller: Poll loop running the probe.
        call_timeout_seconds: Maximum duration of a single probe call.

    Returns:
        ok when usable, skip(reason) when structurally unavailable,
        fail(error) on any other probe failure, transient ones included
        once the policy's wait is exhausted.
    """

    async def probe() -> str | None:
        loop = asyncio.get_event_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, kind.probe), timeout=call_timeout_seconds
            )
        except TimeoutError as e:
            raise TransientError(
                f"Pre-check probe timed out after {call_timeout_seconds}s",
                kind=kind.name,
                operation="precheck",
            ) from e
        except AzureError as e:
            code = remote_error_code(e)
            if code in SKIP_ERROR_CODES:
                raise PreconditionSkipped(
                    kind.name, f"{code}: {getattr(e, 'message', None) or e}"
                ) from e
            raise translate_azure_error(e, kind=kind.name, operation="precheck") from e

    try:
        reason = await (poller or Poller()).call(
            probe,
            policy or RetryPolicy(),
            description=f"pre-check of {kind.name}",
            kind=kind.name,
            operation="precheck",
        )
    except PreconditionSkipped as e:
        return PrecheckOutcome.skip(e.reason)
    except ReconcileError as e:
        return PrecheckOutcome.fail(e)

    if reason is not None:
        return PrecheckOutcome.skip(reason)
    return PrecheckOutcome.ok()


class PrecheckGate:
    """Memoises one final pre-check outcome per kind for the lifetime of a run.

    Transient probe failures are retried inside a single check; only the
    verdict reached after retrying is memoised.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        poller: Poller | None = None,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._poller = poller or Poller()
        self._call_timeout = call_timeout_seconds
        self._outcomes: dict[str, PrecheckOutcome] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def check(self, kind: ResourceKind) -> PrecheckOutcome:
        """Return the outcome for a kind, probing it on first use."""
        cached = self._outcomes.get(kind.name)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(kind.name, asyncio.Lock())
        async with lock:
            cached = self._outcomes.get(kind.name)
            if cached is not None:
                return cached

            outcome = await precheck(
                kind,
                self._policy,
                poller=self._poller,
                call_timeout_seconds=self._call_timeout,
            )
            self._outcomes[kind.name] = outcome

        match outcome.status:
            case PrecheckStatus.SKIP:
                logger.warning(
                    "Kind unavailable, skipping",
                    extra={"kind": kind.name, "reason": outcome.reason},
                )
            case PrecheckStatus.FAIL:
                logger.error(
                    "Pre-check failed",
                    extra={"kind": kind.name, "error": outcome.reason},
                )
            case _:
                logger.debug("Pre-check passed", extra={"kind": kind.name})
        return outcome

    async def require(self, kind: ResourceKind) -> None:
        """Raise unless the kind is usable.

        Raises:
            PreconditionSkipped: The kind is structurally unavailable.
            ReconcileError: The probe itself failed.
        """
        outcome = await self.check(kind)
        if outcome.status == PrecheckStatus.SKIP:
            raise PreconditionSkipped(kind.name, outcome.reason)
        if outcome.status == PrecheckStatus.FAIL:
            # SAFETY: fail() always carries the translated error
            assert outcome.error is not None
            raise outcome.error

    def reset(self) -> None:
        """Forget all outcomes (start of a new run)."""
        self._outcomes.clear()
        self._locks.clear()
