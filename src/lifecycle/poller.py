"""Eventual-consistency poller.

Wraps any operation whose remote effect is asynchronous: re-reads remote
state on a backoff schedule until the predicate reports a terminal outcome
or the policy's total wait elapses.

OUTCOMES:
- predicate returns done(value): wait returns value
- predicate returns failed(reason): TerminalFailureError, no further attempts
- total wait exceeded: PollTimeoutError (chained to the last transient error)
- cancel event set or caller deadline passed: ReconcileCancelledError

Both the fetch and the sleep between attempts race the caller's cancel
event, so cancellation is observed promptly instead of at the end of a
remote call or a backoff interval. Cancellation always wins over a timeout
reached in the same attempt. Task cancellation (asyncio.CancelledError) is
never intercepted.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import (
    PollTimeoutError,
    PreconditionSkipped,
    ReconcileCancelledError,
    ReconcileError,
    TerminalFailureError,
)
from .retry import RetryDecision, RetryPolicy

logger = logging.getLogger(__name__)


class PollState(str, Enum):
    """Verdict of a poll predicate on one observation."""

    CONTINUE = "continue"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class PollStep:
    """Result of evaluating a poll predicate."""

    state: PollState
    value: Any = None
    reason: str = ""

    @classmethod
    def keep_waiting(cls, reason: str = "") -> PollStep:
        return cls(PollState.CONTINUE, reason=reason)

    @classmethod
    def done(cls, value: Any = None) -> PollStep:
        return cls(PollState.DONE, value=value)

    @classmethod
    def failed(cls, reason: str) -> PollStep:
        return cls(PollState.FAILED, reason=reason)


@dataclass(frozen=True)
class PollProgress:
    """Progress event emitted after every unsuccessful attempt."""

    description: str
    attempt: int
    elapsed_seconds: float
    detail: str = ""


Fetch = Callable[[], Awaitable[Any]]
Predicate = Callable[[Any], PollStep]
ProgressCallback = Callable[[PollProgress], None]


class Poller:
    """Backoff loop shared by all lifecycle operations.

    Holds no per-wait state; a single instance can serve any number of
    concurrent waits.
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the poller.

        Args:
            rng: Random source for jitter (seed it for reproducible tests).
            clock: Monotonic clock in seconds.
        """
        self._rng = rng or random.Random()
        self._clock = clock

    async def wait(
        self,
        fetch: Fetch,
        predicate: Predicate,
        policy: RetryPolicy,
        *,
        description: str,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
        on_progress: ProgressCallback | None = None,
        kind: str = "",
        resource_id: str = "",
        operation: str = "",
    ) -> Any:
        """Poll until the predicate reaches a terminal verdict.

        Args:
            fetch: Coroutine factory returning the current observation.
            predicate: Classifies an observation (may receive None for not-found).
            policy: Backoff schedule and error classifier.
            description: Human-readable name of what is being awaited.
            cancel_event: Setting this event aborts the wait.
            deadline: Absolute time (same clock) after which the wait aborts.
            on_progress: Called with a PollProgress after each attempt.
            kind: Resource kind for error attribution.
            resource_id: Resource id for error attribution.
            operation: Operation for error attribution.

        Returns:
            The value carried by the predicate's done() step.

        Raises:
            TerminalFailureError: Predicate reported failed().
            PollTimeoutError: policy.max_wait elapsed.
            ReconcileCancelledError: cancel_event set or deadline passed.
            ReconcileError: Any non-retryable error raised by fetch.
        """
        context = {"kind": kind, "resource_id": resource_id, "operation": operation}
        start = self._clock()
        delays = policy.delays(self._rng)
        attempt = 0
        last_error: ReconcileError | None = None

        while True:
            attempt += 1
            self._check_cancelled(cancel_event, deadline, description, context)

            detail = ""
            try:
                observed = await self._fetch(fetch, cancel_event, description, context)
            except (ReconcileError, PreconditionSkipped) as e:
                if policy.classify(e) != RetryDecision.RETRY:
                    raise
                # SAFETY: only ReconcileError subclasses classify as RETRY
                last_error = e  # type: ignore[assignment]
                detail = f"transient error: {e}"
                logger.debug(
                    "Transient error while polling",
                    extra={"description": description, "attempt": attempt, "error": str(e)},
                )
            else:
                step = predicate(observed)
                if step.state == PollState.DONE:
                    if attempt > 1:
                        logger.debug(
                            "Poll complete",
                            extra={"description": description, "attempts": attempt},
                        )
                    return step.value
                if step.state == PollState.FAILED:
                    logger.error(
                        "Remote reported terminal failure",
                        extra={"description": description, "reason": step.reason, **context},
                    )
                    raise TerminalFailureError(
                        f"{description} failed: {step.reason}", **context
                    )
                detail = step.reason

            self._check_cancelled(cancel_event, deadline, description, context)
            elapsed = self._clock() - start
            if on_progress is not None:
                on_progress(
                    PollProgress(
                        description=description,
                        attempt=attempt,
                        elapsed_seconds=elapsed,
                        detail=detail,
                    )
                )

            if elapsed >= policy.max_wait:
                logger.warning(
                    "Poll timed out",
                    extra={
                        "description": description,
                        "attempts": attempt,
                        "max_wait_seconds": policy.max_wait,
                        "last_detail": detail,
                        **context,
                    },
                )
                raise PollTimeoutError(
                    f"Timed out after {elapsed:.1f}s waiting for {description}"
                    + (f": {detail}" if detail else ""),
                    **context,
                ) from last_error

            delay = min(next(delays), policy.max_wait - elapsed)
            if deadline is not None:
                delay = min(delay, max(0.0, deadline - self._clock()))
            await self._sleep(delay, cancel_event, description, context)

    async def call(
        self,
        fn: Fetch,
        policy: RetryPolicy,
        /,
        *,
        description: str,
        **kwargs: Any,
    ) -> Any:
        """Run a one-shot remote call, absorbing transient errors only.

        Keyword arguments are those of wait(), including operation for
        error attribution.
        """
        return await self.wait(fn, PollStep.done, policy, description=description, **kwargs)

    async def _fetch(
        self,
        fetch: Fetch,
        cancel_event: asyncio.Event | None,
        description: str,
        context: dict[str, str],
    ) -> Any:
        if cancel_event is None:
            return await fetch()

        fetch_task = asyncio.ensure_future(fetch())
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {fetch_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            fetch_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if fetch_task not in done:
            # The executor thread may still finish; its result is dropped
            fetch_task.cancel()
            raise ReconcileCancelledError(f"Cancelled while waiting for {description}", **context)
        return fetch_task.result()

    def _check_cancelled(
        self,
        cancel_event: asyncio.Event | None,
        deadline: float | None,
        description: str,
        context: dict[str, str],
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ReconcileCancelledError(f"Cancelled while waiting for {description}", **context)
        if deadline is not None and self._clock() >= deadline:
            raise ReconcileCancelledError(
                f"Deadline passed while waiting for {description}", **context
            )

    async def _sleep(
        self,
        delay: float,
        cancel_event: asyncio.Event | None,
        description: str,
        context: dict[str, str],
    ) -> None:
        if cancel_event is None:
            await asyncio.sleep(delay)
            return

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except TimeoutError:
            # Normal timeout, next attempt
            return
        raise ReconcileCancelledError(f"Cancelled while waiting for {description}", **context)


def readiness_predicate(kind: Any) -> Predicate:
    """Build a predicate that waits for a kind to report readiness.

    A None observation (not visible yet) keeps waiting, so read-after-create
    flicker never ends the wait early.
    """

    def predicate(observed: dict[str, Any] | None) -> PollStep:
        if observed is None:
            return PollStep.keep_waiting("not visible yet")
        return kind.readiness(observed)

    return predicate
