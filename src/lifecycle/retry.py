"""Retry policy and error classification.

Classification (transient vs terminal vs skip) is a pure function from an
error value to a RetryDecision so it can be tested without any waiting. The
sleep/backoff loop that consumes it lives in poller.py.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .errors import PreconditionSkipped, TransientError

if TYPE_CHECKING:
    from .config import Config


class RetryDecision(str, Enum):
    """What to do with an error raised while waiting."""

    RETRY = "retry"  # Transient, try again after backoff
    FAIL = "fail"  # Terminal, surface immediately
    SKIP = "skip"  # Structured skip, surface as-is


def decide(error: BaseException) -> RetryDecision:
    """Classify an error for the retry loop.

    Args:
        error: Error raised by a fetch or a one-shot remote call.

    Returns:
        RETRY for transient errors, SKIP for precondition skips,
        FAIL for everything else.
    """
    if isinstance(error, TransientError):
        return RetryDecision.RETRY
    if isinstance(error, PreconditionSkipped):
        return RetryDecision.SKIP
    return RetryDecision.FAIL


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule for the eventual-consistency poller.

    Stateless: every wait builds a fresh delay generator via delays().

    Attributes:
        initial_delay: First delay between attempts (seconds).
        multiplier: Growth factor applied after every attempt.
        max_delay: Cap for a single delay (seconds).
        max_wait: Cap for the total elapsed time of one wait (seconds).
        jitter: Fraction of each delay added at random (0 disables jitter).
        classify: Error classifier, defaults to decide().
    """

    initial_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    max_wait: float = 600.0
    jitter: float = 0.2
    classify: Callable[[BaseException], RetryDecision] = field(default=decide, compare=False)

    def __post_init__(self) -> None:
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must not be below initial_delay")
        if self.max_wait <= 0:
            raise ValueError("max_wait must be positive")
        if not (0 <= self.jitter <= 1):
            raise ValueError("jitter must be between 0 and 1")

    def delays(self, rng: random.Random | None = None) -> Iterator[float]:
        """Yield capped, jittered, exponentially growing delays forever."""
        rng = rng or random.Random()
        base = self.initial_delay
        while True:
            capped = min(base, self.max_delay)
            yield min(capped + rng.uniform(0, capped * self.jitter), self.max_delay)
            base *= self.multiplier

    def with_max_wait(self, max_wait: float) -> RetryPolicy:
        """Return a copy of this policy with a different total wait."""
        return RetryPolicy(
            initial_delay=self.initial_delay,
            multiplier=self.multiplier,
            max_delay=self.max_delay,
            max_wait=max_wait,
            jitter=self.jitter,
            classify=self.classify,
        )

    @classmethod
    def from_config(cls, config: Config) -> RetryPolicy:
        """Build the default policy from reconciler configuration."""
        return cls(
            initial_delay=config.poll_initial_delay_seconds,
            multiplier=config.poll_multiplier,
            max_delay=config.poll_max_delay_seconds,
            max_wait=config.poll_timeout_seconds,
            jitter=config.poll_jitter,
        )
