"""Bounded retry policy for upstream calls.

The policy is a small state machine so the attempt budget and the backoff
schedule can be checked without any network I/O::

    Attempting(n) --ok--> Succeeded
    Attempting(n) --retryable, n+1 < max--> RetryScheduled(n+1, delay)
    Attempting(n) --otherwise--> Failed(error)

``AppstleClient`` drives the loop with tenacity. A ``RetryLoop`` per call
feeds every outcome through ``RetryPolicy.advance`` and sleeps for the delay
of the resulting ``RetryScheduled`` state, so the live loop and the state
machine share one decision.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field

from tenacity import RetryCallState

from .config import RetryConfig
from .errors import UpstreamError


@dataclass(frozen=True, slots=True)
class Attempting:
    attempt: int


@dataclass(frozen=True, slots=True)
class Succeeded:
    attempts: int


@dataclass(frozen=True, slots=True)
class RetryScheduled:
    attempt: int
    delay_ms: float


@dataclass(frozen=True, slots=True)
class Failed:
    error: UpstreamError
    attempts: int


RetryState = Attempting | Succeeded | RetryScheduled | Failed


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 10000
    jitter: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
        )

    def backoff_ms(self, attempt: int) -> float:
        """Delay before retrying after the 0-indexed ``attempt`` failed."""
        exponential = self.base_delay_ms * (2**attempt)
        return min(exponential + self.jitter() * 0.1 * exponential, self.max_delay_ms)

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, UpstreamError) and exc.retryable

    def will_retry(self, attempt: int, error: UpstreamError) -> bool:
        return self.is_retryable(error) and attempt + 1 < self.max_attempts

    def advance(
        self, state: Attempting, error: UpstreamError | None = None
    ) -> Succeeded | RetryScheduled | Failed:
        if error is None:
            return Succeeded(attempts=state.attempt + 1)
        if self.will_retry(state.attempt, error):
            return RetryScheduled(
                attempt=state.attempt + 1, delay_ms=self.backoff_ms(state.attempt)
            )
        return Failed(error=error, attempts=state.attempt + 1)

    def loop(self) -> RetryLoop:
        return RetryLoop(self)


@dataclass(slots=True)
class RetryLoop:
    """tenacity hooks for one logical call, driven by ``RetryPolicy.advance``."""

    policy: RetryPolicy
    state: RetryState = field(default_factory=lambda: Attempting(0))

    def retry(self, retry_state: RetryCallState) -> bool:
        current = Attempting(retry_state.attempt_number - 1)
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            self.state = self.policy.advance(current)
            return False
        error = outcome.exception()
        if not isinstance(error, UpstreamError):
            return False
        self.state = self.policy.advance(current, error)
        return isinstance(self.state, RetryScheduled)

    def wait(self, retry_state: RetryCallState) -> float:
        """Seconds to sleep before the scheduled attempt."""
        if isinstance(self.state, RetryScheduled):
            return self.state.delay_ms / 1000
        return 0.0


__all__ = [
    "Attempting",
    "Succeeded",
    "RetryScheduled",
    "Failed",
    "RetryState",
    "RetryPolicy",
    "RetryLoop",
]
