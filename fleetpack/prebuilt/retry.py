"""Bounded retry policy with exponential backoff.

The policy is a plain value object so callers can inject it (and a fake
``sleep``). The retry loop itself is a ``tenacity.Retrying`` built from the
policy's values.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Raised when every attempt allowed by a RetryPolicy has failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error
        self.code = "retry_exhausted"


def _log_retry(retry_state: RetryCallState) -> None:
    """Log a failed attempt before tenacity sleeps."""
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Attempt %d failed (%s); retrying in %.1fs",
        retry_state.attempt_number,
        error,
        delay,
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed attempt count with capped exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1).
        initial_backoff: Delay before the second attempt, in seconds.
        multiplier: Factor applied to the delay after each retry.
        max_backoff: Upper bound for any single delay.
    """

    max_attempts: int = 3
    initial_backoff: float = 1.0
    multiplier: float = 2.0
    max_backoff: float = 30.0

    def __post_init__(self) -> None:
        """Validate policy values."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff values must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    def retrying(
        self,
        should_retry: Callable[[BaseException], bool],
        sleep: Callable[[float], None] = time.sleep,
    ) -> Retrying:
        """Build the tenacity controller for this policy.

        Args:
            should_retry: Predicate deciding whether an exception is retried.
            sleep: Sleep function (injectable for tests).

        Returns:
            A ``tenacity.Retrying`` that raises ``RetryError`` once attempts
            run out.
        """
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.initial_backoff,
                exp_base=self.multiplier,
                max=self.max_backoff,
            ),
            retry=retry_if_exception(should_retry),
            sleep=sleep,
            before_sleep=_log_retry,
            reraise=False,
        )

    def call(
        self,
        fn: Callable[[int], T],
        retry_on: tuple[type[Exception], ...],
        retryable: Callable[[Exception], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Call ``fn(attempt)`` until it succeeds or attempts run out.

        Args:
            fn: Operation to run; receives the 1-based attempt number.
            retry_on: Exception types that trigger a retry.
            retryable: Optional predicate; an exception it rejects is
                re-raised immediately.
            sleep: Sleep function (injectable for tests).

        Returns:
            The first successful result of ``fn``.

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error.
        """

        def should_retry(error: BaseException) -> bool:
            if not isinstance(error, retry_on):
                return False
            return retryable is None or retryable(error)

        try:
            for attempt in self.retrying(should_retry, sleep=sleep):
                with attempt:
                    return fn(attempt.retry_state.attempt_number)
        except RetryError as e:
            last = e.last_attempt
            error = last.exception()
            raise RetryExhaustedError(last.attempt_number, error) from error
        # Retrying either yields an attempt that returns or raises
        raise RuntimeError("retry loop ended without a result")


__all__ = ["RetryExhaustedError", "RetryPolicy"]
