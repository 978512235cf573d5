"""Bounded exponential backoff shared by every flaky ``gh`` call."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """Raised when every attempt of a retried operation has failed."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")


def _always(_exc: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, and how long to wait in between.

    The delay before attempt ``n + 1`` is
    ``base_delay * backoff_multiplier ** (n - 1)``: with the defaults that is
    2s, 4s, 8s, 16s.  Only exceptions accepted by *retryable* are retried;
    anything else propagates immediately.
    """

    max_attempts: int = 5
    base_delay: float = 2.0
    backoff_multiplier: float = 2.0
    retryable: Callable[[BaseException], bool] = field(default=_always, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the *attempt*-th failure (1-based)."""
        return self.base_delay * (self.backoff_multiplier ** (attempt - 1))

    def run(
        self,
        operation: Callable[[int], T],
        *,
        description: str = "operation",
        between_attempts: Callable[[int], T | None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Call ``operation(attempt)`` until it returns or attempts run out.

        *between_attempts* runs after each backoff sleep and before the next
        attempt.  Returning anything other than None from it ends the loop
        with that value; this is how callers re-probe for state another
        worker may have created in the meantime.
        """
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation(attempt)
            except Exception as exc:
                if not self.retryable(exc):
                    raise
                last_error = exc
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                log.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.0fs",
                    description, attempt, self.max_attempts, exc, delay,
                )
                sleep(delay)
                if between_attempts is not None:
                    found = between_attempts(attempt)
                    if found is not None:
                        return found
        raise RetryExhausted(description, self.max_attempts, last_error) from last_error
