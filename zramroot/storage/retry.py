"""Bounded retry and bounded wait helpers.

One combinator shared by root-device waits, zram candidate attempts and
per-unit copy retries, instead of ad-hoc sleep loops in each component.

Example:
    >>> policy = RetryPolicy(attempts=3, delay=1.0)
    >>> retry_call(lambda attempt: copy_unit(unit), policy, retry_on=(UnitCopyFailedError,))
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar


T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Maximum attempts and the pause between them."""

    attempts: int
    delay: float = 1.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {self.attempts}")
        if self.delay < 0:
            raise ValueError(f"delay must be >= 0, got {self.delay}")


def retry_call(
    func: Callable[[int], T],
    policy: RetryPolicy,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func(attempt)`` until it succeeds or the policy is exhausted.

    ``attempt`` is zero-based so callers can derive per-attempt parameters
    (e.g. candidate device numbers). No pause follows the final attempt.

    Args:
        func: Callable receiving the attempt index
        policy: Attempts and delay
        retry_on: Exception types that trigger another attempt; anything
            else propagates immediately
        on_retry: Called with (attempt, error) before each pause
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever ``func`` returned on its first successful attempt

    Raises:
        The last exception raised by ``func`` once attempts are exhausted
    """
    last_error: Optional[BaseException] = None
    for attempt in range(policy.attempts):
        try:
            return func(attempt)
        except retry_on as error:
            last_error = error
            if attempt < policy.attempts - 1:
                if on_retry is not None:
                    on_retry(attempt, error)
                if policy.delay:
                    sleep(policy.delay)
    assert last_error is not None
    raise last_error


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    *,
    interval: float = 1.0,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``predicate`` until it returns True or ``timeout`` seconds pass.

    The predicate is always evaluated at least once, and once more after
    the deadline so a device that appears during the last pause counts.

    Returns:
        True if the predicate became true, False on timeout
    """
    deadline = clock() + timeout
    while True:
        if predicate():
            return True
        if clock() >= deadline:
            return predicate()
        sleep(interval)
