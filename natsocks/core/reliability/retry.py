"""
Bounded retry and polling.

Every wait in a deployment run is a bounded poll with a fixed interval:
the target host offers no event-driven readiness signal. This module is
the single implementation of that loop, shared by the probe, the
artifact fetcher, the supervisor and the readiness verifier.

Both helpers take injectable ``sleep`` and ``clock`` callables so tests
can run them against a fake clock.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PollOutcome(Generic[T]):
    """Result of a bounded poll."""

    ok: bool
    attempts: int
    elapsed: float
    value: T | None = None


def poll_until(
    check: Callable[[], T],
    *,
    attempts: int,
    interval: float,
    budget: float | None = None,
    label: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollOutcome[T]:
    """Call ``check`` until it returns a truthy value.

    Stops after ``attempts`` calls, or once ``budget`` seconds of
    wall-clock time would be exceeded by the next sleep. Never sleeps
    after the last attempt.

    Args:
        check: Zero-argument predicate. Its truthy return value is
            passed back in ``PollOutcome.value``.
        attempts: Maximum number of calls (>= 1).
        interval: Fixed sleep between calls.
        budget: Optional wall-clock ceiling in seconds.
        label: Name used in debug logs.
    """
    attempts = max(1, attempts)
    start = clock()
    value: T | None = None

    for attempt in range(1, attempts + 1):
        value = check()
        if value:
            return PollOutcome(True, attempt, clock() - start, value)

        if attempt == attempts:
            break
        elapsed = clock() - start
        if budget is not None and elapsed + interval > budget:
            logger.debug("Poll for %s: budget %.1fs exhausted", label, budget)
            return PollOutcome(False, attempt, elapsed, value)
        logger.debug("Poll for %s: attempt %d/%d not ready", label, attempt, attempts)
        sleep(interval)

    return PollOutcome(False, attempts, clock() - start, value)


def retry_call(
    fn: Callable[[], T],
    *,
    attempts: int,
    delay: float,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    should_retry: Callable[[BaseException], bool] | None = None,
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` up to ``attempts`` times with a fixed ``delay``.

    A ``retry_on`` exception for which ``should_retry`` returns False is
    re-raised immediately; otherwise the last one is re-raised once
    attempts are exhausted.
    """
    attempts = max(1, attempts)
    last_exc: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            last_exc = exc
            if attempt < attempts:
                logger.info(
                    "%s failed (attempt %d/%d): %s — retrying in %.1fs",
                    label, attempt, attempts, exc, delay,
                )
                sleep(delay)

    assert last_exc is not None
    raise last_exc
