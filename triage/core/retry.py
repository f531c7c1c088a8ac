"""Bounded retries for operations that are safe to repeat."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from triage.core.errors import RetriesExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(initial: float, factor: float = 2.0, cap: Optional[float] = None) -> Callable[[int], float]:
    """Return a backoff function: attempt 1 waits `initial`, each further attempt multiplies by `factor`."""

    def _backoff(attempt: int) -> float:
        delay = initial * (factor ** max(attempt - 1, 0))
        if cap is not None:
            delay = min(delay, cap)
        return delay

    return _backoff


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff: Callable[[int], float]


# Restriction set/remove against the cluster-management API.
ACTION_RETRY_POLICY = RetryPolicy(max_attempts=10, backoff=exponential_backoff(2.0))

# Whole investigation runs: 3 retries after the first attempt.
INVESTIGATION_RETRY_POLICY = RetryPolicy(max_attempts=4, backoff=exponential_backoff(1.0, cap=10.0))


def with_retries(
    operation: Callable[[], T],
    policy: RetryPolicy = ACTION_RETRY_POLICY,
    *,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """
    Invoke `operation` until it succeeds or `policy.max_attempts` is reached.

    Args:
        operation: Zero-arg callable to invoke
        policy: Attempt bound and backoff schedule
        should_retry: Optional predicate; errors it rejects propagate immediately
        sleep: Sleep function (injectable for tests)
        description: Used in log lines

    Returns:
        The first successful result

    Raises:
        RetriesExhaustedError chaining the last failure once all attempts fail
    """
    attempts = max(1, policy.max_attempts)
    attempt = 1

    while True:
        try:
            return operation()
        except Exception as e:
            if should_retry is not None and not should_retry(e):
                raise
            if attempt >= attempts:
                raise RetriesExhaustedError(attempts, e) from e
            delay = policy.backoff(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s", description, attempt, attempts, delay, e
            )
            sleep(delay)
            attempt += 1
