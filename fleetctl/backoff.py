"""Exponential backoff retry for polling the remote API.

``retry`` keeps awaiting an operation until it returns.  Raising
:class:`~fleetctl.errors.PermanentError` stops immediately; running out of
the policy's elapsed-time budget (or the caller's deadline) raises
:class:`~fleetctl.errors.WaitTimeoutError` chained to the last failure.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import PermanentError, WaitTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ExponentialBackOff:
    """Backoff policy, all durations in seconds.

    Each wait is drawn from ``[interval * (1 - r), interval * (1 + r)]``
    where ``r`` is ``randomization_factor``; the interval is then multiplied
    by ``multiplier`` up to ``max_interval``.  Retrying stops once elapsed
    time plus the next wait would exceed ``max_elapsed_time`` (0 disables
    the budget).
    """

    initial_interval: float = 0.5
    multiplier: float = 1.5
    randomization_factor: float = 0.5
    max_interval: float = 60.0
    max_elapsed_time: float = 15 * 60.0

    def intervals(self, rand: Callable[[], float] = random.random):
        """Yield successive randomised wait times (infinite)."""
        current = self.initial_interval
        while True:
            delta = self.randomization_factor * current
            low = current - delta
            high = current + delta
            yield low + rand() * (high - low)
            if current >= self.max_interval / self.multiplier:
                current = self.max_interval
            else:
                current *= self.multiplier


UPGRADE_STATUS_BACKOFF = ExponentialBackOff(
    initial_interval=10.0,
    multiplier=1.0,
    randomization_factor=0.0,
    max_interval=60.0,
    max_elapsed_time=10 * 60.0,
)

APPLIANCE_STATE_BACKOFF = ExponentialBackOff(
    initial_interval=10.0,
    multiplier=2.0,
    randomization_factor=0.7,
    max_interval=5 * 60.0,
    max_elapsed_time=10 * 60.0,
)

BACKUP_STATUS_BACKOFF = ExponentialBackOff()

FILE_STATUS_BACKOFF = ExponentialBackOff(
    initial_interval=2.0,
    multiplier=1.5,
    randomization_factor=0.2,
    max_interval=30.0,
    max_elapsed_time=15 * 60.0,
)


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: ExponentialBackOff,
    *,
    deadline: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    rand: Callable[[], float] = random.random,
) -> T:
    """Await ``operation()`` until it succeeds or the budget runs out.

    Args:
        operation: Zero-argument coroutine function. Any exception other
            than :class:`PermanentError` counts as "not yet".
        policy: Backoff policy.
        deadline: Optional absolute ``clock()`` value after which no further
            attempt is started.
        sleep: Coroutine used to wait between attempts.
        clock: Monotonic clock, in seconds.
        rand: Source of uniform ``[0, 1)`` values for randomisation.

    Returns:
        The operation's result.

    Raises:
        PermanentError: as raised by the operation.
        WaitTimeoutError: when the budget or deadline is exhausted.
    """
    start = clock()
    intervals = policy.intervals(rand)
    attempt = 0
    while True:
        attempt += 1
        try:
            if deadline is None:
                return await operation()
            remaining = deadline - clock()
            if remaining <= 0:
                raise WaitTimeoutError("deadline exceeded before attempt")
            try:
                return await asyncio.wait_for(operation(), timeout=remaining)
            except asyncio.TimeoutError as exc:
                if clock() >= deadline:
                    raise WaitTimeoutError(f"deadline exceeded during attempt {attempt}") from exc
                raise
        except (PermanentError, WaitTimeoutError):
            raise
        except Exception as exc:
            last_exc = exc

        wait = next(intervals)
        now = clock()
        elapsed = now - start
        if policy.max_elapsed_time and elapsed + wait > policy.max_elapsed_time:
            raise WaitTimeoutError(
                f"gave up after {attempt} attempts in {elapsed:.0f}s: {last_exc}"
            ) from last_exc
        if deadline is not None and now + wait > deadline:
            raise WaitTimeoutError(
                f"deadline exceeded after {attempt} attempts: {last_exc}"
            ) from last_exc
        logger.debug("attempt %d failed (%s), retrying in %.1fs", attempt, last_exc, wait)
        await sleep(wait)
