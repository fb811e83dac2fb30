"""Exponential backoff used to retry the destination cache bootstrap.

The delay grows by ``multiplier`` after each failed attempt and is spread by
``randomization_factor`` so concurrent callers do not retry in lockstep. Retrying
stops once the time spent since the first attempt exceeds ``max_elapsed_time``.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
Notify = Callable[[Exception, float], None]


@dataclass
class ExponentialBackoff:
    initial_interval: float = 1.0
    multiplier: float = 2.0
    randomization_factor: float = 0.5
    max_interval: float = 60.0
    max_elapsed_time: float = 10.0

    def randomize(self, interval: float) -> float:
        delta = self.randomization_factor * interval
        return random.uniform(interval - delta, interval + delta)

    def next_interval(self, current: float) -> float:
        return min(current * self.multiplier, self.max_interval)


async def retry_notify(
    operation: Operation,
    policy: ExponentialBackoff,
    notify: Notify | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Run ``operation`` until it succeeds or the elapsed budget is spent.

    The last error is re-raised when retrying stops. ``notify`` receives every
    error that is going to be retried together with the delay before the next
    attempt.
    """
    started = clock()
    interval = policy.initial_interval
    while True:
        try:
            return await operation()
        except Exception as err:
            if clock() - started > policy.max_elapsed_time:
                raise
            delay = policy.randomize(interval)
            interval = policy.next_interval(interval)
            if notify is not None:
                notify(err, delay)
            await sleep(delay)
