"""Retry logic with a fixed backoff schedule.

The X API asks clients to back off on 429. Instead of exponential delays the
engine waits through an explicit schedule (60s, 300s, 900s) and then gives
up. Respects the `retryable` attribute of XAutoError subclasses.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import ParamSpec, TypeVar

from .exceptions import XAutoError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Seconds to wait before each retry after a rate-limited attempt
RATE_LIMIT_BACKOFF_SCHEDULE: tuple[float, ...] = (60.0, 300.0, 900.0)

SleepFunc = Callable[[float], Awaitable[None]]


async def retry_on_schedule(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    schedule: Sequence[float] = RATE_LIMIT_BACKOFF_SCHEDULE,
    sleep: SleepFunc = asyncio.sleep,
    **kwargs: P.kwargs,
) -> T:
    """Call an async function, retrying retryable errors on a fixed schedule.

    Makes at most len(schedule) + 1 attempts. Non-retryable errors and
    exceptions outside the XAutoError hierarchy are raised immediately.

    Args:
        func: Async function to call.
        *args: Positional arguments for func.
        schedule: Delays in seconds before each retry.
        sleep: Awaitable sleep function (injectable for tests).
        **kwargs: Keyword arguments for func.

    Returns:
        Result from the first successful call.

    Raises:
        XAutoError: The last retryable error once the schedule is exhausted,
            or the first non-retryable one.
    """
    attempts = len(schedule) + 1

    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except XAutoError as e:
            if not e.retryable:
                logger.debug(
                    "Non-retryable error on attempt %d/%d: %s", attempt, attempts, e
                )
                raise

            if attempt == attempts:
                logger.warning(
                    "All %d attempts failed for %s: %s",
                    attempts,
                    getattr(func, "__name__", "call"),
                    e,
                )
                raise

            delay = schedule[attempt - 1]
            logger.info(
                "Attempt %d/%d failed for %s, retrying in %.0fs: %s",
                attempt,
                attempts,
                getattr(func, "__name__", "call"),
                delay,
                e,
            )
            await sleep(delay)

    raise RuntimeError("Retry logic error: no attempts made")
