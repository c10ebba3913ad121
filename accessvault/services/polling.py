from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from accessvault.core.errors import PollTimeoutError


logger = logging.getLogger(__name__)

T = TypeVar("T")


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    *,
    interval_s: float,
    max_attempts: int | None = None,
    timeout_s: float | None = None,
    label: str = "poll",
) -> T:
    # Bounded by attempts and/or time; fetch errors and cancellation propagate.
    if max_attempts is None and timeout_s is None:
        raise ValueError("poll_until requires max_attempts or timeout_s")
    if max_attempts is not None and max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    deadline = time.monotonic() + timeout_s if timeout_s is not None else None
    attempt = 0
    while True:
        attempt += 1
        value = await fetch()
        if predicate(value):
            return value
        if max_attempts is not None and attempt >= max_attempts:
            logger.info("poll_exhausted label=%s attempts=%s", label, attempt)
            raise PollTimeoutError(f"{label} did not complete after {attempt} attempts")
        sleep_s = interval_s
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info("poll_timed_out label=%s attempts=%s", label, attempt)
                raise PollTimeoutError(f"{label} did not complete within {timeout_s}s")
            sleep_s = min(interval_s, remaining)
        await asyncio.sleep(sleep_s)
