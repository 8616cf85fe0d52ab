"""Bounded exponential back-off for transient I/O.

Only :class:`~coldstore.core.errors.TransientIOError` is retried; anything
else propagates immediately.  The delay before retry *n* (0-based) is
``base_delay * 2**n``; with the defaults of three attempts and a 10 s base
that is 10 s then 20 s.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, TypeVar

from coldstore.core.errors import TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float) -> float:
    return base_delay * (2**attempt)


async def retry_transient(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    step: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``func()`` up to *attempts* times, sleeping between transient failures.

    Raises:
        TransientIOError: The last transient error once attempts are exhausted.
    """
    for attempt in range(attempts):
        try:
            return await func()
        except TransientIOError as exc:
            if attempt + 1 >= attempts:
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                json.dumps(
                    {
                        "event": "transient_io_retry",
                        "step": step,
                        "attempt": attempt + 1,
                        "max_attempts": attempts,
                        "retry_in_seconds": delay,
                        "error": str(exc),
                    }
                )
            )
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
