from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 5


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay_seconds: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run an idempotent async operation, doubling the delay after each failure.

    Attempts are clamped to ``1..MAX_ATTEMPTS``. The last error is re-raised once
    attempts are exhausted; errors outside ``retry_on`` propagate immediately.
    """
    bounded_attempts = min(MAX_ATTEMPTS, max(1, attempts))
    delay = max(0.0, base_delay_seconds)
    for attempt in range(1, bounded_attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= bounded_attempts:
                logger.warning("%s failed after %s attempts: %s", description, attempt, exc)
                raise
            logger.info(
                "%s failed (attempt %s/%s): %s; retry in %.1fs",
                description,
                attempt,
                bounded_attempts,
                exc,
                delay,
            )
            await sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")  # pragma: no cover
