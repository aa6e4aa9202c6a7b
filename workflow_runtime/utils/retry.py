from __future__ import annotations

import asyncio
import random


def compute_backoff(
    attempt: int, base_delay: float = 0.05, factor: float = 2.0, jitter: float = 0.05
) -> float:
    """Compute exponential backoff with jitter.

    ``attempt`` counts from zero, so the first retry waits ``base_delay``.
    """
    delay = base_delay * factor ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(
    attempt: int, base_delay: float = 0.05, factor: float = 2.0, jitter: float = 0.05
) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base_delay, factor, jitter)
    await asyncio.sleep(delay)
