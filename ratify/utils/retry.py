from __future__ import annotations

import asyncio
import random

# seconds
MAX_RETRY_DELAY = 30.0


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    max_delay: float = MAX_RETRY_DELAY,
) -> float:
    """Exponential delay for ``attempt`` (1-based) plus jitter, capped at ``max_delay``."""
    return min(base ** attempt + random.uniform(0, jitter), max_delay)


async def schedule_retry(attempt: int, base: float = 1.5) -> float:
    """Sleep before retry ``attempt`` and return how long we waited."""
    delay = compute_backoff(attempt, base=base)
    await asyncio.sleep(delay)
    return delay
