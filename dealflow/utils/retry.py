from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from ..config import RetryConfig
from ..errors import ActionExecutionError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


def compute_backoff(attempt: int, base: float = 2.0, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter.

    ``attempt`` is 1 for the first retry, so the delays grow as
    ``base, base**2, ...`` plus up to ``jitter`` seconds.
    """
    delay = base ** max(attempt, 1)
    return delay + random.uniform(0, jitter)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryConfig] = None,
    sleep: Sleep = asyncio.sleep,
    label: str = "operation",
) -> Tuple[T, int]:
    """Run ``operation`` until it succeeds or a non-retryable error is raised.

    Only :class:`ActionExecutionError` subclasses marked ``retryable`` are
    retried; every other exception propagates on the first attempt.

    Returns:
        The operation result and the number of attempts it took.
    """
    policy = policy or RetryConfig()
    attempt = 1
    while True:
        try:
            return await operation(), attempt
        except ActionExecutionError as exc:
            exc.attempts = attempt
            if not exc.retryable or attempt >= policy.max_attempts:
                raise
            delay = compute_backoff(attempt, policy.base, policy.jitter)
            logger.warning(
                f"{label} failed on attempt {attempt}/{policy.max_attempts}: {exc}; "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)
            attempt += 1
