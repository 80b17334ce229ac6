"""Bounded retry with exponential backoff and full jitter.

Only errors marked retryable (RateLimitedException, BackendUnavailableException)
are retried; everything else propagates on the first failure. A backend-supplied
Retry-After wins over the computed delay when it is larger.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from mailhub.domain.exceptions import MailhubException
from mailhub.shared.telemetry.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff bounds."""

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 30.0

    def backoff(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Full-jitter delay before retry number `attempt` (1-based)."""
        ceiling = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return ceiling * rng()


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Run operation, retrying retryable mailhub errors up to policy.max_attempts.

    Raises:
        The last retryable error once attempts are exhausted, or the first
        non-retryable error immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except MailhubException as e:
            if not e.retryable or attempt >= policy.max_attempts:
                raise
            delay = policy.backoff(attempt, rng)
            retry_after = e.details.get("retry_after")
            if isinstance(retry_after, (int, float)) and retry_after > delay:
                delay = min(float(retry_after), policy.max_delay)
            logger.info(
                "%s failed (%s), retry %d/%d in %.2fs",
                description,
                e.error_code,
                attempt,
                policy.max_attempts - 1,
                delay,
            )
            await sleep(delay)
