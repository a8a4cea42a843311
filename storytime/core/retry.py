"""
StoryTime — Retry/Backoff Policy.

One reusable policy per operation class, each with its own retry ceiling
(total attempts) and exponential backoff with jitter. Once the ceiling is
reached the last failure is re-raised as the terminal result; whether that
failure is retried on the next scheduled cycle is the caller's business.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationClass(str, Enum):
    EXTERNAL_FETCH = "external-fetch"
    AI_GENERATION = "ai-generation"
    NOTIFICATION = "notification"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry ceiling and backoff shape for one operation class."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.3

    def backoff(self, attempt: int, floor: float | None = None) -> float:
        """Delay in seconds before retry number `attempt` (1 = first retry).

        base * 2^(attempt-1), capped at max_delay, jittered by ±jitter, and
        never below `floor` (a provider-supplied retry-after hint).
        """
        delay = min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)
        spread = delay * self.jitter
        delay = delay - spread + random.random() * 2 * spread
        if floor is not None:
            delay = max(delay, floor)
        return max(delay, 0.0)


def policy_for(operation: OperationClass) -> RetryPolicy:
    """Build the configured policy for an operation class."""
    from storytime.config import settings

    ceilings = {
        OperationClass.EXTERNAL_FETCH: settings.RETRY_EXTERNAL_FETCH,
        OperationClass.AI_GENERATION: settings.RETRY_AI_GENERATION,
        OperationClass.NOTIFICATION: settings.RETRY_NOTIFICATION,
    }
    return RetryPolicy(
        max_attempts=max(ceilings[operation], 1),
        base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        max_delay=settings.RETRY_MAX_DELAY_SECONDS,
    )


async def run_with_retry(
    operation: OperationClass,
    func: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[BaseException], ...],
    policy: RetryPolicy | None = None,
    retry_after: Callable[[BaseException], float | None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "",
) -> T:
    """Call `func` until it succeeds or the operation's ceiling is reached.

    Only exceptions in `retry_on` are retried; anything else propagates at
    once. `retry_after` may extract a provider hint from the exception to
    use as a floor on the delay.
    """
    policy = policy or policy_for(operation)
    attempt = 1
    while True:
        try:
            return await func()
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                logger.error(
                    "%s%s failed after %d attempt(s): %s",
                    operation.value, f" [{label}]" if label else "", attempt, exc,
                )
                raise
            floor = retry_after(exc) if retry_after else None
            delay = policy.backoff(attempt, floor=floor)
            logger.warning(
                "%s%s attempt %d/%d failed (%s), retrying in %.1fs",
                operation.value, f" [{label}]" if label else "",
                attempt, policy.max_attempts, exc, delay,
            )
            await sleep(delay)
            attempt += 1
