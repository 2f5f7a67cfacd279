"""
Retry helpers with capped exponential backoff.

The delay calculation is kept separate from the sleeping so both can be
tested without real waits.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class ExponentialBackoff:
    """Maps an attempt number to a delay.

    Attempt 0 waits ``initial_delay``; every further attempt multiplies the
    delay by ``multiplier`` until ``max_delay`` is reached.
    """

    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.initial_delay < 0:
            raise ValueError(f"Initial delay must be non-negative, got {self.initial_delay}")
        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"Max delay ({self.max_delay}) must be >= initial delay ({self.initial_delay})"
            )
        if self.multiplier < 1:
            raise ValueError(f"Multiplier must be >= 1, got {self.multiplier}")

    def delay(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError(f"Attempt must be non-negative, got {attempt}")
        # Cap the exponent so huge attempt counts cannot overflow the float
        exponent = min(attempt, 64)
        return min(self.initial_delay * (self.multiplier ** exponent), self.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff: ExponentialBackoff,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: SleepFunc = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``attempts`` are used up.

    Args:
        operation: Zero-argument coroutine factory
        attempts: Total number of tries (at least 1)
        backoff: Delay calculator used between tries
        retry_on: Exception types that trigger a retry
        sleep: Awaitable sleep, replaceable in tests
        description: Name used in log messages

    Returns:
        The result of the first successful call

    Raises:
        The last exception once all attempts failed, or immediately for
        exceptions not listed in ``retry_on``
    """
    if attempts < 1:
        raise ValueError(f"Attempts must be at least 1, got {attempts}")

    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt + 1 >= attempts:
                logger.warning(f"{description} failed after {attempts} attempts: {e}")
                raise
            delay = backoff.delay(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{attempts}): {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            await sleep(delay)

    raise AssertionError("unreachable")
