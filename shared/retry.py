"""
Retry mechanism for fetch, mutation and subscription functions.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from shared.errors import InvalidPolicyError, is_retryable
from shared.logging import get_logger


BackoffFn = Callable[[int], float]
RetryCallback = Callable[[BaseException, int, float], None]


def exponential_backoff(base_delay: float = 0.5,
                        multiplier: float = 1.5,
                        max_delay: float = 30.0,
                        jitter: float = 0.5,
                        rng: Optional[random.Random] = None) -> BackoffFn:
    """Exponential curve randomized by +/- ``jitter`` and capped at ``max_delay``."""
    randomizer = rng or random.Random()

    def backoff(attempt: int) -> float:
        delay = base_delay * (multiplier ** (attempt - 1))
        if jitter:
            delay *= randomizer.uniform(1.0 - jitter, 1.0 + jitter)
        return max(0.0, min(delay, max_delay))

    return backoff


def linear_backoff(base_delay: float = 1.0, max_delay: float = 60.0) -> BackoffFn:
    """Delay grows by ``base_delay`` per failed attempt."""

    def backoff(attempt: int) -> float:
        return max(0.0, min(base_delay * attempt, max_delay))

    return backoff


def fixed_backoff(delay: float = 1.0) -> BackoffFn:
    """Same delay between every attempt."""

    def backoff(attempt: int) -> float:
        return max(0.0, delay)

    return backoff


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior.

    ``max_attempts`` counts the first call, so ``max_attempts=3`` means one
    call plus at most two retries. ``backoff`` receives the 1-based number of
    the attempt that just failed and returns the delay in seconds.
    """

    max_attempts: int = 3
    backoff: BackoffFn = field(default_factory=exponential_backoff)
    should_retry: Callable[[BaseException], bool] = is_retryable

    def __post_init__(self):
        if self.max_attempts < 1:
            raise InvalidPolicyError(
                "max_attempts must be at least 1",
                {"field": "max_attempts", "value": self.max_attempts}
            )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after ``attempt`` failed."""
        return self.backoff(attempt)


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""
    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


async def call_with_retry(func: Callable[[], Awaitable[Any]],
                          policy: RetryPolicy,
                          *,
                          on_retry: Optional[RetryCallback] = None,
                          name: str = "fetch") -> Any:
    """Await ``func()`` until it succeeds or the policy gives up.

    Cancellation is never retried and propagates as-is.
    """
    logger = get_logger(f"retry.{name}")

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await func()

            if attempt > 1:
                logger.info(
                    "Retry succeeded",
                    attempt=attempt,
                    function=name
                )

            return result

        except Exception as e:
            if attempt == policy.max_attempts or not policy.should_retry(e):
                logger.warning(
                    "All retry attempts exhausted" if attempt == policy.max_attempts else "Error is not retryable",
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    function=name,
                    error=str(e)
                )
                raise RetryError(
                    f"{name} failed after {attempt} attempts",
                    last_exception=e,
                    attempts=attempt
                ) from e

            delay = policy.delay_for(attempt)

            logger.debug(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                delay=delay,
                function=name,
                error=str(e)
            )

            if on_retry is not None:
                on_retry(e, attempt, delay)

            await asyncio.sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RetryError(f"{name} made no attempts", last_exception=RuntimeError(name), attempts=0)
