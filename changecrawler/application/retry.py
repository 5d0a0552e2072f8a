import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from changecrawler.domain.exceptions import RateLimitExceededException, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with jitter.

    The n-th retry waits base * 2**n scaled by a random factor in
    [1, 1 + jitter). With jitter below 1, consecutive delays strictly
    increase until they reach max_delay.
    """
    max_attempts: int = 5
    base: float = 1.0
    max_delay: float = 120.0
    jitter: float = 0.5
    max_rate_limit_wait: float = 3600.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1).")

    def delay(self, retry: int) -> float:
        step = self.base * (2 ** retry)
        return min(step * (1 + random.uniform(0, self.jitter)), self.max_delay)

    def wait_for(self, error: Exception, retry: int) -> float:
        wait = self.delay(retry)
        if isinstance(error, RateLimitExceededException):
            hinted = error.wait_seconds()
            if hinted is not None:
                wait = max(wait, min(hinted, self.max_rate_limit_wait))
        return wait


RETRYABLE: Tuple[Type[BaseException], ...] = (TransientError, RateLimitExceededException)


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    description: str = "operation",
    retry_on: Tuple[Type[BaseException], ...] = RETRYABLE,
) -> T:
    """
    Runs operation until it succeeds, retrying retry_on errors up to
    policy.max_attempts attempts in total. The last error is re-raised.
    """
    retry = 0
    while True:
        try:
            return await operation()
        except retry_on as e:
            if retry + 1 >= policy.max_attempts:
                logger.error(f"{description} failed after {retry + 1} attempt(s): {e}")
                raise
            sleep_time = policy.wait_for(e, retry)
            logger.warning(
                f"{description} failed (attempt {retry + 1}/{policy.max_attempts}): {e}. "
                f"Retrying in {sleep_time:.1f}s..."
            )
            await asyncio.sleep(sleep_time)
            retry += 1
