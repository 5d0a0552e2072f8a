import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Optional

from changecrawler.domain.exceptions import RateLimitExceededException
from changecrawler.domain.models import RateLimitHint

logger = logging.getLogger(__name__)

# Seconds between request starts to avoid secondary rate limits
DEFAULT_MIN_INTERVAL = 1.0
DEFAULT_MAX_IN_FLIGHT = 2
DEFAULT_LEASE_TIMEOUT = 300.0
# Keep a few requests in reserve rather than draining the quota to zero
LOW_QUOTA_THRESHOLD = 10


class HostRateLimiter:
    """
    Throttle shared by every worker that talks to one provider host.

    A lease bounds the number of in-flight requests, spaces request starts
    by min_interval, and holds requests back while the provider quota is
    exhausted. Waiting longer than lease_timeout raises RateLimitExceededException.
    """

    def __init__(
        self,
        host: str,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        lease_timeout: float = DEFAULT_LEASE_TIMEOUT,
    ):
        self.host = host
        self.max_in_flight = max_in_flight
        self.min_interval = min_interval
        self.lease_timeout = lease_timeout
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._pace_lock = asyncio.Lock()
        self._last_start: Optional[float] = None
        self._blocked_until = 0.0

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(self._acquire(), timeout=self.lease_timeout)
        except asyncio.TimeoutError:
            raise RateLimitExceededException(
                message=f"No request lease for {self.host} within {self.lease_timeout:.0f}s."
            )
        try:
            yield
        finally:
            self._semaphore.release()

    async def _acquire(self) -> None:
        await self._semaphore.acquire()
        try:
            async with self._pace_lock:
                loop = asyncio.get_running_loop()
                now = loop.time()
                start = max(now, self._blocked_until)
                if self._last_start is not None:
                    start = max(start, self._last_start + self.min_interval)
                wait = start - now
                if wait > self.lease_timeout:
                    raise RateLimitExceededException(
                        retry_after=wait,
                        message=f"Requests to {self.host} are held back by the provider quota.",
                    )
                if wait > 0:
                    await asyncio.sleep(wait)
                self._last_start = loop.time()
        except BaseException:
            self._semaphore.release()
            raise

    def block_for(self, seconds: float) -> None:
        """Holds back every request to this host for the given number of seconds."""
        if seconds <= 0:
            return
        until = asyncio.get_running_loop().time() + seconds
        if until > self._blocked_until:
            self._blocked_until = until
            logger.warning(f"Rate limit on {self.host}: pausing requests for {seconds:.0f}s.")

    def observe(self, hint: Optional[RateLimitHint]) -> None:
        """Folds the quota reported by the provider into the throttle."""
        if hint is None:
            return
        exhausted = hint.throttled or (hint.remaining is not None and hint.remaining < LOW_QUOTA_THRESHOLD)
        if not exhausted:
            return
        if hint.reset_at is not None:
            self.block_for((hint.reset_at - datetime.now(timezone.utc)).total_seconds())
        else:
            self.block_for(self.min_interval * 60)

    def observe_error(self, error: RateLimitExceededException) -> None:
        wait = error.wait_seconds()
        if wait is not None:
            self.block_for(wait)


class RateLimiterRegistry:
    """One HostRateLimiter per provider host, created on first use."""

    def __init__(
        self,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        lease_timeout: float = DEFAULT_LEASE_TIMEOUT,
    ):
        self.max_in_flight = max_in_flight
        self.min_interval = min_interval
        self.lease_timeout = lease_timeout
        self._limiters: Dict[str, HostRateLimiter] = {}

    def for_host(self, host: str) -> HostRateLimiter:
        limiter = self._limiters.get(host)
        if limiter is None:
            limiter = HostRateLimiter(
                host,
                max_in_flight=self.max_in_flight,
                min_interval=self.min_interval,
                lease_timeout=self.lease_timeout,
            )
            self._limiters[host] = limiter
        return limiter
