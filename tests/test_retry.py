import unittest
from unittest.mock import AsyncMock, patch

from changecrawler.application.retry import BackoffPolicy, with_backoff
from changecrawler.domain.exceptions import AuthError, RateLimitExceededException, StoreUnavailable, TransientError


class _FlakyOperation:
    def __init__(self, failures) -> None:
        self.failures = list(failures)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "ok"


class TestBackoffPolicy(unittest.TestCase):
    def test_delays_strictly_increase_until_cap(self) -> None:
        policy = BackoffPolicy(base=1.0, max_delay=1000.0, jitter=0.5)

        for _ in range(20):
            delays = [policy.delay(n) for n in range(6)]
            for earlier, later in zip(delays, delays[1:]):
                self.assertLess(earlier, later)

    def test_delay_is_capped(self) -> None:
        policy = BackoffPolicy(base=1.0, max_delay=10.0)

        self.assertEqual(policy.delay(20), 10.0)

    def test_rate_limit_hint_extends_wait(self) -> None:
        policy = BackoffPolicy(base=1.0, max_rate_limit_wait=60.0)

        self.assertEqual(policy.wait_for(RateLimitExceededException(retry_after=30), 0), 30.0)
        self.assertEqual(policy.wait_for(RateLimitExceededException(retry_after=900), 0), 60.0)

    def test_invalid_jitter_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            BackoffPolicy(jitter=1.0)


class TestWithBackoff(unittest.IsolatedAsyncioTestCase):
    async def test_succeeds_after_k_transient_failures(self) -> None:
        operation = _FlakyOperation([TransientError("503"), TransientError("503"), TransientError("reset")])
        policy = BackoffPolicy(max_attempts=5, base=1.0, max_delay=1000.0)

        with patch("changecrawler.application.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await with_backoff(operation, policy, description="fetch")

        self.assertEqual(result, "ok")
        self.assertEqual(operation.calls, 4)
        delays = [call.args[0] for call in mock_sleep.await_args_list]
        self.assertEqual(len(delays), 3)
        self.assertTrue(all(earlier < later for earlier, later in zip(delays, delays[1:])))

    async def test_reraises_after_max_attempts(self) -> None:
        operation = _FlakyOperation([TransientError(str(n)) for n in range(5)])
        policy = BackoffPolicy(max_attempts=3)

        with patch("changecrawler.application.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with self.assertRaises(TransientError):
                await with_backoff(operation, policy)

        self.assertEqual(operation.calls, 3)
        self.assertEqual(mock_sleep.await_count, 2)

    async def test_auth_errors_are_not_retried(self) -> None:
        operation = _FlakyOperation([AuthError("bad token")])

        with patch("changecrawler.application.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with self.assertRaises(AuthError):
                await with_backoff(operation, BackoffPolicy())

        self.assertEqual(operation.calls, 1)
        mock_sleep.assert_not_awaited()

    async def test_rate_limited_waits_for_retry_after(self) -> None:
        operation = _FlakyOperation([RateLimitExceededException(retry_after=42)])

        with patch("changecrawler.application.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await with_backoff(operation, BackoffPolicy(base=1.0))

        mock_sleep.assert_awaited_once_with(42.0)

    async def test_retry_on_selects_error_types(self) -> None:
        operation = _FlakyOperation([StoreUnavailable("down")])

        with patch("changecrawler.application.retry.asyncio.sleep", new_callable=AsyncMock):
            result = await with_backoff(operation, BackoffPolicy(), retry_on=(StoreUnavailable,))

        self.assertEqual(result, "ok")
