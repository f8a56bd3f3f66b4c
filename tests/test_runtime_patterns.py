"""
Runtime pattern tests:
- Bounded retries with jittered backoff
- Retryable error classification
"""

import asyncio

import pytest

from pipewright.core.errors import TransportError
from pipewright.core.runtime_patterns import RetryPolicy, is_retryable_error, retry_with_policy
from pipewright.observability.metrics import get_metrics_collector

FAST = RetryPolicy(attempts=3, base=0.001, max_backoff=0.002)


class TestRetry:
    """Test bounded retries."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise ConnectionError("reset")
            return "ok"

        result = await retry_with_policy(flaky, FAST, is_retryable=is_retryable_error)

        assert result == "ok"
        assert calls == 3
        assert get_metrics_collector().total("transport_retry_attempts_total") == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_is_raised_immediately(self):
        calls = 0

        async def broken():
            nonlocal calls
            calls += 1
            raise ValueError("bad payload")

        with pytest.raises(ValueError):
            await retry_with_policy(broken, FAST, is_retryable=is_retryable_error)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_last_error_when_attempts_are_used_up(self):
        policy = RetryPolicy(attempts=2, base=0.001, max_backoff=0.001)
        calls = 0

        async def down():
            nonlocal calls
            calls += 1
            raise ConnectionError(f"attempt {calls}")

        with pytest.raises(ConnectionError, match="attempt 2"):
            await retry_with_policy(down, policy, is_retryable=is_retryable_error)
        assert get_metrics_collector().total("transport_retry_attempts_total") == 1

    @pytest.mark.asyncio
    async def test_single_attempt_never_sleeps(self):
        policy = RetryPolicy(attempts=1, base=10, max_backoff=10)

        async def down():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await asyncio.wait_for(
                retry_with_policy(down, policy, is_retryable=is_retryable_error), timeout=1
            )

    def test_backoff_is_bounded_and_jittered(self):
        policy = RetryPolicy(attempts=5, base=0.1, max_backoff=1.0)
        samples = [policy.backoff(10) for _ in range(50)]

        assert all(0.5 <= s <= 1.5 for s in samples)
        assert len(set(samples)) > 1
        assert 0.05 <= policy.backoff(0) <= 0.15

    def test_one_delay_per_retry(self):
        assert len(list(RetryPolicy(attempts=4, base=0.1, max_backoff=1.0).delays())) == 3


class TestRetryableErrors:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (ConnectionError("reset"), True),
            (asyncio.TimeoutError(), True),
            (OSError("network unreachable"), True),
            (TransportError("x", retryable=False), False),
            (TransportError("x"), True),
            (ValueError("bad"), False),
        ],
    )
    def test_classification(self, error, expected):
        assert is_retryable_error(error) is expected

    @pytest.mark.parametrize("status,expected", [(429, True), (503, True), (404, False)])
    def test_status_codes(self, status, expected):
        error = RuntimeError("http")
        error.status_code = status
        assert is_retryable_error(error) is expected
