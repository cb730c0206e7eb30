"""
Unit tests for the retry decorator.
"""

import pytest

from shop_shared.retry import RetryConfig, RetryError, _calculate_delay, retry_on_exception


NO_WAIT = RetryConfig(max_attempts=3, base_delay=0, jitter=False)


class TestRetryOnException:
    """Test cases for retry_on_exception."""

    @pytest.mark.asyncio
    async def test_succeeds_after_failure(self):
        """Test a transient failure is retried."""
        calls = []

        @retry_on_exception((ConnectionError,), config=NO_WAIT)
        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("reset")
            return "ok"

        assert await flaky() == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_exhausted(self):
        """Test RetryError carries the last exception after max attempts."""
        @retry_on_exception((ConnectionError,), config=NO_WAIT)
        async def down():
            raise ConnectionError("refused")

        with pytest.raises(RetryError) as exc_info:
            await down()

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_exception, ConnectionError)

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate(self):
        """Test exceptions outside the retry list are raised immediately."""
        calls = []

        @retry_on_exception((ConnectionError,), config=NO_WAIT)
        async def broken():
            calls.append(1)
            raise KeyError("id")

        with pytest.raises(KeyError):
            await broken()
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_retry_if_rejects(self):
        """Test a predicate can mark an exception as permanent."""
        calls = []

        @retry_on_exception((ValueError,), config=NO_WAIT, retry_if=lambda e: "transient" in str(e))
        async def parse():
            calls.append(1)
            raise ValueError("permanent")

        with pytest.raises(ValueError, match="permanent"):
            await parse()
        assert len(calls) == 1

    def test_invalid_attempts(self):
        """Test at least one attempt is required."""
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)

    @pytest.mark.parametrize("strategy,attempt,expected", [
        ("exponential", 3, 4.0),
        ("linear", 3, 3.0),
        ("fixed", 3, 1.0),
        ("exponential", 10, 5.0),
    ])
    def test_delay(self, strategy, attempt, expected):
        """Test backoff strategies and the delay cap."""
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False, backoff_strategy=strategy)

        assert _calculate_delay(attempt, config) == expected
