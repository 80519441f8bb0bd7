"""
Unit tests for retry_on_exception and RetryConfig.
"""

import pytest

from service_common.retry import RetryConfig, RetryError, retry_on_exception


class TestRetryConfig:
    """Test cases for the backoff policy."""

    def test_delay_grows_exponentially(self):
        """Test each attempt doubles the delay."""
        config = RetryConfig(base_delay=1.0, jitter=False)

        assert [config.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self):
        """Test the delay never exceeds max_delay."""
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)

        assert config.delay(10) == 5.0

    def test_jitter_stays_within_ten_percent(self):
        """Test jittered delays stay near the nominal value."""
        config = RetryConfig(base_delay=2.0, jitter=True)

        for _ in range(50):
            assert 1.8 <= config.delay(1) <= 2.2


class TestRetryOnException:
    """Test cases for the retry decorator."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        """Test the call is repeated until it succeeds."""
        calls = []

        @retry_on_exception((ConnectionError,), RetryConfig(max_attempts=3, base_delay=0.0, jitter=False))
        async def fetch_keys():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("issuer unavailable")
            return {"keys": []}

        assert await fetch_keys() == {"keys": []}
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        """Test the last failure is wrapped in RetryError."""
        calls = []

        @retry_on_exception((ConnectionError,), RetryConfig(max_attempts=2, base_delay=0.0, jitter=False))
        async def fetch_keys():
            calls.append(1)
            raise ConnectionError("issuer unavailable")

        with pytest.raises(RetryError) as exc_info:
            await fetch_keys()

        assert len(calls) == 2
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_exception, ConnectionError)
        assert exc_info.value.__cause__ is exc_info.value.last_exception

    @pytest.mark.asyncio
    async def test_other_exceptions_are_not_retried(self):
        """Test an unlisted exception propagates on the first attempt."""
        calls = []

        @retry_on_exception((ConnectionError,), RetryConfig(max_attempts=5, base_delay=0.0, jitter=False))
        async def fetch_keys():
            calls.append(1)
            raise ValueError("malformed key set")

        with pytest.raises(ValueError):
            await fetch_keys()

        assert len(calls) == 1

    def test_wrapper_keeps_the_function_name(self):
        """Test the decorated function still looks like the original."""
        @retry_on_exception()
        async def fetch_keys():
            return None

        assert fetch_keys.__name__ == "fetch_keys"
