"""Tests for retry helpers used by collaborator delivery."""

from unittest.mock import AsyncMock, patch

import pytest

from jitguard.utils.retry import call_with_retry, retry_with_backoff


class TestRetryWithBackoff:
    """Test retry_with_backoff decorator."""

    @pytest.mark.asyncio
    async def test_success_after_failures(self):
        """Delivery succeeds once the sink recovers."""
        call_count = 0

        @retry_with_backoff(max_retries=3, base_delay=0)
        async def flaky_sink():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ConnectionError("sink unavailable")
            return "delivered"

        assert await flaky_sink() == "delivered"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_reraise(self):
        call_count = 0

        @retry_with_backoff(max_retries=2, base_delay=0)
        async def dead_sink():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("sink down")

        with pytest.raises(ConnectionError, match="sink down"):
            await dead_sink()

        # 1 initial + 2 retries
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_backoff_doubles(self):
        """Delays grow as base_delay * 2**n."""

        @retry_with_backoff(max_retries=3, base_delay=0.1)
        async def always_failing():
            raise ValueError("fail")

        with patch("jitguard.utils.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(ValueError):
                await always_failing()

        assert [c.args[0] for c in sleep.await_args_list] == [0.1, 0.2, 0.4]

    @pytest.mark.asyncio
    async def test_only_listed_exceptions_are_retried(self):
        call_count = 0

        @retry_with_backoff(max_retries=3, base_delay=0, retry_on=(ConnectionError,))
        async def wrong_payload():
            nonlocal call_count
            call_count += 1
            raise TypeError("bad payload")

        with pytest.raises(TypeError):
            await wrong_payload()

        assert call_count == 1

    @pytest.mark.asyncio
    async def test_preserves_function_metadata(self):
        @retry_with_backoff(max_retries=2)
        async def documented_function():
            """This is a documented function."""
            return "result"

        assert documented_function.__name__ == "documented_function"
        assert documented_function.__doc__ == "This is a documented function."


class FlakyNotifier:
    def __init__(self, failures: int):
        self.failures = failures
        self.received = []

    async def send(self, payload):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("blip")
        self.received.append(payload)
        return "ok"


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_passes_arguments_through(self):
        notifier = FlakyNotifier(failures=1)

        result = await call_with_retry(notifier.send, "payload", max_retries=1, base_delay=0)

        assert result == "ok"
        assert notifier.received == ["payload"]

    @pytest.mark.asyncio
    async def test_zero_retries(self):
        notifier = FlakyNotifier(failures=1)

        with pytest.raises(ConnectionError):
            await call_with_retry(notifier.send, "payload", max_retries=0, base_delay=0)

        assert notifier.received == []
