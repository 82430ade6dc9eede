"""
Unit tests for the export API retry policy
"""

import pytest
from unittest.mock import AsyncMock
import httpx

from core.exceptions import (
    BundleDownloadError,
    RateLimitError,
    ResourceNotFoundError,
    SourceServerError,
    SourceStatusError,
)
from ingestion.retry import RetryPolicy


class TestRetryDecision:
    """Test the retry decision table"""

    def test_rate_limited_with_hint(self):
        """429 with Retry-After: 5 waits the hinted 5 seconds"""
        decision = RetryPolicy().decide(RateLimitError("throttled", status_code=429, retry_after=5))

        assert decision.should_retry is True
        assert decision.wait == 5

    def test_rate_limited_without_hint(self):
        decision = RetryPolicy().decide(RateLimitError("throttled", status_code=429))

        assert decision.should_retry is True
        assert decision.wait == 10

    def test_not_found_is_permanent(self):
        decision = RetryPolicy().decide(ResourceNotFoundError("gone", status_code=404))

        assert decision.should_retry is False

    def test_bad_request_is_permanent(self):
        decision = RetryPolicy().decide(SourceStatusError("bad", status_code=400, retry_after=3))

        assert decision.should_retry is False

    def test_server_error_uses_default_wait(self):
        decision = RetryPolicy().decide(SourceServerError("unavailable", status_code=503))

        assert decision.should_retry is True
        assert decision.wait == 10

    def test_server_error_honours_hint(self):
        decision = RetryPolicy().decide(SourceServerError("unavailable", status_code=500, retry_after=2))

        assert decision == (True, 2)

    def test_transport_error_is_retried(self):
        """Errors without a status code are treated as transient"""
        decision = RetryPolicy().decide(httpx.ConnectError("Connection refused"))

        assert decision.should_retry is True
        assert decision.wait == 10

    def test_custom_default_wait(self):
        decision = RetryPolicy(default_wait=1.5).decide(TimeoutError())

        assert decision.wait == 1.5


class TestRetryCall:
    """Test bounded retry around an operation"""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        sleep = AsyncMock()
        operation = AsyncMock(return_value=b"[]")

        result = await RetryPolicy(sleep=sleep).call(operation, "fetch bundle 1")

        assert result == b"[]"
        operation.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=[
            RateLimitError("throttled", status_code=429, retry_after=5),
            b"[]",
        ])

        result = await RetryPolicy(sleep=sleep).call(operation, "fetch bundle 1")

        assert result == b"[]"
        assert operation.await_count == 2
        sleep.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        sleep = AsyncMock()
        last = SourceServerError("boom", status_code=502)
        operation = AsyncMock(side_effect=[
            SourceServerError("boom", status_code=500),
            httpx.ReadTimeout("slow"),
            last,
        ])

        with pytest.raises(BundleDownloadError) as exc_info:
            await RetryPolicy(sleep=sleep).call(operation, "fetch bundle 9", context={"bundle_id": 9})

        assert operation.await_count == 3
        # No sleep after the final attempt
        assert sleep.await_count == 2
        assert exc_info.value.original_exception is last
        assert exc_info.value.context["attempts"] == 3
        assert exc_info.value.context["bundle_id"] == 9

    @pytest.mark.asyncio
    async def test_permanent_error_stops_immediately(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=ResourceNotFoundError("gone", status_code=404))

        with pytest.raises(BundleDownloadError) as exc_info:
            await RetryPolicy(sleep=sleep).call(operation, "fetch bundle 3")

        operation.assert_awaited_once()
        sleep.assert_not_awaited()
        assert exc_info.value.context["attempts"] == 1
        assert isinstance(exc_info.value.__cause__, ResourceNotFoundError)
