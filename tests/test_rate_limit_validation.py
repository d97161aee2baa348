"""Tests for the token-bucket rate limiter in runtime.py.

Rate limits use Redis when configured and fall back to an in-process bucket.
Invalid window_seconds should be logged and default to 60 seconds.
"""
import asyncio
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from salonauth.service.runtime import Runtime, check_rate_limit, get_runtime


class TestCheckRateLimit:
    """Tests for the check_rate_limit function."""

    @pytest.fixture
    def mock_runtime(self):
        """Create a mock runtime with no Redis cache."""
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    @pytest.fixture
    def mock_runtime_with_cache(self):
        """Create a mock runtime with Redis cache."""
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=True)
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        assert await check_rate_limit(mock_runtime, "login:203.0.113.7", 0, 60) is True
        assert await check_rate_limit(mock_runtime, "login:203.0.113.7", -1, 60) is True

    async def test_invalid_window_logs_warning(self, mock_runtime):
        with patch("salonauth.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "login:203.0.113.7", 10, 0)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0

    async def test_valid_window_no_warning(self, mock_runtime):
        with patch("salonauth.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "login:203.0.113.7", 10, 60)
            mock_logger.warning.assert_not_called()

    async def test_bucket_empties_after_limit(self, mock_runtime):
        for i in range(5):
            assert await check_rate_limit(mock_runtime, "reset:203.0.113.7", 5, 60) is True, f"Call {i+1} should pass"
        assert await check_rate_limit(mock_runtime, "reset:203.0.113.7", 5, 60) is False

    async def test_return_remaining_reports_bucket_state(self, mock_runtime):
        allowed, remaining, reset_seconds = await check_rate_limit(
            mock_runtime, "general:203.0.113.7", 3, 60, return_remaining=True
        )
        assert (allowed, remaining, reset_seconds) == (True, 2, 0)

        for _ in range(2):
            await check_rate_limit(mock_runtime, "general:203.0.113.7", 3, 60)
        allowed, remaining, reset_seconds = await check_rate_limit(
            mock_runtime, "general:203.0.113.7", 3, 60, return_remaining=True
        )
        assert allowed is False
        assert remaining == 0
        assert 0 < reset_seconds <= 20

    async def test_different_keys_independent(self, mock_runtime):
        for _ in range(3):
            await check_rate_limit(mock_runtime, "login:a", 3, 60)

        assert await check_rate_limit(mock_runtime, "login:b", 3, 60) is True
        assert await check_rate_limit(mock_runtime, "login:a", 3, 60) is False

    async def test_uses_redis_when_available(self, mock_runtime_with_cache):
        await check_rate_limit(mock_runtime_with_cache, "login:a", 10, 60)

        mock_runtime_with_cache.cache.check_rate_limit.assert_called_once_with(
            "login:a", 10, 60, return_remaining=False, cost=1
        )

    async def test_bucket_refills_over_time(self, mock_runtime):
        for _ in range(2):
            await check_rate_limit(mock_runtime, "login:a", 2, 1)
        assert await check_rate_limit(mock_runtime, "login:a", 2, 1) is False

        # backdate the last refill by a full window
        tokens, _ = mock_runtime._local_rate_limits["login:a"]
        mock_runtime._local_rate_limits["login:a"] = (tokens, time.monotonic() - 2)

        assert await check_rate_limit(mock_runtime, "login:a", 2, 1) is True


async def test_concurrent_calls_share_one_bucket():
    runtime = get_runtime()
    results = await asyncio.gather(
        *[check_rate_limit(runtime, "login:concurrent", 10, 60) for _ in range(15)]
    )
    assert results.count(True) == 10
    assert results.count(False) == 5
