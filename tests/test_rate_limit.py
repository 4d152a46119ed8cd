"""Tests for the token-bucket rate limit in runtime.py.

Without Redis the bucket lives in-process; an invalid window is logged and
treated as 60 seconds.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ethosync.service.runtime import Runtime, check_rate_limit


class TestCheckRateLimit:
    @pytest.fixture
    def mock_runtime(self):
        """A runtime with no Redis cache."""
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    @pytest.fixture
    def mock_runtime_with_cache(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=(True, 4, 0))
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        assert await check_rate_limit(mock_runtime, "key", 0, 60) is True
        assert await check_rate_limit(mock_runtime, "key", -1, 60) is True

    async def test_bucket_exhausts_then_refuses(self, mock_runtime):
        results = [
            await check_rate_limit(mock_runtime, "provision:u1", 3, 60, return_remaining=True)
            for _ in range(4)
        ]

        assert [allowed for allowed, _, _ in results] == [True, True, True, False]
        assert [remaining for _, remaining, _ in results[:3]] == [2, 1, 0]
        assert results[3][2] > 0

    async def test_keys_are_independent(self, mock_runtime):
        assert await check_rate_limit(mock_runtime, "provision:a", 1, 60) is True
        assert await check_rate_limit(mock_runtime, "provision:a", 1, 60) is False
        assert await check_rate_limit(mock_runtime, "provision:b", 1, 60) is True

    async def test_invalid_window_logs_warning(self, mock_runtime):
        with patch("ethosync.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "key", 10, 0)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0

    async def test_redis_cache_used_when_present(self, mock_runtime_with_cache):
        result = await check_rate_limit(
            mock_runtime_with_cache, "webhook:u1", 5, 60, return_remaining=True
        )

        assert result == (True, 4, 0)
        mock_runtime_with_cache.cache.check_rate_limit.assert_awaited_once_with(
            "webhook:u1", 5, 60, return_remaining=True, cost=1
        )
