"""Tests for rate limit validation in runtime.py.

Rate limits use the Redis token bucket (or its in-memory equivalent) with
configurable defaults. Invalid window_seconds should be logged and default
to 60 seconds.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest


class TestCheckRateLimit:
    """Tests for the check_rate_limit function."""

    @pytest.fixture
    def mock_runtime(self):
        """Create a mock runtime whose cache allows every request."""
        from shopgate.service.runtime import Runtime

        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=True)
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        """Rate limit of 0 or negative always passes."""
        from shopgate.service.runtime import check_rate_limit

        assert await check_rate_limit(mock_runtime, "test_key", 0, 60) is True
        assert await check_rate_limit(mock_runtime, "test_key", -1, 60) is True
        mock_runtime.cache.check_rate_limit.assert_not_called()

    async def test_zero_limit_with_remaining(self, mock_runtime):
        from shopgate.service.runtime import check_rate_limit

        result = await check_rate_limit(mock_runtime, "test_key", 0, 60, return_remaining=True)
        assert result == (True, 0, 0)

    async def test_invalid_window_logs_warning(self, mock_runtime):
        """Invalid window_seconds logs warning and defaults to 60."""
        from shopgate.service.runtime import check_rate_limit

        with patch("shopgate.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "test_key", 10, 0)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0

        mock_runtime.cache.check_rate_limit.assert_awaited_once_with(
            "test_key", 10, 60, return_remaining=False, cost=1
        )

    async def test_negative_window_logs_warning(self, mock_runtime):
        """Negative window_seconds logs warning and defaults to 60."""
        from shopgate.service.runtime import check_rate_limit

        with patch("shopgate.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "test_key", 10, -5)

            mock_logger.warning.assert_called_once()
            assert mock_logger.warning.call_args[1]["window_seconds"] == -5

    async def test_valid_window_no_warning(self, mock_runtime):
        """Valid window_seconds doesn't log warning."""
        from shopgate.service.runtime import check_rate_limit

        with patch("shopgate.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "test_key", 10, 60)

            mock_logger.warning.assert_not_called()

    async def test_denial_is_passed_through(self, mock_runtime):
        from shopgate.service.runtime import check_rate_limit

        mock_runtime.cache.check_rate_limit = AsyncMock(return_value=False)
        assert await check_rate_limit(mock_runtime, "ip:198.51.100.4", 10, 60) is False

    async def test_runtime_memory_cache(self):
        """The TEST_MODE runtime falls back to the in-memory bucket."""
        from shopgate.service.runtime import check_rate_limit, get_runtime
        from shopgate.storage.memory import MemoryCache

        runtime = get_runtime()
        assert isinstance(runtime.cache, MemoryCache)

        assert await check_rate_limit(runtime, "ip:203.0.113.7", 2, 60) is True
        assert await check_rate_limit(runtime, "ip:203.0.113.7", 2, 60) is True
        assert await check_rate_limit(runtime, "ip:203.0.113.7", 2, 60) is False
