"""
Tests for rate limiting.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.core import redis as redis_module
from app.core.rate_limit import check_rate_limit


class TestCheckRateLimit:
    """Tests for check_rate_limit."""

    @pytest.mark.asyncio
    async def test_memory_fallback_allows_up_to_limit(self):
        results = [await check_rate_limit("2fa_send:u1", 3, 600) for _ in range(4)]

        assert results == [True, True, True, False]

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        for _ in range(3):
            await check_rate_limit("2fa_send:u1", 3, 600)

        assert await check_rate_limit("2fa_send:u2", 3, 600) is True

    @pytest.mark.asyncio
    async def test_window_expiry(self):
        with patch("app.core.rate_limit.time.time", return_value=1000.0):
            for _ in range(3):
                await check_rate_limit("2fa_send:u1", 3, 600)
            assert await check_rate_limit("2fa_send:u1", 3, 600) is False

        with patch("app.core.rate_limit.time.time", return_value=1601.0):
            assert await check_rate_limit("2fa_send:u1", 3, 600) is True

    @pytest.mark.asyncio
    async def test_fail_closed_without_redis(self):
        assert await check_rate_limit("2fa_send:u1", 3, 600, fail_closed=True) is False

    @pytest.mark.asyncio
    async def test_uses_redis_when_available(self, monkeypatch):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[0, 2, 1, True])
        client = MagicMock()
        client.pipeline.return_value = pipe
        monkeypatch.setattr(redis_module, "redis_client", client)

        assert await check_rate_limit("2fa_send:u1", 3, 600, fail_closed=True) is True

        pipe.zcard.assert_called_once_with("2fa_send:u1")

    @pytest.mark.asyncio
    async def test_redis_at_limit(self, monkeypatch):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[0, 3, 1, True])
        client = MagicMock()
        client.pipeline.return_value = pipe
        monkeypatch.setattr(redis_module, "redis_client", client)

        assert await check_rate_limit("2fa_send:u1", 3, 600) is False

    @pytest.mark.asyncio
    async def test_redis_error_fails_closed(self, monkeypatch):
        pipe = MagicMock()
        pipe.execute = AsyncMock(side_effect=ConnectionError("redis down"))
        client = MagicMock()
        client.pipeline.return_value = pipe
        monkeypatch.setattr(redis_module, "redis_client", client)

        assert await check_rate_limit("2fa_send:u1", 3, 600, fail_closed=True) is False
