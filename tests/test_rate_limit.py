"""Tests for the login rate limit and the in-process fixed window."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from storefront import app as app_module
from storefront.service import runtime as runtime_module
from storefront.service.runtime import Runtime, _close_cache, check_rate_limit


class TestCheckRateLimit:
    @pytest.fixture
    def mock_runtime(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        assert await check_rate_limit(mock_runtime, "k", 0, 60) == (True, 0, 0)

    async def test_window_drains_then_blocks(self, mock_runtime):
        results = [await check_rate_limit(mock_runtime, "k", 3, 900) for _ in range(4)]
        assert [allowed for allowed, _, _ in results] == [True, True, True, False]
        assert [remaining for _, remaining, _ in results[:3]] == [2, 1, 0]
        assert results[3][2] > 0

    async def test_keys_are_independent(self, mock_runtime):
        assert (await check_rate_limit(mock_runtime, "a", 1, 900))[0] is True
        assert (await check_rate_limit(mock_runtime, "a", 1, 900))[0] is False
        assert (await check_rate_limit(mock_runtime, "b", 1, 900))[0] is True

    async def test_invalid_window_logs_warning(self, mock_runtime):
        with patch("storefront.service.runtime.logger") as mock_logger:
            allowed, _, _ = await check_rate_limit(mock_runtime, "k", 10, 0)
        assert allowed is True
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "rate_limit_invalid_window"

    async def test_cache_is_used_when_present(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=(False, 0, 42))
        assert await check_rate_limit(runtime, "k", 5, 900) == (False, 0, 42)
        runtime.cache.check_rate_limit.assert_awaited_once_with("k", 5, 900, cost=1)


class TestFixedWindow:
    @pytest.fixture
    def mock_runtime(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    @pytest.fixture
    def clock(self, monkeypatch):
        now = {"t": 1000.0}
        monkeypatch.setattr(runtime_module, "_monotonic", lambda: now["t"])
        return now

    async def test_steady_attempts_capped_within_window(self, mock_runtime, clock):
        start = clock["t"]
        allowed = 0
        for minute in range(15):
            for _ in range(5):
                clock["t"] = start + minute * 60
                ok, _, _ = await check_rate_limit(mock_runtime, "login:ip", 5, 900)
                allowed += ok
        assert allowed == 5

    async def test_sixth_attempt_late_in_window_refused(self, mock_runtime, clock):
        start = clock["t"]
        for _ in range(5):
            assert (await check_rate_limit(mock_runtime, "k", 5, 900))[0] is True
        clock["t"] = start + 899
        allowed, remaining, reset_seconds = await check_rate_limit(mock_runtime, "k", 5, 900)
        assert (allowed, remaining, reset_seconds) == (False, 0, 1)

    async def test_window_reopens_after_expiry(self, mock_runtime, clock):
        start = clock["t"]
        for _ in range(6):
            await check_rate_limit(mock_runtime, "k", 5, 900)
        clock["t"] = start + 900
        assert await check_rate_limit(mock_runtime, "k", 5, 900) == (True, 4, 900)

    async def test_expired_windows_pruned_when_full(self, mock_runtime, clock, monkeypatch):
        monkeypatch.setattr(runtime_module, "LOCAL_RATE_LIMIT_MAX_KEYS", 3)
        start = clock["t"]
        for key in ("a", "b", "c"):
            await check_rate_limit(mock_runtime, key, 5, 60)
        clock["t"] = start + 61
        await check_rate_limit(mock_runtime, "d", 5, 60)
        assert set(mock_runtime._local_rate_limits) == {"d"}

    async def test_live_windows_capped(self, mock_runtime, clock, monkeypatch):
        monkeypatch.setattr(runtime_module, "LOCAL_RATE_LIMIT_MAX_KEYS", 3)
        start = clock["t"]
        for offset, key in enumerate(("a", "b", "c", "d")):
            clock["t"] = start + offset
            await check_rate_limit(mock_runtime, key, 5, 60)
        assert set(mock_runtime._local_rate_limits) == {"b", "c", "d"}


class TestCloseCache:
    async def test_close_inside_loop_is_tracked_and_logged(self):
        cache = MagicMock()
        cache.close = AsyncMock(side_effect=OSError("gone"))
        with patch("storefront.service.runtime.logger") as mock_logger:
            task = _close_cache(cache)
            assert task in runtime_module._pending_cache_closes
            await asyncio.gather(task, return_exceptions=True)
            await asyncio.sleep(0)
        assert task not in runtime_module._pending_cache_closes
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "runtime_cache_close_failed"


class TestLoginRateLimit:
    def test_sixth_attempt_from_same_ip_is_limited(self, make_user):
        make_user("alice")
        client = TestClient(app_module.app)
        statuses = []
        for _ in range(6):
            response = client.post(
                "/api/v1/auth/login", json={"identifier": "alice", "password": "Wrong1!aa"}
            )
            statuses.append(response.status_code)
        assert statuses == [401] * 5 + [429]
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert int(response.headers["Retry-After"]) > 0
