"""
Unit tests for the Redis token backend and the cross-process refresh lock.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
import redis.asyncio as redis

from session_client.app.refresh.locks import EXTEND_SCRIPT, RELEASE_SCRIPT, RedisRefreshLock
from session_client.app.storage import RedisBackend, TokenStore
from session_client.app.storage.backends import REMOVE_IF_SCRIPT
from shared.errors import NetworkError, StorageError


class TestRedisBackend:
    """Test cases for RedisBackend."""

    @pytest.fixture
    def mock_redis(self):
        return AsyncMock()

    @pytest.fixture
    def backend(self, mock_redis):
        return RedisBackend("redis://localhost:6379/0", key_prefix="test:", client=mock_redis)

    @pytest.mark.asyncio
    async def test_prefixed_operations(self, backend, mock_redis):
        mock_redis.get.return_value = "a1"

        await backend.persist("accessToken", "a1")
        assert await backend.read("accessToken") == "a1"
        await backend.remove("accessToken")

        mock_redis.set.assert_called_once_with("test:accessToken", "a1")
        mock_redis.get.assert_called_once_with("test:accessToken")
        mock_redis.delete.assert_called_once_with("test:accessToken")

    @pytest.mark.asyncio
    async def test_remove_if_is_one_script_call(self, backend, mock_redis):
        mock_redis.eval.return_value = 2
        assert await backend.remove_if("accessToken", "a1", also=("tokenMetadata",)) is True

        mock_redis.eval.assert_called_once_with(
            REMOVE_IF_SCRIPT, 2, "test:accessToken", "test:tokenMetadata", "a1"
        )
        mock_redis.delete.assert_not_called()

        mock_redis.eval.return_value = 0
        assert await backend.remove_if("refreshToken", "r0") is False

    @pytest.mark.asyncio
    async def test_bytes_are_decoded(self, backend, mock_redis):
        mock_redis.get.return_value = b"r1"
        assert await backend.read("refreshToken") == "r1"

    @pytest.mark.asyncio
    async def test_start_pings_and_stop_closes(self, backend, mock_redis):
        await backend.start()
        mock_redis.ping.assert_called_once()

        await backend.stop()
        mock_redis.aclose.assert_called_once()
        assert backend.redis is None

    @pytest.mark.asyncio
    async def test_start_creates_client_from_url(self):
        backend = RedisBackend("redis://cache:6379/2")
        with patch("redis.asyncio.from_url") as mock_from_url:
            mock_from_url.return_value = AsyncMock()
            await backend.start()

        assert mock_from_url.call_args[0][0] == "redis://cache:6379/2"
        assert mock_from_url.call_args[1]["decode_responses"] is True

    @pytest.mark.asyncio
    async def test_unstarted_backend_surfaces_storage_error(self):
        store = TokenStore(RedisBackend("redis://localhost:6379/0"))

        with pytest.raises(StorageError):
            await store.get_access()

    @pytest.mark.asyncio
    async def test_connection_error_surfaces_storage_error(self, backend, mock_redis):
        mock_redis.set.side_effect = redis.ConnectionError("refused")
        store = TokenStore(backend)

        with pytest.raises(StorageError) as exc_info:
            await store.set_refresh("r1")

        assert "refused" in exc_info.value.details["error"]


class TestRedisRefreshLock:
    """Test cases for RedisRefreshLock."""

    @pytest.fixture
    def mock_redis(self):
        return AsyncMock()

    @pytest.fixture
    def lock(self, mock_redis):
        return RedisRefreshLock(
            key="test:refresh-lock",
            ttl_seconds=1.0,
            heartbeat_seconds=0.5,
            poll_interval=0.001,
            acquire_timeout=0.05,
            client=mock_redis
        )

    def test_heartbeat_must_beat_ttl(self):
        with pytest.raises(ValueError):
            RedisRefreshLock(ttl_seconds=1.0, heartbeat_seconds=1.0)

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, lock, mock_redis):
        mock_redis.set.return_value = True

        async with lock:
            assert lock.held is True
            key, token = mock_redis.set.call_args[0]
            assert key == "test:refresh-lock"
            assert mock_redis.set.call_args[1] == {"nx": True, "px": 1000}

        assert lock.held is False
        mock_redis.eval.assert_called_once_with(RELEASE_SCRIPT, 1, "test:refresh-lock", token)

    @pytest.mark.asyncio
    async def test_waits_for_other_holder(self, lock, mock_redis):
        mock_redis.set.side_effect = [None, None, True]

        await lock.acquire()

        assert mock_redis.set.call_count == 3
        assert lock.held is True
        await lock.release()

    @pytest.mark.asyncio
    async def test_acquire_timeout_is_network_error(self, lock, mock_redis):
        mock_redis.set.return_value = None

        with pytest.raises(NetworkError):
            await lock.acquire()

        assert lock.held is False

    @pytest.mark.asyncio
    async def test_redis_failure_is_storage_error(self, lock, mock_redis):
        mock_redis.set.side_effect = redis.ConnectionError("refused")

        with pytest.raises(StorageError):
            await lock.acquire()

    @pytest.mark.asyncio
    async def test_heartbeat_extends_ttl(self, mock_redis):
        lock = RedisRefreshLock(key="k", ttl_seconds=0.05, heartbeat_seconds=0.01, client=mock_redis)
        mock_redis.set.return_value = True
        mock_redis.eval.return_value = 1

        await lock.acquire()
        await asyncio.sleep(0.05)
        token = mock_redis.set.call_args[0][1]
        await lock.release()

        extend_calls = [call for call in mock_redis.eval.call_args_list if call[0][0] == EXTEND_SCRIPT]
        assert extend_calls
        assert extend_calls[0][0][1:] == (1, "k", token, 50)

    @pytest.mark.asyncio
    async def test_stop_keeps_injected_client_open(self, lock, mock_redis):
        await lock.start()
        await lock.stop()

        mock_redis.aclose.assert_not_called()
