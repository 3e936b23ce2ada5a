"""
Cross-process refresh lock.

RefreshCoordinator only serialises refreshes inside one event loop. Several
processes sharing a Redis token store take this lock around the refresh
call so only one of them spends the refresh token.
"""

import asyncio
import time
import uuid
from typing import Optional

import redis.asyncio as redis

from shared.errors import NetworkError, StorageError
from shared.logging import get_logger

# Delete / extend only while we still own the key
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""

EXTEND_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
else
    return 0
end
"""


class RedisRefreshLock:
    """``SET NX PX`` mutex whose TTL is kept alive by a heartbeat task."""

    def __init__(self,
                 redis_url: str = "redis://localhost:6379/0",
                 key: str = "calorie:session:refresh-lock",
                 ttl_seconds: float = 10.0,
                 heartbeat_seconds: float = 3.0,
                 poll_interval: float = 0.1,
                 acquire_timeout: float = 30.0,
                 client: Optional[redis.Redis] = None):
        if heartbeat_seconds >= ttl_seconds:
            raise ValueError("heartbeat_seconds must be shorter than ttl_seconds")
        self.redis_url = redis_url
        self.key = key
        self.ttl_ms = int(ttl_seconds * 1000)
        self.heartbeat_seconds = heartbeat_seconds
        self.poll_interval = poll_interval
        self.acquire_timeout = acquire_timeout
        self.logger = get_logger("session.refresh.lock")
        self.redis: Optional[redis.Redis] = client
        self._owned_client = client is None
        self._token: Optional[str] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    async def start(self):
        """Open the Redis connection."""
        if self.redis is None:
            self.redis = redis.from_url(self.redis_url, decode_responses=True)
        self.logger.info("Refresh lock ready", key=self.key)

    async def stop(self):
        """Release anything we hold and close the connection we opened."""
        await self.release()
        if self.redis is not None and self._owned_client:
            await self.redis.aclose()
            self.redis = None

    @property
    def held(self) -> bool:
        return self._token is not None

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise RuntimeError("RedisRefreshLock used before start()")
        return self.redis

    async def acquire(self) -> None:
        """Block until the lock is ours, or fail after ``acquire_timeout``."""
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.acquire_timeout
        waited = False
        while True:
            try:
                acquired = await self._client().set(self.key, token, nx=True, px=self.ttl_ms)
            except redis.RedisError as e:
                raise StorageError("Refresh lock unavailable", details={"error": str(e)}) from e

            if acquired:
                self._token = token
                self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat(token))
                self.logger.debug("Refresh lock acquired", waited=waited)
                return

            if time.monotonic() >= deadline:
                self.logger.error("Timed out waiting for refresh lock", key=self.key)
                raise NetworkError("Timed out waiting for refresh lock", details={"key": self.key})

            if not waited:
                self.logger.info("Refresh lock held by another process, waiting", key=self.key)
                waited = True
            await asyncio.sleep(self.poll_interval)

    async def release(self) -> None:
        """Stop the heartbeat and delete the key if we still own it."""
        token, self._token = self._token, None
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        if token is None or self.redis is None:
            return
        try:
            await self.redis.eval(RELEASE_SCRIPT, 1, self.key, token)
        except redis.RedisError as e:
            # The TTL frees the key anyway
            self.logger.warning("Failed to release refresh lock", error=str(e))
        else:
            self.logger.debug("Refresh lock released")

    async def _heartbeat(self, token: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                extended = await self._client().eval(EXTEND_SCRIPT, 1, self.key, token, self.ttl_ms)
            except redis.RedisError as e:
                self.logger.warning("Refresh lock heartbeat failed", error=str(e))
                continue
            if not extended:
                self.logger.warning("Refresh lock lost before release", key=self.key)
                return

    async def __aenter__(self) -> "RedisRefreshLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
