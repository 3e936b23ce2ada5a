"""
Persistence backends for the token store.

A backend is anything with async ``persist(key, value)``, ``read(key)``,
``remove(key)`` and ``remove_if(key, expected, also)``. Backends raise
their native errors; TokenStore turns those into StorageError.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol, Sequence

import redis.asyncio as redis

from shared.logging import get_logger

# Compare-and-delete; other processes may rewrite the slot between GET and DEL
REMOVE_IF_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", unpack(KEYS))
else
    return 0
end
"""


class PersistenceBackend(Protocol):
    """Named-value persistence consumed by TokenStore."""

    async def persist(self, key: str, value: str) -> None: ...

    async def read(self, key: str) -> Optional[str]: ...

    async def remove(self, key: str) -> None: ...

    async def remove_if(self, key: str, expected: str, also: Sequence[str] = ()) -> bool:
        """Remove ``key`` and ``also`` only while ``key`` still holds ``expected``."""
        ...


class MemoryBackend:
    """Process-local backend, the default for tests and short-lived scripts."""

    def __init__(self):
        self._values: Dict[str, str] = {}

    async def persist(self, key: str, value: str) -> None:
        self._values[key] = value

    async def read(self, key: str) -> Optional[str]:
        return self._values.get(key)

    async def remove(self, key: str) -> None:
        self._values.pop(key, None)

    async def remove_if(self, key: str, expected: str, also: Sequence[str] = ()) -> bool:
        if self._values.get(key) != expected:
            return False
        for name in (key, *also):
            self._values.pop(name, None)
        return True


class FileBackend:
    """JSON file backend, the desktop analogue of browser localStorage.

    The whole document is rewritten on each change through a temp file and
    ``os.replace`` so a crash never leaves a half-written store behind.
    """

    def __init__(self, path: str):
        self.path = Path(path).expanduser()
        self.logger = get_logger("session.storage.file")
        self._lock = asyncio.Lock()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"Token file {self.path} does not hold a JSON object")
        return data

    def _dump(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".tokens-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def persist(self, key: str, value: str) -> None:
        async with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)

    async def read(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._load().get(key)

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._dump(data)

    async def remove_if(self, key: str, expected: str, also: Sequence[str] = ()) -> bool:
        async with self._lock:
            data = self._load()
            if data.get(key) != expected:
                return False
            for name in (key, *also):
                data.pop(name, None)
            self._dump(data)
            return True


class RedisBackend:
    """Redis backend shared by every process pointing at the same prefix."""

    def __init__(self, redis_url: str, key_prefix: str = "calorie:session:",
                 client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("session.storage.redis")
        self.redis: Optional[redis.Redis] = client

    async def start(self):
        """Open the Redis connection."""
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
        await self.redis.ping()
        self.logger.info("Redis token backend started", key_prefix=self.key_prefix)

    async def stop(self):
        """Close the Redis connection."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis token backend stopped")

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise RuntimeError("RedisBackend used before start()")
        return self.redis

    async def persist(self, key: str, value: str) -> None:
        await self._client().set(self._key(key), value)

    async def read(self, key: str) -> Optional[str]:
        value = await self._client().get(self._key(key))
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def remove(self, key: str) -> None:
        await self._client().delete(self._key(key))

    async def remove_if(self, key: str, expected: str, also: Sequence[str] = ()) -> bool:
        keys = [self._key(name) for name in (key, *also)]
        removed = await self._client().eval(REMOVE_IF_SCRIPT, len(keys), *keys, expected)
        return bool(removed)
