"""
Shared fixtures for session client unit tests.
"""

import asyncio
import json
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import jwt
import pytest

from session_client.app.storage import MemoryBackend, TokenStore
from session_client.app.validation import TokenValidator

BASE_URL = "https://api.example.com"
NOW = 1_700_000_000


class FakeClock:
    """Settable clock usable as both wall clock and monotonic clock."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and advances a clock."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)


def json_response(status_code: int, body: Any, method: str = "GET", url: str = BASE_URL) -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        content=json.dumps(body),
        headers={"Content-Type": "application/json"},
        request=httpx.Request(method, url)
    )


Reply = Union[httpx.Response, Exception, Callable[[str, str, Dict[str, str], Any], httpx.Response]]


class ScriptedTransport:
    """Transport that replays scripted replies and records every call.

    A reply may be a response, an exception to raise, or a callable taking
    the call arguments. ``gate`` holds every send until it is set.
    """

    def __init__(self, replies: Optional[List[Reply]] = None, default: Optional[Reply] = None):
        self.replies = list(replies or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []
        self.gate: Optional[asyncio.Event] = None

    def calls_to(self, path: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["url"].endswith(path)]

    async def send(self, method: str, url: str, headers: Dict[str, str], body: Any = None) -> httpx.Response:
        self.calls.append({"method": method, "url": url, "headers": dict(headers), "body": body})
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.pop(0) if self.replies else self.default
        if reply is None:
            raise AssertionError(f"Unexpected request {method} {url}")
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(method, url, headers, body)
        return reply


class GatedBackend(MemoryBackend):
    """Memory backend whose next read of one key parks after reading.

    The parked read returns the value it saw before parking, so the caller
    acts on a stale view of the slot.
    """

    def __init__(self, key: str):
        super().__init__()
        self.key = key
        self.reached = asyncio.Event()
        self.release = asyncio.Event()
        self._armed = False

    def arm(self):
        self._armed = True

    async def read(self, key: str) -> Optional[str]:
        value = await super().read(key)
        if self._armed and key == self.key:
            self._armed = False
            self.reached.set()
            await self.release.wait()
        return value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_token(clock):
    """Build an HS256 JWT relative to the fake clock."""

    def _make(exp_in: Optional[float] = 3600,
              issued_ago: Optional[float] = 0,
              headers: Optional[Dict[str, Any]] = None,
              **claims) -> str:
        payload: Dict[str, Any] = {"sub": "user-1", "jti": uuid.uuid4().hex}
        if exp_in is not None:
            payload["exp"] = int(clock.now + exp_in)
        if issued_ago is not None:
            payload["iat"] = int(clock.now - issued_ago)
        payload.update(claims)
        return jwt.encode(payload, "test-secret", algorithm="HS256", headers=headers)

    return _make


@pytest.fixture
def validator(clock):
    return TokenValidator(clock=clock)


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def gated_backend():
    """``gated_backend(key)`` -> GatedBackend parking reads of ``key``."""
    return GatedBackend


@pytest.fixture
def store(backend, clock):
    return TokenStore(backend, clock=clock)


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def respond():
    """``respond(status, body, method=..., url=...)`` -> httpx.Response."""
    return json_response
