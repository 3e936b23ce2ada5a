"""
Refresh coordinator: single-flight access token refresh.

State machine::

    IDLE -> REFRESHING -> success -> IDLE
                       -> retryable failure -> BACKOFF -> IDLE
                       -> refresh token rejected / budget exhausted -> TERMINAL

One coordinator is built per process and handed to every consumer. Callers
that arrive while a refresh is in flight join the same task and observe the
same outcome; no second request reaches the refresh endpoint.
"""

import asyncio
import dataclasses
import time
from typing import Any, Callable, Dict, Optional

import httpx

from shared.errors import (
    MaxAttemptsExceeded,
    NetworkError,
    ServerError,
    SessionError,
    SessionExpired,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, calculate_delay
from ..models import RefreshPhase, RefreshRequest, RefreshState, parse_refresh_response
from ..storage.token_store import TokenStore
from ..transport.http import Transport
from ..validation.token_validator import TokenValidator


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.reason_phrase


class RefreshCoordinator:
    """Owns RefreshState: in-flight task, attempt counter and rate limit."""

    def __init__(self,
                 store: TokenStore,
                 transport: Transport,
                 refresh_url: str,
                 retry_config: Optional[RetryConfig] = None,
                 min_interval: float = 5.0,
                 validator: Optional[TokenValidator] = None,
                 lock: Optional[Any] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Any] = asyncio.sleep,
                 uniform: Optional[Callable[[float, float], float]] = None):
        self.store = store
        self.transport = transport
        self.refresh_url = refresh_url
        self.retry_config = retry_config or RetryConfig()
        self.min_interval = min_interval
        self.validator = validator
        self.lock = lock
        self.metrics = metrics
        self.logger = get_logger("session.refresh")
        self._clock = clock
        self._sleep = sleep
        self._uniform = uniform
        self._state = RefreshState()
        self._inflight: Optional["asyncio.Task[str]"] = None

    @property
    def state(self) -> RefreshState:
        return self._state

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the refresh state for diagnostics."""
        data = dataclasses.asdict(self._state)
        data["phase"] = self._state.phase.value
        data["max_attempts"] = self.retry_config.max_attempts
        return data

    def reset(self) -> None:
        """Start a fresh refresh budget, e.g. after a new login."""
        self._state.attempt_count = 0
        if not self._state.in_flight:
            self._state.phase = RefreshPhase.IDLE
        self.logger.debug("Refresh state reset")

    def backoff_delay(self, attempt: int) -> float:
        return calculate_delay(attempt, self.retry_config, self._uniform)

    async def ensure_fresh_token(self, timeout: Optional[float] = None) -> str:
        """Return a freshly refreshed access token.

        ``timeout`` bounds how long this caller waits. Abandoning the wait
        never cancels a refresh that is already on the wire.
        """
        if timeout is None:
            return await self._ensure_fresh_token()
        try:
            return await asyncio.wait_for(self._ensure_fresh_token(), timeout)
        except asyncio.TimeoutError as e:
            self.logger.warning("Gave up waiting for token refresh", timeout=timeout)
            raise NetworkError("Token refresh timed out", details={"timeout": timeout}) from e

    async def _ensure_fresh_token(self) -> str:
        if self._inflight is not None:
            self.logger.info("Token refresh already in progress, joining")
            return await asyncio.shield(self._inflight)

        if self._state.attempt_count >= self.retry_config.max_attempts:
            self._state.phase = RefreshPhase.TERMINAL
            if self.metrics:
                self.metrics.record_refresh("max_attempts")
            self.logger.error(
                "Maximum refresh attempts exceeded",
                attempts=self._state.attempt_count,
                max_attempts=self.retry_config.max_attempts
            )
            await self.store.clear(reason="max_attempts")
            raise MaxAttemptsExceeded(details={"attempts": self._state.attempt_count})

        last_attempt_at = self._state.last_attempt_at
        if last_attempt_at:
            wait_time = self.min_interval - (self._clock() - last_attempt_at)
            if wait_time > 0:
                self.logger.info("Waiting before next refresh attempt", wait_seconds=round(wait_time, 3))
                await self._sleep(wait_time)
                # Another caller may have started while we waited
                if self._inflight is not None:
                    return await asyncio.shield(self._inflight)

        self._state.in_flight = True
        self._state.attempt_count += 1
        self._state.last_attempt_at = self._clock()
        self._state.phase = RefreshPhase.REFRESHING
        if self.metrics:
            self.metrics.set_refresh_in_flight(True)

        task = asyncio.get_running_loop().create_task(self._run_refresh(self._state.attempt_count))
        self._inflight = task
        task.add_done_callback(self._finish)
        return await asyncio.shield(task)

    def _finish(self, task: "asyncio.Task[str]") -> None:
        """Clear in-flight bookkeeping once the refresh task has settled."""
        if task.done() and not task.cancelled():
            # Every joiner may have timed out; mark the failure as retrieved
            task.exception()
        if self._inflight is not task:
            return
        self._inflight = None
        self._state.in_flight = False
        if self.metrics:
            self.metrics.set_refresh_in_flight(False)

    async def _run_refresh(self, attempt: int) -> str:
        task = asyncio.current_task()
        started = time.monotonic()
        self.logger.info("Attempting to refresh access token", attempt=attempt)
        try:
            token = await self._refresh_with_lock()
        except SessionExpired:
            self._finish(task)
            self._state.attempt_count = 0
            self._state.phase = RefreshPhase.TERMINAL
            self._record("session_expired", started)
            raise
        except (NetworkError, ServerError) as e:
            self._finish(task)
            self._state.phase = RefreshPhase.BACKOFF
            self._record(e.kind.value, started)
            delay = self.backoff_delay(attempt)
            self.logger.warning(
                "Token refresh failed, waiting before retry",
                attempt=attempt,
                delay_seconds=round(delay, 3),
                error=e.message
            )
            await self._sleep(delay)
            if self._state.phase is RefreshPhase.BACKOFF:
                self._state.phase = RefreshPhase.IDLE
            raise
        except SessionError as e:
            self._finish(task)
            self._state.phase = RefreshPhase.IDLE
            self._record(e.kind.value, started)
            raise

        self._finish(task)
        self._state.attempt_count = 0
        self._state.phase = RefreshPhase.IDLE
        self._record("success", started)
        self.logger.info("Access token refreshed successfully")
        return token

    def _record(self, outcome: str, started: float) -> None:
        if self.metrics:
            self.metrics.record_refresh(outcome, time.monotonic() - started)

    async def _refresh_with_lock(self) -> str:
        if self.lock is None:
            return await self._refresh_once()

        before = await self.store.get_access()
        async with self.lock:
            current = await self.store.get_access()
            if (current and current != before and self.validator is not None
                    and not self.validator.is_expired(current)):
                self.logger.info("Access token already refreshed by another process")
                return current
            return await self._refresh_once()

    async def _refresh_once(self) -> str:
        refresh_token = await self.store.get_refresh()
        if not refresh_token:
            self.logger.error("Token refresh failed: no refresh token available")
            await self.store.clear(reason="missing_refresh_token")
            raise SessionExpired(details={"reason": "missing_refresh_token"})

        body = RefreshRequest(refresh_token=refresh_token).model_dump(by_alias=True)
        response = await self.transport.send(
            "POST",
            self.refresh_url,
            {"Content-Type": "application/json"},
            body
        )

        if response.status_code == 401:
            self.logger.error("Refresh token rejected by server, clearing session")
            await self.store.clear(reason="refresh_rejected")
            raise SessionExpired(details={"status_code": 401})

        if not response.is_success:
            message = _error_message(response)
            self.logger.error("Token refresh failed", status_code=response.status_code, error=message)
            raise ServerError(
                f"Token refresh failed: {message}",
                details={"status_code": response.status_code}
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ServerError("Refresh response is not JSON", details={"status_code": response.status_code}) from e

        refreshed = parse_refresh_response(data)
        await self.store.set_pair(refreshed.access_token, refreshed.refresh_token)
        return refreshed.access_token

