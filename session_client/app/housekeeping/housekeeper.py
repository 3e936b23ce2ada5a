"""
Housekeeper: expired-token sweeps and pre-emptive refresh.
"""

import asyncio
from typing import Optional

from shared.errors import SessionError
from shared.logging import get_logger
from ..refresh.coordinator import RefreshCoordinator
from ..storage.token_store import TokenStore
from ..validation.token_validator import TokenValidator


class Housekeeper:
    """Removes expired tokens and refreshes ahead of expiry.

    ``start()`` runs one pass immediately and then every ``interval``
    seconds; ``stop()`` cancels the loop and does a last sweep.
    """

    def __init__(self,
                 store: TokenStore,
                 validator: TokenValidator,
                 coordinator: RefreshCoordinator,
                 interval: float = 60.0,
                 buffer_minutes: float = 5):
        self.store = store
        self.validator = validator
        self.coordinator = coordinator
        self.interval = interval
        self.buffer_minutes = buffer_minutes
        self.logger = get_logger("session.housekeeper")
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _refresh_expired(self, token: str) -> bool:
        # Opaque refresh tokens carry no expiry; only the server can reject them
        return self.validator.decode_payload(token) is not None and self.validator.is_expired(token)

    async def sweep_expired(self) -> bool:
        """Drop truly expired tokens. Returns True when anything was removed.

        Removal is conditional on the slot still holding the token that was
        judged expired, so a pair written by a concurrent refresh survives.
        """
        access_token = await self.store.get_access()
        refresh_token = await self.store.get_refresh()
        cleaned = False

        if access_token and self.validator.is_expired(access_token):
            if await self.store.remove_access_if(access_token):
                self.logger.info("Cleaned up expired access token")
                cleaned = True

        if refresh_token and self._refresh_expired(refresh_token):
            if await self.store.remove_refresh_if(refresh_token):
                self.logger.info("Cleaned up expired refresh token")
                cleaned = True

        if cleaned:
            # Nothing left to describe; drop any stray metadata too
            await self.store.clear_if_empty(reason="expired")

        return cleaned

    async def maybe_preemptive_refresh(self, buffer_minutes: Optional[float] = None) -> Optional[str]:
        """Refresh a valid access token that expires within the buffer window.

        Returns the new token, or None when no refresh was needed or it failed.
        Failures are logged; terminal ones clear the token pair.
        """
        buffer_minutes = self.buffer_minutes if buffer_minutes is None else buffer_minutes
        access_token = await self.store.get_access()
        if not access_token or self.validator.is_expired(access_token):
            return None
        if not self.validator.is_expiring_soon(access_token, buffer_minutes):
            return None
        if not await self.store.get_refresh():
            self.logger.debug("Access token expiring soon but no refresh token stored")
            return None

        self.logger.info(
            "Access token expiring soon, refreshing ahead of expiry",
            seconds_remaining=self.validator.time_remaining(access_token)
        )
        try:
            return await self.coordinator.ensure_fresh_token()
        except SessionError as e:
            if e.terminal:
                await self.store.clear(reason=e.kind.value)
            self.logger.warning("Pre-emptive token refresh failed", error=e.message, kind=e.kind.value)
            return None

    async def run_once(self) -> None:
        """One housekeeping pass: sweep, then maybe refresh."""
        try:
            await self.sweep_expired()
            await self.maybe_preemptive_refresh()
        except SessionError as e:
            self.logger.error("Housekeeping pass failed", error=e.message, kind=e.kind.value)

    async def _loop(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Run one pass now and keep running on the interval."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        self.logger.info("Housekeeper started", interval_seconds=self.interval)

    async def stop(self) -> None:
        """Cancel the loop and flush a final sweep of expired tokens."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        try:
            await self.sweep_expired()
        except SessionError as e:
            self.logger.warning("Shutdown sweep failed", error=e.message)
        self.logger.info("Housekeeper stopped")
