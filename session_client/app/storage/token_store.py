"""
Token store: the single choke point for access/refresh token persistence.
"""

import asyncio
import json
import time
from typing import Any, Callable, Optional, Sequence

from pydantic import ValidationError

from shared.errors import StorageError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..models import (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    TOKEN_METADATA_KEY,
    AuthResponse,
    TokenMetadata,
    TokenPair,
    TokensAuthResponse,
    parse_auth_response,
)
from .backends import PersistenceBackend


class TokenStore:
    """Durable storage for the token pair and its metadata.

    Writes are serialised through one lock; readers never block and may see
    the previous pair until a write completes. Any backend failure surfaces
    as StorageError, callers decide whether that is fatal.
    """

    def __init__(self,
                 backend: PersistenceBackend,
                 default_ttl_seconds: int = 30 * 60,
                 clock: Callable[[], float] = time.time,
                 metrics: Optional[MetricsCollector] = None):
        self.backend = backend
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self.metrics = metrics
        self.logger = get_logger("session.token_store")
        self._write_lock = asyncio.Lock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _persist(self, key: str, value: str) -> None:
        try:
            await self.backend.persist(key, value)
        except Exception as e:
            self.logger.error("Failed to persist token slot", key=key, error=str(e))
            raise StorageError(f"Failed to store {key}", details={"key": key, "error": str(e)}) from e

    async def _read(self, key: str) -> Optional[str]:
        try:
            return await self.backend.read(key)
        except Exception as e:
            self.logger.error("Failed to read token slot", key=key, error=str(e))
            raise StorageError(f"Failed to read {key}", details={"key": key, "error": str(e)}) from e

    async def _remove(self, key: str) -> None:
        try:
            await self.backend.remove(key)
        except Exception as e:
            self.logger.error("Failed to remove token slot", key=key, error=str(e))
            raise StorageError(f"Failed to remove {key}", details={"key": key, "error": str(e)}) from e

    def _fresh_metadata(self) -> TokenMetadata:
        now = self._now_ms()
        return TokenMetadata(
            issued_at=now,
            expires_at=now + self.default_ttl_seconds * 1000,
            last_checked=now,
        )

    async def _write_access(self, token: str) -> None:
        await self._persist(ACCESS_TOKEN_KEY, token)
        # Placeholder expiry until the exp claim is read; the claim stays authoritative
        metadata = self._fresh_metadata()
        await self._persist(TOKEN_METADATA_KEY, json.dumps(metadata.model_dump(by_alias=True)))

    async def set_access(self, token: str) -> None:
        """Store the access token and reset its metadata."""
        async with self._write_lock:
            await self._write_access(token)
        self.logger.info("Access token stored", length=len(token))

    async def set_refresh(self, token: str) -> None:
        """Store the refresh token."""
        async with self._write_lock:
            await self._persist(REFRESH_TOKEN_KEY, token)
        self.logger.info("Refresh token stored", length=len(token))

    async def set_pair(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        """Store access and (optionally rotated) refresh token as one unit.

        The refresh token lands first so the access token is never visible
        without the refresh token it belongs to.
        """
        async with self._write_lock:
            if refresh_token:
                await self._persist(REFRESH_TOKEN_KEY, refresh_token)
            await self._write_access(access_token)
        self.logger.info("Token pair stored", rotated_refresh=bool(refresh_token))

    async def get_access(self) -> Optional[str]:
        return await self._read(ACCESS_TOKEN_KEY) or None

    async def get_refresh(self) -> Optional[str]:
        return await self._read(REFRESH_TOKEN_KEY) or None

    async def get_pair(self) -> TokenPair:
        return TokenPair(access_token=await self.get_access(), refresh_token=await self.get_refresh())

    async def get_metadata(self) -> Optional[TokenMetadata]:
        """Stored metadata with ``last_checked`` bumped to now; None if absent or corrupt."""
        async with self._write_lock:
            raw = await self._read(TOKEN_METADATA_KEY)
            if not raw:
                return None
            try:
                metadata = TokenMetadata.model_validate(json.loads(raw))
            except (ValueError, ValidationError) as e:
                self.logger.warning("Discarding unreadable token metadata", error=str(e))
                return None

            metadata.last_checked = self._now_ms()
            # Metadata without its access token is not written back
            if await self._read(ACCESS_TOKEN_KEY):
                await self._persist(TOKEN_METADATA_KEY, json.dumps(metadata.model_dump(by_alias=True)))
        return metadata

    async def remove_access(self) -> None:
        """Drop the access token and its metadata."""
        async with self._write_lock:
            await self._remove(ACCESS_TOKEN_KEY)
            await self._remove(TOKEN_METADATA_KEY)

    async def remove_refresh(self) -> None:
        """Drop the refresh token."""
        async with self._write_lock:
            await self._remove(REFRESH_TOKEN_KEY)

    async def _remove_if(self, key: str, expected: str, also: Sequence[str] = ()) -> bool:
        try:
            return await self.backend.remove_if(key, expected, also)
        except Exception as e:
            self.logger.error("Failed to remove token slot", key=key, error=str(e))
            raise StorageError(f"Failed to remove {key}", details={"key": key, "error": str(e)}) from e

    async def remove_access_if(self, expected: str) -> bool:
        """Drop the access token and its metadata only if it is still ``expected``."""
        async with self._write_lock:
            removed = await self._remove_if(ACCESS_TOKEN_KEY, expected, also=(TOKEN_METADATA_KEY,))
        if not removed:
            self.logger.debug("Access token replaced before removal, kept")
        return removed

    async def remove_refresh_if(self, expected: str) -> bool:
        """Drop the refresh token only if it is still ``expected``."""
        async with self._write_lock:
            removed = await self._remove_if(REFRESH_TOKEN_KEY, expected)
        if not removed:
            self.logger.debug("Refresh token replaced before removal, kept")
        return removed

    async def clear_if_empty(self, reason: str) -> bool:
        """Drop stray metadata once neither token is stored."""
        async with self._write_lock:
            if await self._read(ACCESS_TOKEN_KEY) or await self._read(REFRESH_TOKEN_KEY):
                return False
            await self._remove(TOKEN_METADATA_KEY)
        if self.metrics:
            self.metrics.record_session_clear(reason)
        self.logger.info("All tokens cleared", reason=reason)
        return True

    async def clear(self, reason: str = "explicit") -> None:
        """Remove both tokens and the metadata together."""
        async with self._write_lock:
            await self._remove(ACCESS_TOKEN_KEY)
            await self._remove(REFRESH_TOKEN_KEY)
            await self._remove(TOKEN_METADATA_KEY)
        if self.metrics:
            self.metrics.record_session_clear(reason)
        self.logger.info("All tokens cleared", reason=reason)

    async def ingest_auth_response(self, payload: Any) -> AuthResponse:
        """Store tokens from a login/register body.

        The current shape replaces the whole pair; the legacy ``{"token": ...}``
        shape only replaces the access token and leaves the refresh token as is.
        """
        response = parse_auth_response(payload)
        if isinstance(response, TokensAuthResponse):
            await self.set_pair(response.tokens.access_token, response.tokens.refresh_token)
            self.logger.info("Tokens updated from response", response_format="tokens")
        else:
            await self.set_access(response.token)
            self.logger.info("Token updated from response", response_format="legacy")
        return response
