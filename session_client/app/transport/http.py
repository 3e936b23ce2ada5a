"""
HTTP transport and transport-security policy.
"""

from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlsplit

import httpx

from shared.errors import NetworkError, TransportPolicyError
from shared.logging import get_logger


class Transport(Protocol):
    """``send(method, url, headers, body) -> httpx.Response`` collaborator."""

    async def send(self, method: str, url: str, headers: Dict[str, str], body: Any = None) -> httpx.Response: ...


class HttpxTransport:
    """Transport over a shared httpx.AsyncClient.

    Transport-level failures (connect, read, timeout) become NetworkError;
    every HTTP status, 401 and 5xx included, is returned as a response.
    """

    def __init__(self, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self.logger = get_logger("session.transport")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, method: str, url: str, headers: Dict[str, str], body: Any = None) -> httpx.Response:
        kwargs: Dict[str, Any] = {"headers": headers}
        if body is not None:
            kwargs["json"] = body
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            self.logger.error("API request timeout", method=method, url=url)
            raise NetworkError("Request timed out", details={"url": url, "error": str(e)}) from e
        except httpx.RequestError as e:
            self.logger.error("API request error", method=method, url=url, error=str(e))
            raise NetworkError(
                "Network error. Please check your connection and try again.",
                details={"url": url, "error": str(e)}
            ) from e

    async def aclose(self):
        """Close the underlying client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()


class TransportPolicy:
    """HTTPS enforcement, switchable off for local development."""

    def __init__(self, enforce_https: bool = True):
        self.enforce_https = enforce_https
        self.logger = get_logger("session.transport.policy")

    def check(self, url: str) -> None:
        """Raise TransportPolicyError unless the URL may be used."""
        if not self.enforce_https:
            return

        try:
            parts = urlsplit(url)
        except ValueError as e:
            self.logger.error("Invalid URL format for HTTPS validation", url=url)
            raise TransportPolicyError("Invalid request URL", details={"url": url}) from e

        if parts.scheme != "https" or not parts.netloc:
            self.logger.warning("HTTPS required but insecure URL detected", url=url)
            raise TransportPolicyError(
                "HTTPS is required for all API requests. Please use a secure connection.",
                details={"url": url, "scheme": parts.scheme}
            )
