"""
Request executor: credentialed API calls with one transparent retry.
"""

import asyncio
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlsplit

import httpx

from shared.errors import (
    AuthenticationRequired,
    FormatError,
    MaxAttemptsExceeded,
    NetworkError,
    SessionError,
    SessionExpired,
)
from shared.logging import get_logger, set_request_id
from shared.metrics import MetricsCollector
from ..housekeeping.housekeeper import Housekeeper
from ..refresh.coordinator import RefreshCoordinator
from ..storage.token_store import TokenStore
from ..validation.token_validator import TokenValidator
from .http import Transport, TransportPolicy


def _outcome(status_code: int) -> str:
    if status_code >= 500:
        return "server_error"
    if status_code >= 400:
        return "client_error"
    return "ok"


class RequestExecutor:
    """Attaches bearer credentials, refreshes on 401 and resends once."""

    def __init__(self,
                 store: TokenStore,
                 validator: TokenValidator,
                 coordinator: RefreshCoordinator,
                 housekeeper: Housekeeper,
                 transport: Transport,
                 policy: Optional[TransportPolicy] = None,
                 base_url: str = "",
                 bootstrap_paths: Iterable[str] = ("/api/auth/login", "/api/auth/register", "/api/auth/refresh"),
                 refresh_path: str = "/api/auth/refresh",
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.validator = validator
        self.coordinator = coordinator
        self.housekeeper = housekeeper
        self.transport = transport
        self.policy = policy or TransportPolicy()
        self.base_url = base_url.rstrip("/")
        self.bootstrap_paths = tuple(bootstrap_paths)
        self.refresh_path = refresh_path
        self.metrics = metrics
        self.logger = get_logger("session.executor")

    def resolve_url(self, url: str) -> str:
        """Prefix relative ``/api/...`` paths with the API base URL."""
        if url.startswith("/") and self.base_url:
            return f"{self.base_url}{url}"
        return url

    @staticmethod
    def _path_matches(url: str, path: str) -> bool:
        target = urlsplit(url).path.rstrip("/")
        return target == path.rstrip("/") or target.endswith(path.rstrip("/"))

    def is_bootstrap(self, url: str) -> bool:
        """Login, register and refresh may be called without credentials."""
        return any(self._path_matches(url, path) for path in self.bootstrap_paths)

    def is_refresh(self, url: str) -> bool:
        return self._path_matches(url, self.refresh_path)

    async def request(self,
                      method: str,
                      url: str,
                      body: Any = None,
                      timeout: Optional[float] = None,
                      refresh_on_401: bool = True) -> httpx.Response:
        """Send an API request with valid credentials attached.

        Raises AuthenticationRequired, FormatError, SessionExpired,
        TransportPolicyError, NetworkError, or ServerError when the refresh
        after a 401 hits a server failure. Other statuses are returned.
        ``refresh_on_401=False`` hands a 401 back untouched (credential
        checks such as login).
        """
        if timeout is None:
            return await self._request(method, url, body, refresh_on_401)
        try:
            return await asyncio.wait_for(self._request(method, url, body, refresh_on_401), timeout)
        except asyncio.TimeoutError as e:
            self.logger.warning("API request abandoned after timeout", method=method, url=url, timeout=timeout)
            raise NetworkError("Request timed out", details={"url": url, "timeout": timeout}) from e

    async def _credential_headers(self, url: str) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        token = await self.store.get_access()
        if token:
            if not self.validator.validate_format(token):
                self.logger.warning("Token format validation failed, refusing to send")
                await self.housekeeper.sweep_expired()
                raise FormatError("Authentication token format is invalid. Please log in again.")
            if not self.validator.is_expired(token):
                headers["Authorization"] = f"Bearer {token}"

        if "Authorization" not in headers and not self.is_bootstrap(url):
            raise AuthenticationRequired()
        return headers

    async def _request(self, method: str, url: str, body: Any, refresh_on_401: bool) -> httpx.Response:
        method = method.upper()
        set_request_id()

        await self.housekeeper.sweep_expired()

        url = self.resolve_url(url)
        self.policy.check(url)

        headers = await self._credential_headers(url)
        if body is not None:
            headers["Content-Type"] = "application/json"

        response = await self._send(method, url, headers, body)

        if response.status_code != 401 or self.is_refresh(url) or not refresh_on_401:
            return response

        self.logger.info("Received 401, attempting token refresh", method=method, url=url)
        new_token = await self._refreshed_token(headers.get("Authorization"))

        retry_headers = dict(headers)
        retry_headers["Authorization"] = f"Bearer {new_token}"
        self.logger.info("Retrying request with new token", method=method, url=url)
        response = await self._send(method, url, retry_headers, body)

        if response.status_code == 401:
            self.logger.error("Retry after token refresh still unauthorized, session expired", method=method, url=url)
            await self.store.clear(reason="retry_unauthorized")
            raise SessionExpired(details={"url": url})

        return response

    async def _refreshed_token(self, sent_authorization: Optional[str]) -> str:
        """New access token for the retry, refreshing only when nobody else has."""
        current = await self.store.get_access()
        if (current and f"Bearer {current}" != sent_authorization
                and not self.validator.is_expired(current)):
            # Another flow already replaced the token we were rejected with
            return current

        try:
            return await self.coordinator.ensure_fresh_token()
        except (MaxAttemptsExceeded, SessionExpired) as e:
            self.logger.error("Token refresh failed terminally", kind=e.kind.value)
            await self.store.clear(reason=e.kind.value)
            raise SessionExpired(details={"cause": e.kind.value}) from e
        except SessionError as e:
            self.logger.error("Token refresh failed", kind=e.kind.value, error=e.message)
            raise

    async def _send(self, method: str, url: str, headers: Dict[str, str], body: Any) -> httpx.Response:
        try:
            response = await self.transport.send(method, url, headers, body)
        except NetworkError:
            if self.metrics:
                self.metrics.record_http_request(method, "network_error")
            self.logger.error("API request failed: network error", method=method, url=url)
            raise

        outcome = _outcome(response.status_code)
        if self.metrics:
            self.metrics.record_http_request(method, outcome)
        if outcome == "server_error":
            self.logger.warning("API request failed: server error", method=method, url=url, status_code=response.status_code)
        elif outcome == "client_error":
            self.logger.info("API request rejected", method=method, url=url, status_code=response.status_code)
        return response
