"""
Session client for the calorie tracker API.

Wires configuration, token storage, validation, refresh coordination,
request execution and housekeeping into one object per process.
"""

from typing import Any, Dict, Optional

import httpx

from shared.config import SessionConfig, get_config, redis_url_or_none
from shared.errors import (
    AuthenticationRequired,
    MaxAttemptsExceeded,
    ServerError,
    SessionError,
    SessionExpired,
)
from shared.logging import configure_logging, get_logger, set_session_id
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from .housekeeping import Housekeeper
from .models import AuthResponse
from .refresh import RedisRefreshLock, RefreshCoordinator
from .storage import FileBackend, MemoryBackend, PersistenceBackend, RedisBackend, TokenStore
from .transport import HttpxTransport, Transport, TransportPolicy
from .transport.executor import RequestExecutor
from .validation import TokenValidator


def build_backend(config: SessionConfig) -> PersistenceBackend:
    """Persistence backend selected by ``storage_backend``."""
    if config.storage_backend == "memory":
        return MemoryBackend()
    if config.storage_backend == "file":
        return FileBackend(config.storage_path)
    if config.storage_backend == "redis":
        return RedisBackend(config.redis_url, key_prefix=config.redis_key_prefix)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")


def _response_message(response: httpx.Response, default: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return default
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return default


class SessionClient:
    """Authenticated API client with automatic token lifecycle management."""

    def __init__(self,
                 config: Optional[SessionConfig] = None,
                 transport: Optional[Transport] = None,
                 backend: Optional[PersistenceBackend] = None,
                 metrics: Optional[MetricsCollector] = None,
                 lock: Optional[RedisRefreshLock] = None):
        self.config = config or get_config()
        self.logger = get_logger("session.client")
        self.metrics = metrics or MetricsCollector("session-client")

        self._owns_transport = transport is None
        self.transport = transport or HttpxTransport(timeout=self.config.request_timeout)
        self.backend = backend or build_backend(self.config)

        redis_url = redis_url_or_none(self.config)
        if lock is None and self.config.cross_process_lock and redis_url:
            lock = RedisRefreshLock(
                redis_url,
                key=f"{self.config.redis_key_prefix}refresh-lock",
                ttl_seconds=self.config.lock_ttl_seconds,
                heartbeat_seconds=self.config.lock_heartbeat_seconds,
            )
        self.lock = lock

        self.validator = TokenValidator.from_config(self.config)
        self.store = TokenStore(
            self.backend,
            default_ttl_seconds=self.config.default_access_ttl_seconds,
            metrics=self.metrics,
        )
        self.coordinator = RefreshCoordinator(
            self.store,
            self.transport,
            refresh_url=self.url_for(self.config.refresh_path),
            retry_config=RetryConfig.from_config(self.config),
            min_interval=self.config.refresh_min_interval,
            validator=self.validator,
            lock=self.lock,
            metrics=self.metrics,
        )
        self.housekeeper = Housekeeper(
            self.store,
            self.validator,
            self.coordinator,
            interval=self.config.housekeeping_interval_seconds,
            buffer_minutes=self.config.refresh_buffer_minutes,
        )
        self.executor = RequestExecutor(
            self.store,
            self.validator,
            self.coordinator,
            self.housekeeper,
            self.transport,
            policy=TransportPolicy(enforce_https=self.config.enforce_https),
            base_url=self.config.api_base_url,
            bootstrap_paths=self.config.bootstrap_paths,
            refresh_path=self.config.refresh_path,
            metrics=self.metrics,
        )
        self._started = False

    def url_for(self, path: str) -> str:
        return f"{self.config.api_base_url.rstrip('/')}{path}"

    async def start(self):
        """Open backend connections and start housekeeping."""
        if self._started:
            return
        if isinstance(self.backend, RedisBackend):
            await self.backend.start()
        if self.lock is not None:
            await self.lock.start()
        self.housekeeper.start()
        self._started = True
        self.logger.info(
            "Session client started",
            api_base_url=self.config.api_base_url,
            storage_backend=self.config.storage_backend,
            cross_process_lock=self.lock is not None,
        )

    async def aclose(self):
        """Stop housekeeping (with its shutdown sweep) and close connections."""
        if self._started:
            await self.housekeeper.stop()
        if self.lock is not None:
            await self.lock.stop()
        if isinstance(self.backend, RedisBackend):
            await self.backend.stop()
        if self._owns_transport and isinstance(self.transport, HttpxTransport):
            await self.transport.aclose()
        self._started = False
        self.logger.info("Session client stopped")

    async def __aenter__(self) -> "SessionClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _authenticate(self, path: str, credentials: Dict[str, Any]) -> AuthResponse:
        response = await self.executor.request("POST", path, credentials, refresh_on_401=False)
        if response.status_code >= 500:
            raise ServerError(
                _response_message(response, "Authentication service unavailable"),
                details={"status_code": response.status_code}
            )
        if not response.is_success:
            raise AuthenticationRequired(
                _response_message(response, "Authentication failed"),
                details={"status_code": response.status_code}
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ServerError("Authentication response is not JSON") from e

        auth = await self.store.ingest_auth_response(payload)
        # New credentials get a full refresh budget
        self.coordinator.reset()
        return auth

    async def login(self, email: str, password: str) -> AuthResponse:
        """Log in and store the issued tokens."""
        auth = await self._authenticate(self.config.login_path, {"email": email, "password": password})
        self.logger.info("Logged in")
        return auth

    async def register(self, **fields: Any) -> AuthResponse:
        """Create an account and store the issued tokens."""
        auth = await self._authenticate(self.config.register_path, fields)
        self.logger.info("Registered")
        return auth

    async def logout(self) -> None:
        """Tell the server (best effort), then drop the local token pair."""
        try:
            await self.executor.request("POST", self.config.logout_path, refresh_on_401=False)
        except SessionError as e:
            self.logger.info("Server logout skipped", kind=e.kind.value, error=e.message)
        finally:
            await self.store.clear(reason="logout")
        self.logger.info("Logged out")

    async def request(self,
                      method: str,
                      url: str,
                      body: Any = None,
                      timeout: Optional[float] = None) -> httpx.Response:
        """Credentialed request; see RequestExecutor.request."""
        return await self.executor.request(method, url, body, timeout=timeout)

    async def get(self, url: str, timeout: Optional[float] = None) -> httpx.Response:
        return await self.request("GET", url, timeout=timeout)

    async def post(self, url: str, body: Any = None, timeout: Optional[float] = None) -> httpx.Response:
        return await self.request("POST", url, body, timeout=timeout)

    async def put(self, url: str, body: Any = None, timeout: Optional[float] = None) -> httpx.Response:
        return await self.request("PUT", url, body, timeout=timeout)

    async def delete(self, url: str, timeout: Optional[float] = None) -> httpx.Response:
        return await self.request("DELETE", url, timeout=timeout)

    async def refresh(self, timeout: Optional[float] = None) -> str:
        """Force a token refresh; terminal failures clear the session."""
        try:
            return await self.coordinator.ensure_fresh_token(timeout=timeout)
        except (MaxAttemptsExceeded, SessionExpired) as e:
            await self.store.clear(reason=e.kind.value)
            raise SessionExpired(details={"cause": e.kind.value}) from e

    async def is_authenticated(self) -> bool:
        """True while a well-formed, unexpired access token is stored."""
        token = await self.store.get_access()
        return bool(token) and self.validator.validate_format(token) and not self.validator.is_expired(token)


def create_session_client(config: Optional[SessionConfig] = None, **kwargs) -> SessionClient:
    """Configure logging and build a SessionClient for this process."""
    config = config or get_config()
    configure_logging("session", config.log_level)
    set_session_id()
    return SessionClient(config, **kwargs)
