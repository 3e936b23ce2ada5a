"""
Shared configuration management for the calorie tracker session client.
"""

from typing import Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SessionConfig(BaseSettings):
    """Session client configuration, read from CALORIE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CALORIE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # API endpoints
    api_base_url: str = Field(default="https://localhost:3000")
    login_path: str = Field(default="/api/auth/login")
    register_path: str = Field(default="/api/auth/register")
    refresh_path: str = Field(default="/api/auth/refresh")
    logout_path: str = Field(default="/api/logout")
    request_timeout: float = Field(default=10.0)

    # Transport security
    enforce_https: bool = Field(default=True)

    # Token validation
    token_min_length: int = Field(default=10)
    token_max_length: int = Field(default=2048)
    max_token_age_seconds: int = Field(default=30 * 60)
    default_access_ttl_seconds: int = Field(default=30 * 60)

    # Refresh coordination
    refresh_max_attempts: int = Field(default=3)
    refresh_base_delay: float = Field(default=1.0)
    refresh_max_delay: float = Field(default=10.0)
    refresh_jitter_factor: float = Field(default=0.1)
    refresh_min_interval: float = Field(default=5.0)
    refresh_buffer_minutes: float = Field(default=5)

    # Housekeeping
    housekeeping_interval_seconds: float = Field(default=60.0)

    # Storage
    storage_backend: str = Field(default="memory")
    storage_path: str = Field(default=".calorie_session.json")
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_key_prefix: str = Field(default="calorie:session:")

    # Cross-process refresh lock (requires redis)
    cross_process_lock: bool = Field(default=False)
    lock_ttl_seconds: float = Field(default=10.0)
    lock_heartbeat_seconds: float = Field(default=3.0)

    @property
    def bootstrap_paths(self) -> Tuple[str, ...]:
        """Endpoints that may be called without an access token."""
        return (self.login_path, self.register_path, self.refresh_path)


def get_config(**overrides) -> SessionConfig:
    """Build a configuration, letting keyword overrides win over the environment."""
    return SessionConfig(**overrides)


def redis_url_or_none(config: SessionConfig) -> Optional[str]:
    """Return the Redis URL only when a Redis-backed feature is enabled."""
    if config.storage_backend == "redis" or config.cross_process_lock:
        return config.redis_url
    return None
