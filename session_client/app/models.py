"""
Wire and data models for the session client.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shared.errors import FormatError, ServerError


# Persisted slot names, kept for compatibility with existing stores.
ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
TOKEN_METADATA_KEY = "tokenMetadata"


class TokenMetadata(BaseModel):
    """Advisory timestamps stored next to the access token (epoch milliseconds)."""

    model_config = ConfigDict(populate_by_name=True)

    issued_at: int = Field(alias="issuedAt")
    expires_at: int = Field(alias="expiresAt")
    last_checked: int = Field(alias="lastChecked")


@dataclass(frozen=True)
class TokenPair:
    """Access/refresh token pair as read from the store."""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def empty(self) -> bool:
        return not self.access_token and not self.refresh_token


class RefreshPhase(str, Enum):
    """Refresh coordinator states."""
    IDLE = "idle"
    REFRESHING = "refreshing"
    BACKOFF = "backoff"
    TERMINAL = "terminal"


@dataclass
class RefreshState:
    """Mutable refresh bookkeeping owned by one coordinator."""
    in_flight: bool = False
    attempt_count: int = 0
    last_attempt_at: float = 0.0
    phase: RefreshPhase = RefreshPhase.IDLE


class RefreshRequest(BaseModel):
    """Body of POST <refresh endpoint>."""

    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(alias="refreshToken")


class RefreshResponse(BaseModel):
    """Successful refresh body; the refresh token is only present when rotated."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    access_token: str = Field(alias="accessToken", min_length=1)
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


class IssuedTokens(BaseModel):
    """``tokens`` object of the current login/register response."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    access_token: str = Field(alias="accessToken", min_length=1)
    refresh_token: str = Field(alias="refreshToken", min_length=1)


class TokensAuthResponse(BaseModel):
    """Login/register response: ``{"tokens": {...}, "user": {...}}``."""

    model_config = ConfigDict(extra="ignore")

    tokens: IssuedTokens
    user: Optional[Dict[str, Any]] = None


class LegacyAuthResponse(BaseModel):
    """Legacy login/register response: ``{"token": ..., **user_fields}``. Access only."""

    model_config = ConfigDict(extra="allow")

    token: str = Field(min_length=1)

    @property
    def user(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


AuthResponse = Union[TokensAuthResponse, LegacyAuthResponse]


def parse_auth_response(payload: Any) -> AuthResponse:
    """Validate a login/register body into one of the two accepted shapes.

    The current shape wins when ``tokens`` carries both tokens; otherwise a
    top-level ``token`` selects the legacy shape. Anything else is a
    FormatError.
    """
    if not isinstance(payload, dict):
        raise FormatError("Auth response is not a JSON object")

    try:
        tokens = payload.get("tokens")
        if isinstance(tokens, dict) and tokens.get("accessToken") and tokens.get("refreshToken"):
            return TokensAuthResponse.model_validate(payload)
        if payload.get("token"):
            return LegacyAuthResponse.model_validate(payload)
    except ValidationError as e:
        raise FormatError("Auth response failed validation", details={"errors": e.error_count()}) from e

    raise FormatError("No valid tokens received from server")


def parse_refresh_response(payload: Any) -> RefreshResponse:
    """Validate a 2xx refresh body; a body without an access token is a server fault."""
    try:
        return RefreshResponse.model_validate(payload)
    except ValidationError as e:
        raise ServerError("Refresh response missing access token", details={"errors": e.error_count()}) from e
