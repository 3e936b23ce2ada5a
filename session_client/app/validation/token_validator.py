"""
Client-side token validation.

Structural checks only: signatures are verified by the API, never here.
Every check fails closed, so malformed or undecodable input is reported as
invalid (or expired) and never raises.
"""

import re
import time
from typing import Any, Callable, Dict, Optional

import jwt

from shared.config import SessionConfig
from shared.errors import ExpiredError, FormatError
from shared.logging import get_logger

_BASE64URL_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")

_UNVERIFIED = {
    "verify_signature": False,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "verify_iss": False,
    "verify_sub": False,
    "verify_jti": False,
}


def _numeric_claim(payload: Dict[str, Any], name: str) -> Optional[float]:
    value = payload.get(name)
    # bool is an int subclass; a boolean exp is not a timestamp
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


class TokenValidator:
    """Format and expiry checks for access and refresh tokens."""

    def __init__(self,
                 min_length: int = 10,
                 max_length: int = 2048,
                 max_token_age_seconds: Optional[int] = 30 * 60,
                 clock: Callable[[], float] = time.time):
        self.min_length = min_length
        self.max_length = max_length
        self.max_token_age_seconds = max_token_age_seconds
        self._clock = clock
        self.logger = get_logger("session.validator")

    @classmethod
    def from_config(cls, config: SessionConfig, clock: Callable[[], float] = time.time) -> "TokenValidator":
        return cls(
            min_length=config.token_min_length,
            max_length=config.token_max_length,
            max_token_age_seconds=config.max_token_age_seconds,
            clock=clock,
        )

    def _now(self) -> int:
        # Whole seconds, the resolution of exp/iat claims
        return int(self._clock())

    def decode_header(self, token: Any) -> Optional[Dict[str, Any]]:
        """Unverified JOSE header, or None when undecodable."""
        if not isinstance(token, str) or not token:
            return None
        try:
            return jwt.get_unverified_header(token)
        except (jwt.PyJWTError, ValueError, TypeError):
            return None

    def decode_payload(self, token: Any) -> Optional[Dict[str, Any]]:
        """Unverified claims, or None when undecodable."""
        if not isinstance(token, str) or not token:
            return None
        try:
            payload = jwt.decode(token, options=dict(_UNVERIFIED))
        except (jwt.PyJWTError, ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def validate_format(self, token: Any) -> bool:
        """True only for a well-formed, recently issued JWT."""
        if not isinstance(token, str) or not token:
            self.logger.debug("Token is missing or not a string")
            return False

        if len(token) < self.min_length or len(token) > self.max_length:
            self.logger.warning(
                "Token length validation failed",
                length=len(token),
                min_length=self.min_length,
                max_length=self.max_length
            )
            return False

        parts = token.split(".")
        if len(parts) != 3:
            self.logger.warning("Invalid JWT token structure", segments=len(parts))
            return False

        if not all(_BASE64URL_SEGMENT.match(part) for part in parts):
            self.logger.warning("Token contains empty or non-base64url segments")
            return False

        header = self.decode_header(token)
        if header is None or header.get("typ") != "JWT":
            self.logger.warning("Invalid JWT header type")
            return False

        payload = self.decode_payload(token)
        if payload is None:
            self.logger.warning("JWT payload could not be decoded")
            return False

        exp = _numeric_claim(payload, "exp")
        iat = _numeric_claim(payload, "iat")
        if exp is None or iat is None:
            self.logger.warning("JWT missing required expiration or issued at claims")
            return False

        if self.max_token_age_seconds is not None:
            token_age = self._now() - iat
            if token_age > self.max_token_age_seconds:
                self.logger.warning(
                    "Token too old",
                    age_seconds=token_age,
                    max_age_seconds=self.max_token_age_seconds
                )
                return False

        return True

    def _expiry(self, token: Optional[str]) -> Optional[float]:
        payload = self.decode_payload(token)
        if payload is None:
            return None
        return _numeric_claim(payload, "exp")

    def is_expired(self, token: Optional[str]) -> bool:
        """True for absent, undecodable or past-expiry tokens."""
        exp = self._expiry(token)
        if exp is None:
            if token:
                self.logger.warning("Token payload missing expiration information")
            return True

        expired = exp < self._now()
        if expired:
            self.logger.info("Token expired", expired_at=int(exp))
        return expired

    def is_expiring_soon(self, token: Optional[str], buffer_minutes: float = 5) -> bool:
        """True when the token expires within the buffer window (or cannot be read)."""
        exp = self._expiry(token)
        if exp is None:
            return True
        return exp - self._now() <= buffer_minutes * 60

    def time_remaining(self, token: Optional[str]) -> float:
        """Seconds until expiry, 0 for absent, undecodable or expired tokens."""
        exp = self._expiry(token)
        if exp is None:
            return 0.0
        return max(0.0, exp - self._now())

    def require_valid(self, token: Optional[str]) -> str:
        """Return the token or raise FormatError / ExpiredError."""
        if not self.validate_format(token):
            raise FormatError()
        if self.is_expired(token):
            raise ExpiredError(details={"expired_at": self._expiry(token)})
        return token
