"""
Shared error handling for the calorie tracker session client.

Every failure the session layer surfaces is a ``SessionError`` carrying an
``ErrorKind``. Callers branch on ``error.kind`` (or ``error.terminal``) to
tell a transient condition, where the user may simply retry, from a terminal
one, where the user must authenticate again.
"""

from enum import Enum
from typing import Dict, Any, Optional


class ErrorKind(str, Enum):
    """Discriminator for session errors."""
    STORAGE = "storage"
    FORMAT = "format"
    EXPIRED = "expired"
    TRANSPORT_POLICY = "transport_policy"
    NETWORK = "network"
    SERVER = "server"
    AUTHENTICATION_REQUIRED = "authentication_required"
    MAX_ATTEMPTS_EXCEEDED = "max_attempts_exceeded"
    SESSION_EXPIRED = "session_expired"


# Kinds that require the user to authenticate again.
TERMINAL_KINDS = frozenset({
    ErrorKind.AUTHENTICATION_REQUIRED,
    ErrorKind.MAX_ATTEMPTS_EXCEEDED,
    ErrorKind.SESSION_EXPIRED,
})

# Kinds that a later attempt can resolve.
RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK,
    ErrorKind.SERVER,
})


class SessionError(Exception):
    """Base exception for the session layer."""

    kind: ErrorKind = ErrorKind.SERVER

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def terminal(self) -> bool:
        """True when the caller must re-authenticate."""
        return self.kind in TERMINAL_KINDS

    @property
    def retryable(self) -> bool:
        """True when repeating the same action may succeed."""
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        """Serialise for structured logs and API error bodies."""
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class StorageError(SessionError):
    """The persistence backend rejected a read or write."""

    kind = ErrorKind.STORAGE

    def __init__(self, message: str = "Token storage failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_ERROR", message, details)


class FormatError(SessionError):
    """A token or auth response failed structural validation."""

    kind = ErrorKind.FORMAT

    def __init__(self, message: str = "Authentication token format is invalid", details: Optional[Dict[str, Any]] = None):
        super().__init__("FORMAT_ERROR", message, details)


class ExpiredError(SessionError):
    """Token is well-formed but past its expiry."""

    kind = ErrorKind.EXPIRED

    def __init__(self, message: str = "Authentication token has expired", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXPIRED_ERROR", message, details)


class TransportPolicyError(SessionError):
    """Insecure transport rejected by policy."""

    kind = ErrorKind.TRANSPORT_POLICY

    def __init__(self, message: str = "HTTPS is required for all API requests", details: Optional[Dict[str, Any]] = None):
        super().__init__("TRANSPORT_POLICY_ERROR", message, details)


class NetworkError(SessionError):
    """Transport-level failure reaching the server."""

    kind = ErrorKind.NETWORK

    def __init__(self, message: str = "Network error", details: Optional[Dict[str, Any]] = None):
        super().__init__("NETWORK_ERROR", message, details)


class ServerError(SessionError):
    """Server answered the refresh call with an unusable response."""

    kind = ErrorKind.SERVER

    def __init__(self, message: str = "Server error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVER_ERROR", message, details)


class AuthenticationRequired(SessionError):
    """No usable credentials for a protected endpoint."""

    kind = ErrorKind.AUTHENTICATION_REQUIRED

    def __init__(self, message: str = "Authentication required. Please log in to continue.", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_REQUIRED", message, details)


class MaxAttemptsExceeded(SessionError):
    """The refresh episode exhausted its retry budget."""

    kind = ErrorKind.MAX_ATTEMPTS_EXCEEDED

    def __init__(self, message: str = "Maximum refresh attempts exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("MAX_ATTEMPTS_EXCEEDED", message, details)


class SessionExpired(SessionError):
    """Refresh token rejected, or request still unauthorized after a refresh."""

    kind = ErrorKind.SESSION_EXPIRED

    def __init__(self, message: str = "Session expired. Please log in again.", details: Optional[Dict[str, Any]] = None):
        super().__init__("SESSION_EXPIRED", message, details)
