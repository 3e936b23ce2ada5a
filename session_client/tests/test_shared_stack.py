"""
Unit tests for configuration, error taxonomy, metrics and logging context.
"""

import pytest

from shared.config import SessionConfig, get_config, redis_url_or_none
from shared.errors import (
    AuthenticationRequired,
    ErrorKind,
    ExpiredError,
    FormatError,
    MaxAttemptsExceeded,
    NetworkError,
    ServerError,
    SessionExpired,
    StorageError,
    TransportPolicyError,
)
from shared.logging import (
    add_correlation_context,
    add_service_context,
    clear_context,
    set_request_id,
    set_session_id,
)
from shared.metrics import MetricsCollector


class TestSessionConfig:
    """Test cases for SessionConfig."""

    def test_defaults(self):
        config = SessionConfig()

        assert config.refresh_max_attempts == 3
        assert config.refresh_min_interval == 5.0
        assert config.refresh_buffer_minutes == 5
        assert config.housekeeping_interval_seconds == 60.0
        assert config.max_token_age_seconds == 1800
        assert config.enforce_https is True
        assert config.bootstrap_paths == ("/api/auth/login", "/api/auth/register", "/api/auth/refresh")

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("CALORIE_API_BASE_URL", "https://calories.example.com")
        monkeypatch.setenv("CALORIE_ENFORCE_HTTPS", "false")
        monkeypatch.setenv("CALORIE_REFRESH_MAX_ATTEMPTS", "5")

        config = get_config()

        assert config.api_base_url == "https://calories.example.com"
        assert config.enforce_https is False
        assert config.refresh_max_attempts == 5

    def test_keyword_overrides_win(self, monkeypatch):
        monkeypatch.setenv("CALORIE_STORAGE_BACKEND", "file")
        assert get_config(storage_backend="memory").storage_backend == "memory"

    def test_redis_url_only_when_needed(self):
        assert redis_url_or_none(SessionConfig(storage_backend="memory")) is None
        assert redis_url_or_none(SessionConfig(storage_backend="redis")) == "redis://localhost:6379/0"
        assert redis_url_or_none(SessionConfig(cross_process_lock=True)) == "redis://localhost:6379/0"


class TestErrorTaxonomy:
    """Callers branch on kind / terminal / retryable."""

    @pytest.mark.parametrize("error_cls,kind,terminal,retryable", [
        (StorageError, ErrorKind.STORAGE, False, False),
        (FormatError, ErrorKind.FORMAT, False, False),
        (ExpiredError, ErrorKind.EXPIRED, False, False),
        (TransportPolicyError, ErrorKind.TRANSPORT_POLICY, False, False),
        (NetworkError, ErrorKind.NETWORK, False, True),
        (ServerError, ErrorKind.SERVER, False, True),
        (AuthenticationRequired, ErrorKind.AUTHENTICATION_REQUIRED, True, False),
        (MaxAttemptsExceeded, ErrorKind.MAX_ATTEMPTS_EXCEEDED, True, False),
        (SessionExpired, ErrorKind.SESSION_EXPIRED, True, False),
    ])
    def test_classification(self, error_cls, kind, terminal, retryable):
        error = error_cls()

        assert error.kind is kind
        assert error.terminal is terminal
        assert error.retryable is retryable

    def test_to_dict(self):
        error = SessionExpired(details={"cause": "refresh_rejected"})

        assert error.to_dict() == {
            "kind": "session_expired",
            "code": "SESSION_EXPIRED",
            "message": "Session expired. Please log in again.",
            "details": {"cause": "refresh_rejected"},
        }
        assert str(error) == "Session expired. Please log in again."


class TestMetricsCollector:
    """Test cases for MetricsCollector."""

    def test_instances_do_not_share_registries(self):
        first = MetricsCollector("a")
        second = MetricsCollector("b")

        first.record_refresh("success", 0.25)

        assert first.sample("token_refresh_total", outcome="success") == 1.0
        assert second.sample("token_refresh_total", outcome="success") == 0.0

    def test_records_and_exports(self):
        metrics = MetricsCollector("test")

        metrics.record_http_request("GET", "ok")
        metrics.record_http_request("GET", "ok")
        metrics.record_session_clear("logout")
        metrics.set_refresh_in_flight(True)

        assert metrics.sample("http_requests_total", method="GET", outcome="ok") == 2.0
        assert metrics.sample("session_clears_total", reason="logout") == 1.0
        assert metrics.sample("refresh_in_flight") == 1.0
        assert b"token_refresh_duration_seconds" in metrics.export()


class TestLoggingContext:
    """Correlation ids land in every event."""

    def teardown_method(self):
        clear_context()

    def test_correlation_ids_added(self):
        request_id = set_request_id()
        set_session_id("session-1")

        event = add_correlation_context(None, "info", {"event": "x"})

        assert event["request_id"] == request_id
        assert event["session_id"] == "session-1"

    def test_cleared_context_adds_nothing(self):
        set_request_id("req-1")
        clear_context()

        assert add_correlation_context(None, "info", {"event": "x"}) == {"event": "x"}

    def test_service_from_logger_name(self):
        event = add_service_context(None, "info", {"logger": "session.refresh"})
        assert event["service"] == "session"
