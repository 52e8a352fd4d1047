"""Tests for Sentry service."""

from unittest.mock import ANY, MagicMock, patch

import pytest

from consensus_engine.monitoring.sentry_service import (
    SentryConfig,
    SentryService,
    scrub_sensitive_data,
)


class TestSentryConfig:
    """Test suite for SentryConfig."""

    def test_default_values(self):
        config = SentryConfig(dsn="https://test@sentry.io/123")
        assert config.environment == "development"
        assert config.traces_sample_rate == 0.1
        assert config.enabled is True
        assert "CancelledError" in config.ignore_errors

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SENTRY_DSN", "https://env@sentry.io/1")
        monkeypatch.setenv("SENTRY_ENVIRONMENT", "production")
        monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "0.5")

        config = SentryConfig.from_env()

        assert config.dsn == "https://env@sentry.io/1"
        assert config.environment == "production"
        assert config.traces_sample_rate == 0.5

    def test_from_env_without_dsn(self):
        assert SentryConfig.from_env().dsn == ""


class TestScrubbing:
    def test_nested_and_lists(self):
        event = {
            "api_key": "secret123",
            "user": "test",
            "nested": {"password": "hidden", "data": "visible"},
            "items": [{"token": "t", "name": "n"}, "plain"],
        }

        scrubbed = scrub_sensitive_data(event)

        assert scrubbed["api_key"] == "[REDACTED]"
        assert scrubbed["user"] == "test"
        assert scrubbed["nested"]["password"] == "[REDACTED]"
        assert scrubbed["nested"]["data"] == "visible"
        assert scrubbed["items"][0]["token"] == "[REDACTED]"
        assert scrubbed["items"][1] == "plain"


class TestSentryService:
    """Test suite for SentryService."""

    @pytest.fixture
    def config(self) -> SentryConfig:
        return SentryConfig(dsn="https://test@sentry.io/123", environment="test")

    @pytest.fixture
    def service(self, config: SentryConfig) -> SentryService:
        return SentryService(config)

    @pytest.fixture
    def initialized_service(self, config: SentryConfig) -> SentryService:
        service = SentryService(config)
        service._initialized = True  # Simulate initialization
        return service

    def test_initialize_disabled(self, config: SentryConfig):
        config.enabled = False
        assert SentryService(config).initialize() is False

    def test_initialize_no_dsn(self, config: SentryConfig):
        config.dsn = ""
        service = SentryService(config)
        assert service.initialize() is False
        assert service.is_initialized is False

    @patch("consensus_engine.monitoring.sentry_service.sentry_sdk")
    def test_initialize(self, mock_sdk, service: SentryService, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SENTRY_RELEASE", "v1.2.3")

        assert service.initialize() is True

        mock_sdk.init.assert_called_once_with(
            dsn="https://test@sentry.io/123",
            environment="test",
            release="v1.2.3",
            traces_sample_rate=0.1,
            profiles_sample_rate=0.0,
            debug=False,
            integrations=ANY,
            before_send=ANY,
        )
        assert service.is_initialized is True

    def test_helpers_are_noops_when_not_initialized(self, service: SentryService):
        assert service.capture_error(ValueError("x")) is None
        assert service.capture_warning("x") is None
        service.add_breadcrumb("signal", "message")
        service.set_session_context("s-1", "paper", ["BTC/USDT"])
        service.flush()
        with service.transaction("cycle", "trading_cycle") as tx:
            assert tx is None
        with service.span("risk", "check") as span:
            assert span is None

    @patch("consensus_engine.monitoring.sentry_service.capture_exception")
    @patch("consensus_engine.monitoring.sentry_service.set_context")
    @patch("consensus_engine.monitoring.sentry_service.set_tag")
    def test_capture_error_initialized(self, mock_set_tag, mock_set_context, mock_capture, initialized_service):
        mock_capture.return_value = "event-id-123"

        result = initialized_service.capture_error(
            ValueError("test"), context={"symbol": "BTC/USDT"}, tags={"component": "risk"}
        )

        mock_set_context.assert_called_once_with("engine_context", {"symbol": "BTC/USDT"})
        mock_set_tag.assert_called_once_with("component", "risk")
        assert result == "event-id-123"

    @patch("consensus_engine.monitoring.sentry_service.capture_message")
    def test_capture_warning_initialized(self, mock_capture, initialized_service):
        mock_capture.return_value = "warn-id"

        assert initialized_service.capture_warning("source disabled") == "warn-id"
        mock_capture.assert_called_once_with("source disabled", level="warning")

    @patch("consensus_engine.monitoring.sentry_service.set_context")
    @patch("consensus_engine.monitoring.sentry_service.set_tag")
    def test_set_session_context(self, mock_set_tag, mock_set_context, initialized_service):
        initialized_service.set_session_context("s-1", "paper", ["BTC/USDT"], equity=1000.0)

        mock_set_tag.assert_any_call("session_id", "s-1")
        mock_set_tag.assert_any_call("broker_mode", "paper")
        mock_set_context.assert_called_once_with(
            "session", {"session_id": "s-1", "mode": "paper", "symbols": ["BTC/USDT"], "equity": 1000.0}
        )

    @patch("consensus_engine.monitoring.sentry_service.sentry_sdk")
    def test_add_breadcrumb_initialized(self, mock_sdk, initialized_service):
        initialized_service.add_breadcrumb("order", "BUY filled", {"price": 50000})

        mock_sdk.add_breadcrumb.assert_called_once_with(
            category="order", message="BUY filled", data={"price": 50000}, level="info"
        )

    @patch("consensus_engine.monitoring.sentry_service.sentry_sdk")
    def test_transaction_initialized(self, mock_sdk, initialized_service):
        mock_tx = MagicMock()
        mock_sdk.start_transaction.return_value.__enter__.return_value = mock_tx

        with initialized_service.transaction("cycle", "trading_cycle") as tx:
            assert tx is mock_tx

        mock_sdk.start_transaction.assert_called_once_with(op="cycle", name="trading_cycle")

    def test_before_send_drops_ignored_errors(self, service: SentryService):
        hint = {"exc_info": (ConnectionResetError, ConnectionResetError(), None)}
        assert service._before_send({"message": "x"}, hint) is None

    def test_before_send_scrubs(self, service: SentryService):
        hint = {"exc_info": (ValueError, ValueError(), None)}
        event = service._before_send({"extra": {"secret": "s", "symbol": "BTC/USDT"}}, hint)
        assert event == {"extra": {"secret": "[REDACTED]", "symbol": "BTC/USDT"}}

    def test_get_release_from_env(self, service: SentryService, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SENTRY_RELEASE", "v1.0.0")
        assert service._get_release() == "v1.0.0"

    @patch("consensus_engine.monitoring.sentry_service.subprocess.run", side_effect=OSError("no git"))
    def test_get_release_without_git(self, mock_run, service: SentryService, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("SENTRY_RELEASE", raising=False)
        assert service._get_release() == "consensus-engine@unknown"
