"""Tests for Prometheus MetricsService."""

from unittest.mock import patch

import pytest

from consensus_engine.monitoring.metrics import MetricsConfig, MetricsService


class TestMetricsConfig:
    """Test suite for MetricsConfig."""

    def test_default_values(self):
        """Test default configuration values."""
        config = MetricsConfig()
        assert config.enabled is True
        assert config.port == 9090
        assert config.prefix == "consensus"


class TestMetricsServiceDisabled:
    """Test MetricsService when disabled."""

    @pytest.fixture
    def disabled_service(self):
        return MetricsService(MetricsConfig(enabled=False))

    def test_is_enabled_false(self, disabled_service):
        assert disabled_service.is_enabled is False

    def test_start_server_returns_false(self, disabled_service):
        assert disabled_service.start_server() is False

    def test_record_methods_do_nothing(self, disabled_service):
        """Recording methods must not raise or register samples."""
        disabled_service.record_signal_fetch("api", "ok")
        disabled_service.set_source_available("api", False)
        disabled_service.record_aggregation("BTC/USDT", "buy")
        disabled_service.record_sizing("Integrated", 10)
        disabled_service.record_risk_rejection("drawdown")
        disabled_service.record_order("BTC/USDT", "BUY", "FILLED", 5.0)
        disabled_service.set_equity(1000.0)
        disabled_service.set_daily_pnl(50.0)
        disabled_service.set_open_positions(1)
        disabled_service.set_session_status("ACTIVE")
        disabled_service.observe_cycle_duration(0.2)

        assert disabled_service.sample("equity") is None


class TestMetricsServiceEnabled:
    """Test MetricsService recording into its private registry."""

    @pytest.fixture
    def service(self):
        return MetricsService()

    def test_independent_registries(self):
        """Two services in one process do not collide."""
        first, second = MetricsService(), MetricsService()
        first.set_equity(1.0)
        second.set_equity(2.0)
        assert first.sample("equity") == 1.0
        assert second.sample("equity") == 2.0

    def test_counters(self, service):
        service.record_signal_fetch("api", "timeout")
        service.record_signal_fetch("api", "timeout")
        service.record_risk_rejection("daily_loss")

        assert service.sample("signal_fetches_total", {"source": "api", "outcome": "timeout"}) == 2
        assert service.sample("risk_rejections_total", {"rule": "daily_loss"}) == 1

    def test_order_with_realized_pnl(self, service):
        service.record_order("BTC/USDT", "SELL", "FILLED", realized_pnl=-250.0)

        assert service.sample("orders_total", {"symbol": "BTC/USDT", "side": "SELL", "status": "FILLED"}) == 1
        assert service.sample("realized_pnl_count") == 1
        assert service.sample("realized_pnl_sum") == -250.0

    def test_gauges(self, service):
        service.set_source_available("api", False)
        service.set_open_positions(3)
        service.set_session_status("PAUSED")

        assert service.sample("source_available", {"source": "api"}) == 0
        assert service.sample("open_positions") == 3
        assert service.sample("session_status") == 2

    def test_unknown_status_code(self, service):
        service.set_session_status("BOGUS")
        assert service.sample("session_status") == -1

    def test_histograms(self, service):
        service.record_sizing("Integrated", 254)
        service.observe_cycle_duration(0.3)

        assert service.sample("position_size_units_count", {"method": "Integrated"}) == 1
        assert service.sample("cycle_duration_seconds_sum") == pytest.approx(0.3)


class TestMetricsServer:
    @patch("consensus_engine.monitoring.metrics.start_http_server")
    def test_start_server_once(self, mock_start):
        service = MetricsService(MetricsConfig(port=9191))

        assert service.start_server() is True
        assert service.start_server() is True

        mock_start.assert_called_once_with(9191, registry=service.registry)

    @patch("consensus_engine.monitoring.metrics.start_http_server", side_effect=OSError("in use"))
    def test_start_server_port_in_use(self, mock_start):
        service = MetricsService()
        assert service.start_server() is False
