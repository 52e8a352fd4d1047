"""Tests for Telegram alerter service."""

import asyncio
import json

import httpx
import pytest

from consensus_engine.alerts.telegram import (
    Alert,
    AlertPriority,
    AlertType,
    TelegramAlerter,
    TelegramConfig,
    alert_from_event,
)
from consensus_engine.core.events import (
    BrokerDisconnected,
    EmergencyStop,
    EventBus,
    OrderFilled,
    OrderRejected,
    OrderSubmitted,
    RiskAlert,
    SessionStatusChanged,
    SourceDisabled,
)


class RecordingTransport:
    """Collects posted payloads and answers with a fixed status."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code == 200})

    @property
    def texts(self) -> list[str]:
        return [json.loads(r.content)["text"] for r in self.requests]


def make_alerter(transport: RecordingTransport, **config) -> TelegramAlerter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(transport))
    return TelegramAlerter(TelegramConfig(bot_token="token", chat_id="42", **config), client=client)


def filled(side: str = "BUY", pnl: float = 0.0) -> OrderFilled:
    return OrderFilled(
        client_order_id="CE-EN-1",
        symbol="BTC/USDT",
        side=side,
        quantity=0.5,
        price=50000.0,
        purpose="entry",
        realized_pnl=pnl,
    )


class TestAlert:
    """Test suite for Alert formatting."""

    def test_to_telegram_message_basic(self):
        alert = Alert(AlertType.ORDER_FILLED, AlertPriority.MEDIUM, "BUY filled", "0.5 @ 50,000")
        msg = alert.to_telegram_message()
        assert "*BUY filled*" in msg
        assert "0.5 @ 50,000" in msg
        assert "📈" in msg

    def test_metadata_lines(self):
        alert = Alert(
            AlertType.RISK_ALERT,
            AlertPriority.HIGH,
            "Risk limit",
            "drawdown",
            metadata={"max_drawdown": "20%"},
        )
        msg = alert.to_telegram_message()
        assert "Max Drawdown: `20%`" in msg
        assert "🟠" in msg

    def test_critical_tag(self):
        alert = Alert(AlertType.EMERGENCY_STOP, AlertPriority.CRITICAL, "Emergency stop", "halted")
        assert "🔴 CRITICAL:" in alert.to_telegram_message()


class TestAlertFromEvent:
    def test_entry_fill_has_no_pnl(self):
        alert = alert_from_event(filled())
        assert alert.alert_type is AlertType.ORDER_FILLED
        assert alert.priority is AlertPriority.MEDIUM
        assert "P&L" not in alert.message

    def test_exit_fill_shows_pnl(self):
        alert = alert_from_event(filled(side="SELL", pnl=125.0))
        assert "(P&L +125.00)" in alert.message

    @pytest.mark.parametrize(
        "event,alert_type,priority",
        [
            (OrderRejected("c", "BTC/USDT", "REJECTED", "price band"), AlertType.ORDER_REJECTED, AlertPriority.MEDIUM),
            (RiskAlert("drawdown", "drawdown 21%", 21.0, 20.0), AlertType.RISK_ALERT, AlertPriority.HIGH),
            (EmergencyStop("s-1", "daily loss"), AlertType.EMERGENCY_STOP, AlertPriority.CRITICAL),
            (BrokerDisconnected(5, "refused"), AlertType.BROKER_DISCONNECTED, AlertPriority.CRITICAL),
            (SourceDisabled("api", "HTTP 503", 3), AlertType.SOURCE_DISABLED, AlertPriority.HIGH),
            (SessionStatusChanged("s-1", "ACTIVE", "PAUSED"), AlertType.SESSION_STATUS, AlertPriority.LOW),
        ],
    )
    def test_mapping(self, event, alert_type, priority):
        alert = alert_from_event(event)
        assert alert.alert_type is alert_type
        assert alert.priority is priority

    def test_unmapped_event(self):
        event = OrderSubmitted("c", "BTC/USDT", "BUY", 1.0, 100.0, "entry")
        assert alert_from_event(event) is None


class TestTelegramAlerter:
    @pytest.mark.asyncio
    async def test_send_alert(self):
        transport = RecordingTransport()
        alerter = make_alerter(transport)

        assert await alerter.send_alert(alert_from_event(filled())) is True

        [request] = transport.requests
        assert request.url.path == "/bottoken/sendMessage"
        body = json.loads(request.content)
        assert body["chat_id"] == "42"
        assert body["parse_mode"] == "Markdown"
        assert alerter.sent_count == 1

    @pytest.mark.asyncio
    async def test_disabled(self):
        transport = RecordingTransport()
        alerter = make_alerter(transport, enabled=False)
        assert await alerter.send_alert(alert_from_event(filled())) is False
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_priority_filter(self):
        transport = RecordingTransport()
        alerter = make_alerter(transport, min_priority=AlertPriority.HIGH)

        assert await alerter.send_alert(alert_from_event(filled())) is False
        assert await alerter.send_alert(alert_from_event(EmergencyStop("s-1", "drawdown"))) is True
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit(self):
        transport = RecordingTransport()
        alerter = make_alerter(transport, max_alerts_per_minute=2)
        alert = alert_from_event(filled())

        results = [await alerter.send_alert(alert) for _ in range(3)]

        assert results == [True, True, False]

    @pytest.mark.asyncio
    async def test_http_error_returns_false(self):
        alerter = make_alerter(RecordingTransport(status_code=500))
        assert await alerter.send_alert(alert_from_event(filled())) is False
        assert alerter.sent_count == 0

    @pytest.mark.asyncio
    async def test_consume_forwards_mapped_events(self):
        transport = RecordingTransport()
        alerter = make_alerter(transport)
        bus = EventBus()
        task = asyncio.create_task(alerter.consume(bus.subscribe()))

        bus.publish(OrderSubmitted("c", "BTC/USDT", "BUY", 1.0, 100.0, "entry"))
        bus.publish(RiskAlert("daily_loss", "daily loss 51,000", 51_000.0, 50_000.0))
        for _ in range(20):
            if transport.requests:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(transport.texts) == 1
        assert "Risk limit: daily_loss" in transport.texts[0]

    @pytest.mark.asyncio
    async def test_context_manager_owns_client(self):
        alerter = TelegramAlerter(TelegramConfig(bot_token="t", chat_id="1"))
        async with alerter:
            assert alerter._client is not None
        assert alerter._client is None
