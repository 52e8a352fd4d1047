"""Telegram alert service for operator notifications.

Consumes engine events from an ``EventBus`` subscription and forwards the
operator-relevant ones:
- Order fills and rejections
- Risk alerts and emergency stops
- Broker disconnection
- Signal sources tripped by their circuit breaker
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, auto
from typing import Any

import httpx

from consensus_engine.core.events import (
    BrokerDisconnected,
    EmergencyStop,
    EngineEvent,
    OrderFilled,
    OrderRejected,
    RiskAlert,
    SessionStatusChanged,
    SourceDisabled,
    Subscription,
)

logger = logging.getLogger(__name__)


class AlertPriority(Enum):
    """Alert priority levels."""
    LOW = auto()      # Session status changes
    MEDIUM = auto()   # Fills, rejections
    HIGH = auto()     # Risk alerts, source disabled
    CRITICAL = auto()  # Emergency stop, broker disconnected


class AlertType(Enum):
    """Types of alerts."""
    ORDER_FILLED = "order_filled"
    ORDER_REJECTED = "order_rejected"
    RISK_ALERT = "risk_alert"
    EMERGENCY_STOP = "emergency_stop"
    BROKER_DISCONNECTED = "broker_disconnected"
    SOURCE_DISABLED = "source_disabled"
    SESSION_STATUS = "session_status"


_EMOJIS = {
    AlertType.ORDER_FILLED: "📈",
    AlertType.ORDER_REJECTED: "🚧",
    AlertType.RISK_ALERT: "⚠️",
    AlertType.EMERGENCY_STOP: "🚨",
    AlertType.BROKER_DISCONNECTED: "🔌",
    AlertType.SOURCE_DISABLED: "📡",
    AlertType.SESSION_STATUS: "ℹ️",
}


@dataclass
class Alert:
    """Alert message container."""
    alert_type: AlertType
    priority: AlertPriority
    title: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_telegram_message(self) -> str:
        """Format alert as Telegram message with markdown."""
        lines = [
            f"{_EMOJIS.get(self.alert_type, '📌')} *{self._priority_tag()}{self.title}*",
            "",
            self.message,
        ]

        if self.metadata:
            lines.append("")
            lines.append("_Details:_")
            for key, value in self.metadata.items():
                formatted_key = key.replace("_", " ").title()
                lines.append(f"• {formatted_key}: `{value}`")

        lines.append("")
        lines.append(f"🕐 {self.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        return "\n".join(lines)

    def _priority_tag(self) -> str:
        if self.priority == AlertPriority.CRITICAL:
            return "🔴 CRITICAL: "
        if self.priority == AlertPriority.HIGH:
            return "🟠 "
        return ""


def alert_from_event(event: EngineEvent) -> Alert | None:
    """Map an engine event to an operator alert; None for events not forwarded."""
    if isinstance(event, OrderFilled):
        pnl = f" (P&L {event.realized_pnl:+,.2f})" if event.side == "SELL" else ""
        return Alert(
            AlertType.ORDER_FILLED,
            AlertPriority.MEDIUM,
            f"{event.side} {event.symbol} filled",
            f"{event.quantity:g} @ {event.price:,.4f}{pnl}",
            metadata={"purpose": event.purpose, "order": event.client_order_id},
        )
    if isinstance(event, OrderRejected):
        return Alert(
            AlertType.ORDER_REJECTED,
            AlertPriority.MEDIUM,
            f"Order {event.status.lower()}: {event.symbol}",
            event.reason or event.status,
            metadata={"order": event.client_order_id},
        )
    if isinstance(event, RiskAlert):
        return Alert(
            AlertType.RISK_ALERT,
            AlertPriority.HIGH,
            f"Risk limit: {event.kind}",
            event.message,
            metadata={"value": f"{event.value:,.2f}", "limit": f"{event.limit:,.2f}"},
        )
    if isinstance(event, EmergencyStop):
        return Alert(
            AlertType.EMERGENCY_STOP,
            AlertPriority.CRITICAL,
            "Emergency stop",
            f"⚠️ Trading halted: {event.reason}",
            metadata={"session": event.session_id, "cancelled_orders": event.cancelled_orders},
        )
    if isinstance(event, BrokerDisconnected):
        return Alert(
            AlertType.BROKER_DISCONNECTED,
            AlertPriority.CRITICAL,
            "Broker disconnected",
            f"Reconnect failed after {event.attempts} attempts: {event.reason}",
        )
    if isinstance(event, SourceDisabled):
        return Alert(
            AlertType.SOURCE_DISABLED,
            AlertPriority.HIGH,
            f"Signal source disabled: {event.source}",
            event.reason,
            metadata={"failures": event.failure_count},
        )
    if isinstance(event, SessionStatusChanged):
        return Alert(
            AlertType.SESSION_STATUS,
            AlertPriority.LOW,
            f"Session {event.current}",
            f"{event.previous} -> {event.current} {event.reason}".rstrip(),
            metadata={"session": event.session_id},
        )
    return None


@dataclass
class TelegramConfig:
    """Telegram bot configuration."""
    bot_token: str
    chat_id: str
    enabled: bool = True
    # Alert filtering
    min_priority: AlertPriority = AlertPriority.MEDIUM
    # Rate limiting
    max_alerts_per_minute: int = 10


class TelegramAlerter:
    """Telegram notification service.

    Sends formatted alerts to a Telegram chat via bot, with rate limiting,
    priority filtering and retries.

    Example:
        >>> alerter = TelegramAlerter(TelegramConfig(bot_token="xxx", chat_id="123"))
        >>> task = asyncio.create_task(alerter.consume(bus.subscribe()))
    """

    TELEGRAM_API_BASE = "https://api.telegram.org"

    def __init__(self, config: TelegramConfig, client: httpx.AsyncClient | None = None):
        """Initialize alerter with configuration.

        Args:
            config: Telegram bot configuration
            client: HTTP client to reuse (one is created per send otherwise)
        """
        self.config = config
        self._client = client
        self._owns_client = False
        self._alert_timestamps: list[datetime] = []
        self.sent_count = 0

        # Retry configuration
        self._max_retries = 3
        self._retry_delay = 1.0

    async def __aenter__(self) -> "TelegramAlerter":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
            self._owns_client = True
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            self._owns_client = False

    async def consume(self, subscription: Subscription) -> None:
        """Forward events from a subscription until cancelled."""
        async for event in subscription:
            alert = alert_from_event(event)
            if alert is not None:
                await self.send_alert(alert)

    async def send_alert(self, alert: Alert) -> bool:
        """Send an alert to Telegram.

        Returns:
            True if sent successfully, False otherwise
        """
        if not self.config.enabled:
            return False

        if alert.priority.value < self.config.min_priority.value:
            return False

        if not self._check_rate_limit():
            logger.warning(f"Telegram rate limit reached, dropped alert: {alert.title}")
            return False

        success = await self._send_message(alert.to_telegram_message())
        if success:
            self._alert_timestamps.append(datetime.now(timezone.utc))
            self.sent_count += 1
        return success

    def _check_rate_limit(self) -> bool:
        """Check if we're within rate limits (rolling minute)."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=1)
        self._alert_timestamps = [ts for ts in self._alert_timestamps if ts >= cutoff]
        return len(self._alert_timestamps) < self.config.max_alerts_per_minute

    async def _send_message(self, text: str) -> bool:
        if self._client is None:
            async with httpx.AsyncClient(timeout=30.0) as client:
                return await self._send_with_client(client, text)
        return await self._send_with_client(self._client, text)

    async def _send_with_client(self, client: httpx.AsyncClient, text: str) -> bool:
        """Send message using provided client with retries."""
        url = f"{self.TELEGRAM_API_BASE}/bot{self.config.bot_token}/sendMessage"
        payload = {
            "chat_id": self.config.chat_id,
            "text": text,
            "parse_mode": "Markdown",
            "disable_web_page_preview": True,
        }

        for attempt in range(self._max_retries):
            try:
                response = await client.post(url, json=payload)
                if response.status_code == 200:
                    return True
                if response.status_code == 429:
                    # Rate limited by Telegram
                    retry_after = response.json().get("parameters", {}).get("retry_after", 10)
                    await asyncio.sleep(retry_after)
                else:
                    logger.warning(f"Telegram send failed: HTTP {response.status_code}")
                    break
            except httpx.TimeoutException:
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(self._retry_delay * (attempt + 1))
            except httpx.HTTPError as e:
                logger.warning(f"Telegram send failed: {e}")
                break

        return False
