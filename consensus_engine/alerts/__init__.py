"""Alert services for the consensus engine.

Provides notification capabilities for operators:
- TelegramAlerter: Real-time notifications via Telegram bot
"""

from consensus_engine.alerts.telegram import (
    Alert,
    AlertPriority,
    AlertType,
    TelegramAlerter,
    TelegramConfig,
    alert_from_event,
)

__all__ = [
    "Alert",
    "AlertPriority",
    "AlertType",
    "TelegramAlerter",
    "TelegramConfig",
    "alert_from_event",
]
