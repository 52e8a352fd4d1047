"""Tests for the in-process event bus."""

import asyncio
from datetime import datetime

import pytest

from consensus_engine.core.events import (
    EmergencyStop,
    EventBus,
    OrderFilled,
    RiskAlert,
    SessionStatusChanged,
)


def alert(value: float = 1.0) -> RiskAlert:
    return RiskAlert(kind="drawdown", message="drawdown high", value=value, limit=20.0)


class TestEventBus:
    def test_filtered_subscription(self):
        bus = EventBus()
        risk_only = bus.subscribe(RiskAlert)
        everything = bus.subscribe()

        bus.publish(alert())
        bus.publish(EmergencyStop(session_id="s1", reason="daily loss"))

        assert [type(e) for e in risk_only.drain()] == [RiskAlert]
        assert [type(e) for e in everything.drain()] == [RiskAlert, EmergencyStop]

    def test_publish_returns_delivery_count(self):
        bus = EventBus()
        bus.subscribe(RiskAlert)
        bus.subscribe(EmergencyStop)

        assert bus.publish(alert()) == 1
        assert bus.subscriber_count == 2

    def test_full_queue_drops_without_blocking(self):
        bus = EventBus()
        sub = bus.subscribe(maxsize=1)

        bus.publish(alert(1.0))
        delivered = bus.publish(alert(2.0))

        assert delivered == 0
        assert sub.dropped == 1
        assert sub.get_nowait().value == 1.0

    def test_unsubscribe(self):
        bus = EventBus()
        sub = bus.subscribe()
        sub.close()

        assert bus.publish(alert()) == 0
        assert bus.subscriber_count == 0

    def test_recent_history(self):
        bus = EventBus(history_size=2)
        for value in (1.0, 2.0, 3.0):
            bus.publish(alert(value))

        assert [e.value for e in bus.recent()] == [2.0, 3.0]

    @pytest.mark.asyncio
    async def test_async_iteration(self):
        bus = EventBus()
        sub = bus.subscribe(SessionStatusChanged)

        async def consume() -> list[str]:
            seen = []
            async for event in sub:
                seen.append(event.current)
                if len(seen) == 2:
                    return seen
            return seen

        consumer = asyncio.create_task(consume())
        bus.publish(SessionStatusChanged(session_id="s1", previous="INITIALIZED", current="ACTIVE"))
        bus.publish(SessionStatusChanged(session_id="s1", previous="ACTIVE", current="STOPPED"))

        assert await asyncio.wait_for(consumer, timeout=1) == ["ACTIVE", "STOPPED"]


class TestPayload:
    def test_payload_is_json_friendly(self):
        event = OrderFilled(
            client_order_id="CE-EN-1",
            symbol="BTC/USDT",
            side="BUY",
            quantity=1.0,
            price=50_000.0,
            purpose="entry",
        )

        payload = event.to_payload()

        assert payload["symbol"] == "BTC/USDT"
        assert isinstance(payload["timestamp"], str)
        datetime.fromisoformat(payload["timestamp"])
        assert event.event_type == "order.filled"

    def test_levels(self):
        assert EmergencyStop.level == "ERROR"
        assert RiskAlert.level == "WARN"
        assert OrderFilled.level == "INFO"
