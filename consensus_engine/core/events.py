"""In-process publish/subscribe channel for engine events.

Publishers call ``EventBus.publish`` synchronously; it never blocks. Each
subscriber owns an ``asyncio.Queue`` and drains it from its own task, so a
slow consumer can never stall a trading cycle.

Example:
    >>> bus = EventBus()
    >>> sub = bus.subscribe(RiskAlert, EmergencyStop)
    >>> bus.publish(EmergencyStop(session_id="s1", reason="daily loss"))
    >>> event = await sub.get()
"""

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, ClassVar

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EngineEvent:
    """Base class for every published event."""

    event_type: ClassVar[str] = "engine.event"
    level: ClassVar[str] = "INFO"

    def to_payload(self) -> dict[str, Any]:
        """Flatten to a JSON-friendly dict."""
        payload = asdict(self)
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
        return payload


@dataclass(frozen=True)
class SignalsAggregated(EngineEvent):
    event_type: ClassVar[str] = "signals.aggregated"

    symbol: str
    total_sources: int
    buy_signals: int
    hold_signals: int
    sell_signals: int
    buy_percentage: float
    should_buy: bool
    should_sell: bool
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class SourceDisabled(EngineEvent):
    event_type: ClassVar[str] = "signals.source_disabled"
    level: ClassVar[str] = "ERROR"

    source: str
    reason: str
    failure_count: int
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class OrderSubmitted(EngineEvent):
    event_type: ClassVar[str] = "order.submitted"

    client_order_id: str
    symbol: str
    side: str
    quantity: float
    price: float
    purpose: str
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class OrderFilled(EngineEvent):
    event_type: ClassVar[str] = "order.filled"

    client_order_id: str
    symbol: str
    side: str
    quantity: float
    price: float
    purpose: str
    realized_pnl: float = 0.0
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class OrderRejected(EngineEvent):
    event_type: ClassVar[str] = "order.rejected"
    level: ClassVar[str] = "WARN"

    client_order_id: str
    symbol: str
    status: str
    reason: str
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class RiskAlert(EngineEvent):
    """A monitored risk metric crossed its limit."""

    event_type: ClassVar[str] = "risk.alert"
    level: ClassVar[str] = "WARN"

    kind: str  # daily_loss, drawdown, portfolio_risk
    message: str
    value: float
    limit: float
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class EmergencyStop(EngineEvent):
    event_type: ClassVar[str] = "session.emergency_stop"
    level: ClassVar[str] = "ERROR"

    session_id: str
    reason: str
    cancelled_orders: int = 0
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class SessionStatusChanged(EngineEvent):
    event_type: ClassVar[str] = "session.status_changed"

    session_id: str
    previous: str
    current: str
    reason: str = ""
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class BrokerReconnected(EngineEvent):
    event_type: ClassVar[str] = "broker.reconnected"

    attempts: int
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class BrokerDisconnected(EngineEvent):
    event_type: ClassVar[str] = "broker.disconnected"
    level: ClassVar[str] = "ERROR"

    attempts: int
    reason: str
    timestamp: datetime = field(default_factory=_now)


class Subscription:
    """One subscriber's queue, optionally filtered by event class."""

    def __init__(self, bus: "EventBus", event_types: tuple[type[EngineEvent], ...], maxsize: int):
        self._bus = bus
        self.event_types = event_types
        self.queue: asyncio.Queue[EngineEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def accepts(self, event: EngineEvent) -> bool:
        return not self.event_types or isinstance(event, self.event_types)

    async def get(self) -> EngineEvent:
        return await self.queue.get()

    def get_nowait(self) -> EngineEvent:
        return self.queue.get_nowait()

    def drain(self) -> list[EngineEvent]:
        """Return every queued event without waiting."""
        events: list[EngineEvent] = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[EngineEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[EngineEvent]:
        while True:
            yield await self.queue.get()


class EventBus:
    """Typed publish/subscribe channel shared by one engine instance."""

    def __init__(self, history_size: int = 200):
        self._subscriptions: list[Subscription] = []
        self._history: deque[EngineEvent] = deque(maxlen=history_size)

    def subscribe(self, *event_types: type[EngineEvent], maxsize: int = 0) -> Subscription:
        """
        Register a subscriber.

        Args:
            *event_types: Event classes to receive; none means every event
            maxsize: Queue bound; when full, new events for this subscriber are dropped

        Returns:
            Subscription whose queue receives matching events
        """
        sub = Subscription(self, tuple(event_types), maxsize)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: EngineEvent) -> int:
        """
        Deliver an event to every matching subscriber.

        Returns:
            Number of subscribers that received the event
        """
        self._history.append(event)
        delivered = 0
        for sub in list(self._subscriptions):
            if not sub.accepts(event):
                continue
            try:
                sub.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                sub.dropped += 1
                logger.warning(f"Subscriber queue full, dropped {event.event_type}")
        return delivered

    def recent(self, limit: int = 20) -> list[EngineEvent]:
        """Most recent events, oldest first."""
        return list(self._history)[-limit:]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
