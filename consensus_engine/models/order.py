"""Order, position and account models exchanged with broker adapters."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class OrderSide(str, Enum):
    """Order direction."""

    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(str, Enum):
    """Order lifecycle as tracked by the engine."""

    PENDING = "PENDING"  # Submitted, no confirmation yet
    FILLED = "FILLED"
    REJECTED = "REJECTED"  # Broker refused the order
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"  # Submission never confirmed

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


@dataclass(frozen=True)
class OrderRequest:
    """Order as handed to a broker.

    ``client_order_id`` is the idempotency key: resubmitting the same id after
    an ambiguous failure must not create a second order.
    """

    client_order_id: str
    symbol: str
    side: OrderSide
    quantity: float
    price: float
    stop_loss: float | None = None
    take_profit: float | None = None
    reduce_only: bool = False
    market: str = "default"

    def __post_init__(self) -> None:
        """Validate order data."""
        if self.quantity <= 0:
            raise ValueError("Quantity must be positive")
        if self.price <= 0:
            raise ValueError("Price must be positive")

    @property
    def notional(self) -> float:
        return self.quantity * self.price

    @property
    def risk_amount(self) -> float:
        """Worst-case loss if the stop is hit (0 without a stop)."""
        if self.stop_loss is None:
            return 0.0
        return self.quantity * abs(self.price - self.stop_loss)


@dataclass(frozen=True)
class OrderResult:
    """Broker response to a placement or cancellation."""

    client_order_id: str
    status: OrderStatus
    broker_order_id: str | None = None
    filled_quantity: float = 0.0
    filled_price: float | None = None
    reason: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class BrokerPosition:
    """Position as reported by the broker."""

    symbol: str
    quantity: float
    average_price: float
    current_price: float

    @property
    def market_value(self) -> float:
        return self.quantity * self.current_price

    @property
    def unrealized_pnl(self) -> float:
        return (self.current_price - self.average_price) * self.quantity


@dataclass(frozen=True)
class Account:
    """Broker account summary."""

    cash: float
    equity: float
    buying_power: float
    currency: str = "USD"
