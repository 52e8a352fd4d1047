"""Paper broker with simulated, instant fills."""

import logging
import uuid

from consensus_engine.errors import ConnectivityError
from consensus_engine.models.order import (
    Account,
    BrokerPosition,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
)

logger = logging.getLogger(__name__)


class PaperBroker:
    """Simulated broker filling every accepted order at its limit price.

    Connectivity faults can be scripted for testing: ``disconnect()`` makes
    every call fail, ``fail_initialize(n)`` makes the next n reconnects fail,
    and ``drop_next_acks(n)`` fills the next n orders but raises before the
    confirmation reaches the caller.
    """

    def __init__(self, starting_cash: float = 1_000_000.0):
        self.cash = starting_cash
        self._positions: dict[str, BrokerPosition] = {}
        self._orders: dict[str, OrderResult] = {}
        self._marks: dict[str, float] = {}
        self._connected = True
        self._initialize_failures = 0
        self._dropped_acks = 0
        self._reject_reason: str | None = None
        self.place_calls = 0

    # -- Fault injection -------------------------------------------------------

    def disconnect(self) -> None:
        self._connected = False

    def fail_initialize(self, times: int) -> None:
        self._initialize_failures = times

    def drop_next_acks(self, times: int) -> None:
        self._dropped_acks = times

    def reject_next(self, reason: str | None) -> None:
        self._reject_reason = reason

    def set_mark(self, symbol: str, price: float) -> None:
        self._marks[symbol] = price

    # -- BrokerAdapter ---------------------------------------------------------

    async def initialize(self) -> bool:
        if self._initialize_failures > 0:
            self._initialize_failures -= 1
            return False
        self._connected = True
        return True

    async def test_connection(self) -> bool:
        return self._connected

    async def place_order(self, order: OrderRequest) -> OrderResult:
        self._require_connection()
        self.place_calls += 1

        existing = self._orders.get(order.client_order_id)
        if existing is not None:
            logger.info(f"Paper broker: duplicate client order id {order.client_order_id}, returning existing")
            return existing

        if self._reject_reason is not None:
            reason, self._reject_reason = self._reject_reason, None
            result = OrderResult(order.client_order_id, OrderStatus.REJECTED, reason=reason)
        elif order.side is OrderSide.BUY and order.notional > self.cash:
            result = OrderResult(order.client_order_id, OrderStatus.REJECTED, reason="insufficient cash")
        elif order.side is OrderSide.SELL and self._held(order.symbol) < order.quantity - 1e-12:
            result = OrderResult(order.client_order_id, OrderStatus.REJECTED, reason="insufficient position")
        else:
            self._fill(order)
            result = OrderResult(
                client_order_id=order.client_order_id,
                status=OrderStatus.FILLED,
                broker_order_id=f"PAPER-{uuid.uuid4().hex[:12]}",
                filled_quantity=order.quantity,
                filled_price=order.price,
            )

        self._orders[order.client_order_id] = result

        if self._dropped_acks > 0:
            self._dropped_acks -= 1
            raise ConnectivityError(f"acknowledgement lost for {order.client_order_id}")
        return result

    async def cancel_order(self, client_order_id: str) -> OrderResult:
        self._require_connection()
        existing = self._orders.get(client_order_id)
        if existing is None:
            result = OrderResult(client_order_id, OrderStatus.CANCELLED, reason="never submitted")
            self._orders[client_order_id] = result
            return result
        # Paper orders fill instantly; nothing left to cancel
        return existing

    async def get_order(self, client_order_id: str) -> OrderResult | None:
        self._require_connection()
        return self._orders.get(client_order_id)

    async def get_positions(self) -> list[BrokerPosition]:
        self._require_connection()
        return [
            BrokerPosition(
                symbol=p.symbol,
                quantity=p.quantity,
                average_price=p.average_price,
                current_price=self._marks.get(p.symbol, p.current_price),
            )
            for p in self._positions.values()
        ]

    async def get_account(self) -> Account:
        self._require_connection()
        positions = await self.get_positions()
        equity = self.cash + sum(p.market_value for p in positions)
        return Account(cash=self.cash, equity=equity, buying_power=self.cash)

    async def close(self) -> None:
        return None

    # -- Internals -------------------------------------------------------------

    def _require_connection(self) -> None:
        if not self._connected:
            raise ConnectivityError("paper broker disconnected")

    def _held(self, symbol: str) -> float:
        position = self._positions.get(symbol)
        return position.quantity if position else 0.0

    def _fill(self, order: OrderRequest) -> None:
        current = self._positions.get(order.symbol)
        if order.side is OrderSide.BUY:
            self.cash -= order.notional
            if current is None:
                qty, avg = order.quantity, order.price
            else:
                qty = current.quantity + order.quantity
                avg = (current.average_price * current.quantity + order.notional) / qty
            self._positions[order.symbol] = BrokerPosition(order.symbol, qty, avg, order.price)
        else:
            assert current is not None
            self.cash += order.notional
            qty = current.quantity - order.quantity
            if qty <= 1e-12:
                del self._positions[order.symbol]
            else:
                self._positions[order.symbol] = BrokerPosition(
                    order.symbol, qty, current.average_price, order.price
                )
