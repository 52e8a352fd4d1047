"""Portfolio ledger: positions, pending orders, daily P&L and drawdown.

Holdings change only through ``apply_fill``, which is called after a broker
confirms a fill. Risk checks read an immutable ``PortfolioSnapshot`` and
never mutate the ledger.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from consensus_engine.models.order import OrderRequest, OrderSide

logger = logging.getLogger(__name__)


@dataclass
class LedgerPosition:
    """Open long position."""

    symbol: str
    quantity: float
    average_price: float
    current_price: float
    stop_loss: float | None = None
    take_profit: float | None = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def market_value(self) -> float:
        return self.quantity * self.current_price

    @property
    def unrealized_pnl(self) -> float:
        return (self.current_price - self.average_price) * self.quantity

    @property
    def risk_amount(self) -> float:
        """Loss if the stop is hit; the full market value when no stop is set."""
        if self.stop_loss is None:
            return self.market_value
        return self.quantity * abs(self.average_price - self.stop_loss)

    def breach(self) -> str | None:
        """Return "stop_loss" or "take_profit" when the current price crosses a level."""
        if self.stop_loss is not None and self.current_price <= self.stop_loss:
            return "stop_loss"
        if self.take_profit is not None and self.current_price >= self.take_profit:
            return "take_profit"
        return None


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Consistent point-in-time view used by risk checks.

    Attributes:
        cash: Free cash
        equity: cash + market value of positions
        unrealized_pnl: Open P&L at current marks
        daily_realized_pnl: Realized P&L since the start of the trading day
        open_risk: Stop risk of open positions plus pending entry orders
        peak_equity: Highest equity observed
        drawdown_pct: (peak - equity) / peak * 100
        open_positions: Number of open positions
        pending_orders: Number of unconfirmed orders
    """

    cash: float
    equity: float
    unrealized_pnl: float
    daily_realized_pnl: float
    open_risk: float
    peak_equity: float
    drawdown_pct: float
    open_positions: int
    pending_orders: int
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def daily_pnl(self) -> float:
        return self.daily_realized_pnl + self.unrealized_pnl

    @property
    def portfolio_risk_pct(self) -> float:
        if self.equity <= 0:
            return 0.0
        return self.open_risk / self.equity * 100


@dataclass(frozen=True)
class FillResult:
    """Ledger effect of one confirmed fill."""

    symbol: str
    side: OrderSide
    quantity: float
    price: float
    realized_pnl: float
    position_quantity: float


class PortfolioLedger:
    """Engine-side record of holdings for one session."""

    def __init__(
        self,
        starting_cash: float,
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize ledger.

        Args:
            starting_cash: Cash at session start
            timezone_name: Timezone whose calendar day bounds daily P&L
            clock: Returns the current aware datetime
        """
        self.cash = starting_cash
        self.positions: dict[str, LedgerPosition] = {}
        self.pending: dict[str, OrderRequest] = {}
        self._tz = ZoneInfo(timezone_name)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._day: date = self._today()
        self._daily_realized = 0.0
        self.total_realized = 0.0
        self.peak_equity = starting_cash

    def _today(self) -> date:
        return self._clock().astimezone(self._tz).date()

    def roll_day(self) -> bool:
        """Reset daily realized P&L when the calendar day changed."""
        today = self._today()
        if today == self._day:
            return False
        logger.info(f"📅 New trading day {today}: daily realized P&L reset (was {self._daily_realized:.2f})")
        self._day = today
        self._daily_realized = 0.0
        return True

    @property
    def daily_realized_pnl(self) -> float:
        """Realized P&L since the last day roll; reading it never rolls the day."""
        return self._daily_realized

    @property
    def equity(self) -> float:
        return self.cash + sum(p.market_value for p in self.positions.values())

    @property
    def unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self.positions.values())

    @property
    def pending_risk(self) -> float:
        return sum(
            o.risk_amount if o.stop_loss is not None else o.notional
            for o in self.pending.values()
            if o.side is OrderSide.BUY and not o.reduce_only
        )

    def open_risk(self) -> float:
        return sum(p.risk_amount for p in self.positions.values()) + self.pending_risk

    def has_position(self, symbol: str) -> bool:
        return symbol in self.positions

    def get_position(self, symbol: str) -> LedgerPosition | None:
        return self.positions.get(symbol)

    def register_pending(self, order: OrderRequest) -> None:
        self.pending[order.client_order_id] = order

    def resolve_pending(self, client_order_id: str) -> OrderRequest | None:
        """Drop a pending order that ended without a fill."""
        return self.pending.pop(client_order_id, None)

    def has_pending(self, symbol: str) -> bool:
        return any(o.symbol == symbol for o in self.pending.values())

    def apply_fill(self, order: OrderRequest, quantity: float, price: float) -> FillResult:
        """
        Apply a confirmed fill to holdings.

        Args:
            order: Order that filled
            quantity: Filled quantity
            price: Fill price

        Returns:
            FillResult with realized P&L (0 for entries)

        Raises:
            ValueError: Sell fill without a matching position
        """
        self.pending.pop(order.client_order_id, None)
        self.roll_day()
        realized = 0.0

        if order.side is OrderSide.BUY:
            position = self.positions.get(order.symbol)
            if position is None:
                position = LedgerPosition(
                    symbol=order.symbol,
                    quantity=quantity,
                    average_price=price,
                    current_price=price,
                    stop_loss=order.stop_loss,
                    take_profit=order.take_profit,
                )
                self.positions[order.symbol] = position
            else:
                total_qty = position.quantity + quantity
                position.average_price = (
                    position.average_price * position.quantity + price * quantity
                ) / total_qty
                position.quantity = total_qty
                position.current_price = price
                if order.stop_loss is not None:
                    position.stop_loss = order.stop_loss
                if order.take_profit is not None:
                    position.take_profit = order.take_profit
            self.cash -= quantity * price
            remaining = position.quantity
        else:
            position = self.positions.get(order.symbol)
            if position is None:
                raise ValueError(f"Sell fill for {order.symbol} without an open position")
            quantity = min(quantity, position.quantity)
            realized = (price - position.average_price) * quantity
            position.quantity -= quantity
            position.current_price = price
            self.cash += quantity * price
            self._daily_realized += realized
            self.total_realized += realized
            remaining = position.quantity
            if remaining <= 1e-12:
                del self.positions[order.symbol]
                remaining = 0.0

        self._update_peak()
        return FillResult(
            symbol=order.symbol,
            side=order.side,
            quantity=quantity,
            price=price,
            realized_pnl=realized,
            position_quantity=remaining,
        )

    def mark_to_market(self, prices: dict[str, float]) -> None:
        """Update current prices; holdings are untouched."""
        self.roll_day()
        for symbol, price in prices.items():
            position = self.positions.get(symbol)
            if position is not None and price > 0:
                position.current_price = price
        self._update_peak()

    def breaching_positions(self) -> list[tuple[LedgerPosition, str]]:
        """Positions whose current mark crosses their stop-loss or take-profit."""
        breaches: list[tuple[LedgerPosition, str]] = []
        for position in self.positions.values():
            reason = position.breach()
            if reason is not None:
                breaches.append((position, reason))
        return breaches

    def _update_peak(self) -> None:
        equity = self.equity
        if equity > self.peak_equity:
            self.peak_equity = equity

    def snapshot(self) -> PortfolioSnapshot:
        equity = self.equity
        peak = max(self.peak_equity, equity)
        drawdown = (peak - equity) / peak * 100 if peak > 0 else 0.0
        return PortfolioSnapshot(
            cash=self.cash,
            equity=equity,
            unrealized_pnl=self.unrealized_pnl,
            daily_realized_pnl=self.daily_realized_pnl,
            open_risk=self.open_risk(),
            peak_equity=peak,
            drawdown_pct=drawdown,
            open_positions=len(self.positions),
            pending_orders=len(self.pending),
        )
