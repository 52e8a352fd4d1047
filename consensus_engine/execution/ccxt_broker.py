"""Spot exchange broker using CCXT's asyncio client."""

import logging
from typing import Any

import ccxt
import ccxt.async_support as ccxt_async

from consensus_engine.errors import ConnectivityError
from consensus_engine.models.order import (
    Account,
    BrokerPosition,
    OrderRequest,
    OrderResult,
    OrderStatus,
)

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "closed": OrderStatus.FILLED,
    "open": OrderStatus.PENDING,
    "canceled": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "expired": OrderStatus.CANCELLED,
    "rejected": OrderStatus.REJECTED,
}


class CcxtBroker:
    """Market-order spot broker over any CCXT exchange.

    Positions are derived from non-zero base-asset balances of the traded
    symbols, valued at the last ticker price.
    """

    def __init__(
        self,
        exchange: Any,
        symbols: list[str],
        quote_currency: str = "USDT",
    ):
        """
        Initialize broker.

        Args:
            exchange: Configured ``ccxt.async_support`` exchange instance
            symbols: Symbols traded by the session
            quote_currency: Currency the account is valued in
        """
        self.exchange = exchange
        self.symbols = symbols
        self.quote_currency = quote_currency
        # client_order_id -> (symbol, exchange order id)
        self._known_orders: dict[str, tuple[str, str | None]] = {}

    @classmethod
    def from_credentials(
        cls,
        exchange_id: str,
        api_key: str,
        secret: str,
        symbols: list[str],
        sandbox: bool = False,
    ) -> "CcxtBroker":
        exchange = getattr(ccxt_async, exchange_id)({
            "apiKey": api_key,
            "secret": secret,
            "enableRateLimit": True,
            "options": {"defaultType": "spot"},
        })
        if sandbox:
            exchange.set_sandbox_mode(True)
        quote = symbols[0].split("/")[1] if "/" in symbols[0] else "USDT"
        return cls(exchange, symbols, quote_currency=quote)

    async def initialize(self) -> bool:
        try:
            await self.exchange.load_markets(reload=True)
            return True
        except ccxt.BaseError as e:
            logger.warning(f"Exchange initialize failed: {e}")
            return False

    async def test_connection(self) -> bool:
        try:
            await self.exchange.fetch_time()
            return True
        except ccxt.BaseError:
            return False

    async def place_order(self, order: OrderRequest) -> OrderResult:
        params = {"newClientOrderId": order.client_order_id, "clientOrderId": order.client_order_id}
        self._known_orders.setdefault(order.client_order_id, (order.symbol, None))
        try:
            response = await self.exchange.create_order(
                symbol=order.symbol,
                type="market",
                side=order.side.value.lower(),
                amount=order.quantity,
                price=None,
                params=params,
            )
        except ccxt.DuplicateOrderId:
            existing = await self.get_order(order.client_order_id)
            if existing is None:
                raise ConnectivityError(f"duplicate order id {order.client_order_id} not found")
            return existing
        except (ccxt.InsufficientFunds, ccxt.InvalidOrder) as e:
            return OrderResult(order.client_order_id, OrderStatus.REJECTED, reason=str(e))
        except ccxt.NetworkError as e:
            raise ConnectivityError(str(e)) from e

        return self._convert(order.client_order_id, response, fallback_price=order.price)

    async def cancel_order(self, client_order_id: str) -> OrderResult:
        symbol, broker_id = self._known_orders.get(client_order_id, (None, None))
        if symbol is None or broker_id is None:
            return OrderResult(client_order_id, OrderStatus.CANCELLED, reason="never acknowledged")
        try:
            response = await self.exchange.cancel_order(broker_id, symbol)
        except ccxt.OrderNotFound:
            existing = await self.get_order(client_order_id)
            return existing or OrderResult(client_order_id, OrderStatus.CANCELLED, reason="not found")
        except ccxt.NetworkError as e:
            raise ConnectivityError(str(e)) from e
        return self._convert(client_order_id, response)

    async def get_order(self, client_order_id: str) -> OrderResult | None:
        symbol, broker_id = self._known_orders.get(client_order_id, (None, None))
        if symbol is None:
            return None
        try:
            response = await self.exchange.fetch_order(
                broker_id or "",
                symbol,
                params={"origClientOrderId": client_order_id, "clientOrderId": client_order_id},
            )
        except ccxt.OrderNotFound:
            return None
        except ccxt.NetworkError as e:
            raise ConnectivityError(str(e)) from e
        return self._convert(client_order_id, response)

    async def get_positions(self) -> list[BrokerPosition]:
        try:
            balance = await self.exchange.fetch_balance()
            positions: list[BrokerPosition] = []
            for symbol in self.symbols:
                base = symbol.split("/")[0]
                total = float((balance.get(base) or {}).get("total") or 0.0)
                if total <= 0:
                    continue
                ticker = await self.exchange.fetch_ticker(symbol)
                last = float(ticker.get("last") or 0.0)
                positions.append(BrokerPosition(symbol, total, last, last))
            return positions
        except ccxt.NetworkError as e:
            raise ConnectivityError(str(e)) from e

    async def get_account(self) -> Account:
        try:
            balance = await self.exchange.fetch_balance()
        except ccxt.NetworkError as e:
            raise ConnectivityError(str(e)) from e
        quote = balance.get(self.quote_currency) or {}
        free = float(quote.get("free") or 0.0)
        total = float(quote.get("total") or 0.0)
        positions = await self.get_positions()
        equity = total + sum(p.market_value for p in positions)
        return Account(cash=free, equity=equity, buying_power=free, currency=self.quote_currency)

    async def close(self) -> None:
        await self.exchange.close()

    def _convert(
        self, client_order_id: str, response: dict[str, Any], fallback_price: float | None = None
    ) -> OrderResult:
        broker_id = response.get("id")
        symbol = response.get("symbol") or self._known_orders.get(client_order_id, (None, None))[0]
        if symbol is not None:
            self._known_orders[client_order_id] = (symbol, broker_id)

        status = _STATUS_MAP.get(str(response.get("status") or "").lower(), OrderStatus.PENDING)
        filled = float(response.get("filled") or 0.0)
        price = response.get("average") or response.get("price") or fallback_price
        return OrderResult(
            client_order_id=client_order_id,
            status=status,
            broker_order_id=broker_id,
            filled_quantity=filled,
            filled_price=float(price) if price is not None else None,
            reason=str(response.get("info", {}).get("msg", "")) if status is OrderStatus.REJECTED else "",
        )

