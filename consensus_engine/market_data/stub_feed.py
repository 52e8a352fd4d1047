"""Stub price feed for testing with deterministic data."""

from datetime import datetime, timedelta, timezone

from consensus_engine.models.candle import Candle

from .feed import PriceFeed


class StubPriceFeed(PriceFeed):
    """Feed returning fixed prices and a deterministic daily history."""

    def __init__(
        self,
        prices: dict[str, float] | None = None,
        default_price: float | None = None,
        daily_move_pct: float = 1.0,
        volume: float = 1000.0,
    ):
        """
        Initialize stub feed.

        Args:
            prices: Per-symbol prices
            default_price: Price for symbols missing from ``prices`` (None: unknown symbols skip)
            daily_move_pct: Alternating close-to-close move of the generated history
            volume: Volume for generated candles
        """
        self.prices: dict[str, float] = dict(prices or {})
        self.default_price = default_price
        self.daily_move_pct = daily_move_pct
        self.volume = volume
        self._history: dict[str, list[Candle]] = {}

    def set_price(self, symbol: str, price: float | None) -> None:
        if price is None:
            self.prices.pop(symbol, None)
        else:
            self.prices[symbol] = price

    def set_history(self, symbol: str, candles: list[Candle]) -> None:
        self._history[symbol] = list(candles)

    async def get_current_price(self, symbol: str, market: str) -> float | None:
        return self.prices.get(symbol, self.default_price)

    async def get_historical_data(self, symbol: str, market: str, days: int) -> list[Candle]:
        if symbol in self._history:
            return self._history[symbol][-days:]

        price = await self.get_current_price(symbol, market)
        if price is None:
            return []

        candles: list[Candle] = []
        base_time = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        move = self.daily_move_pct / 100.0
        for i in range(days):
            # Zig-zag around the current price, ending on it
            close = price * (1 + move) if (days - 1 - i) % 2 else price
            open_price = price if (days - 1 - i) % 2 else price * (1 + move)
            candles.append(
                Candle(
                    timestamp=base_time - timedelta(days=days - 1 - i),
                    open=open_price,
                    high=max(open_price, close) * 1.001,
                    low=min(open_price, close) * 0.999,
                    close=close,
                    volume=self.volume,
                )
            )
        return candles
