"""Abstract price feed interface."""

from abc import ABC, abstractmethod

from consensus_engine.models.candle import Candle


class PriceFeed(ABC):
    """Source of current prices and daily history.

    A ``None`` price or an empty history means "skip this symbol for this
    cycle"; it is not an error.
    """

    @abstractmethod
    async def get_current_price(self, symbol: str, market: str) -> float | None:
        """
        Fetch the latest traded price.

        Args:
            symbol: Symbol (e.g., "BTC/USDT", "7203")
            market: Market identifier

        Returns:
            Last price, or None when unavailable
        """
        ...

    @abstractmethod
    async def get_historical_data(self, symbol: str, market: str, days: int) -> list[Candle]:
        """
        Fetch daily OHLCV bars.

        Args:
            symbol: Symbol
            market: Market identifier
            days: Number of daily bars

        Returns:
            Candles, oldest first (may be empty)
        """
        ...

    async def close(self) -> None:
        """Release network resources."""
        return None
