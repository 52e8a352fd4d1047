"""Exchange price feed using CCXT's asyncio client.

Uses CCXT's built-in rate limiting with exponential backoff for resilience.
Failures after the last retry are logged and reported as "no data" so the
cycle skips the symbol instead of aborting.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from consensus_engine.models.candle import Candle

from .feed import PriceFeed

logger = logging.getLogger(__name__)


class CcxtPriceFeed(PriceFeed):
    """Price feed backed by a ``ccxt.async_support`` exchange.

    Attributes:
        exchange: CCXT async exchange instance (should have ``enableRateLimit=True``).
        max_retries: Maximum attempts per request.
        base_backoff_seconds: Initial backoff interval for retries.
    """

    def __init__(
        self,
        exchange: Any,
        *,
        max_retries: int = 3,
        base_backoff_seconds: float = 1.0,
    ) -> None:
        self.exchange = exchange
        self.max_retries = max_retries
        self.base_backoff_seconds = base_backoff_seconds

    @classmethod
    def from_exchange_id(cls, exchange_id: str, sandbox: bool = False, **kwargs: Any) -> "CcxtPriceFeed":
        """Build a feed on a fresh public (keyless) exchange client."""
        import ccxt.async_support as ccxt_async

        exchange = getattr(ccxt_async, exchange_id)({"enableRateLimit": True})
        if sandbox:
            exchange.set_sandbox_mode(True)
        return cls(exchange, **kwargs)

    async def get_current_price(self, symbol: str, market: str) -> float | None:
        try:
            ticker = await self._retry(
                lambda: self.exchange.fetch_ticker(symbol),
                context=f"fetch_ticker({symbol})",
            )
        except RuntimeError as e:
            logger.error(str(e))
            return None

        last = ticker.get("last") if ticker else None
        if last is None:
            return None
        return float(last)

    async def get_historical_data(self, symbol: str, market: str, days: int) -> list[Candle]:
        try:
            raw = await self._retry(
                lambda: self.exchange.fetch_ohlcv(symbol, "1d", limit=days),
                context=f"fetch_ohlcv({symbol}, 1d)",
            )
        except RuntimeError as e:
            logger.error(str(e))
            return []
        return self._convert_candles(raw or [])

    async def close(self) -> None:
        await self.exchange.close()

    async def _retry(self, fn: Callable[[], Awaitable[Any]], *, context: str) -> Any:
        """Await ``fn()`` with exponential backoff.

        Raises:
            RuntimeError: After exhausting all retries.
        """
        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return await fn()
            except Exception as exc:
                last_error = exc
                wait = self.base_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Exchange API error on %s (attempt %d/%d): %s, retrying in %.1fs",
                    context,
                    attempt,
                    self.max_retries,
                    exc,
                    wait,
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(wait)

        raise RuntimeError(
            f"Exchange API failed after {self.max_retries} retries ({context}): {last_error}"
        )

    @staticmethod
    def _convert_candles(raw: list[list[Any]]) -> list[Candle]:
        """Convert raw CCXT OHLCV arrays (``[ts_ms, o, h, l, c, v]``) to candles."""
        candles: list[Candle] = []
        for row in raw:
            ts_ms, o, h, l, c, v = row[0], row[1], row[2], row[3], row[4], row[5]
            candles.append(
                Candle(
                    timestamp=datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc),
                    open=float(o),
                    high=float(h),
                    low=float(l),
                    close=float(c),
                    volume=float(v or 0.0),
                )
            )
        return candles
