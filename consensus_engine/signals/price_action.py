"""Quote-scoring signal source.

Scores the latest daily bar against the previous one:

| Factor | BUY points | SELL points |
|---|---|---|
| Daily change | +2 above 2%, +1 above 0% | +2 below -2%, +1 below 0% |
| Volume vs average | +1 above 1.5x | +1 below 0.5x |
| Position in day range | +1 in the bottom 20% | +1 in the top 20% |
| Opening gap | +1 above 1% | +1 below -1% |

A side wins only with a lead of more than one point; confidence is
``min(60 + 10 * points, 95)``. Otherwise the verdict is HOLD at 50.
"""

from typing import Any

from consensus_engine.errors import SourceFetchError
from consensus_engine.market_data.feed import PriceFeed
from consensus_engine.market_data.statistics import average_volume
from consensus_engine.models.candle import Candle
from consensus_engine.models.signal import RawSignal, SignalType

from .source import SignalSource


def score_bars(previous: Candle, latest: Candle, avg_volume: float) -> tuple[int, int, list[str]]:
    """Return (buy_score, sell_score, reasons) for the latest bar."""
    buy_score = 0
    sell_score = 0
    reasons: list[str] = []

    change_pct = (latest.close - previous.close) / previous.close * 100
    if change_pct > 2:
        buy_score += 2
        reasons.append(f"strong rise {change_pct:.2f}%")
    elif change_pct > 0:
        buy_score += 1
        reasons.append(f"rise {change_pct:.2f}%")
    elif change_pct < -2:
        sell_score += 2
        reasons.append(f"strong fall {change_pct:.2f}%")
    elif change_pct < 0:
        sell_score += 1
        reasons.append(f"fall {change_pct:.2f}%")

    if avg_volume > 0:
        if latest.volume > avg_volume * 1.5:
            buy_score += 1
            reasons.append("heavy volume")
        elif latest.volume < avg_volume * 0.5:
            sell_score += 1
            reasons.append("thin volume")

    day_range = latest.high - latest.low
    if day_range > 0:
        position = (latest.close - latest.low) / day_range
        if position > 0.8:
            sell_score += 1
            reasons.append("near day high")
        elif position < 0.2:
            buy_score += 1
            reasons.append("near day low")

    gap_pct = (latest.open - previous.close) / previous.close * 100
    if gap_pct > 1:
        buy_score += 1
        reasons.append(f"gap up {gap_pct:.2f}%")
    elif gap_pct < -1:
        sell_score += 1
        reasons.append(f"gap down {gap_pct:.2f}%")

    return buy_score, sell_score, reasons


class PriceActionSignalSource(SignalSource):
    """Signal source scoring daily price action from a price feed."""

    def __init__(
        self,
        name: str,
        price_feed: PriceFeed,
        market: str = "default",
        lookback_days: int = 20,
        **kwargs: Any,
    ):
        super().__init__(name, **kwargs)
        self.price_feed = price_feed
        self.market = market
        self.lookback_days = lookback_days

    async def _fetch_signal(self, symbol: str) -> RawSignal:
        candles = await self.price_feed.get_historical_data(symbol, self.market, self.lookback_days)
        if len(candles) < 2:
            raise SourceFetchError(self.name, symbol, "insufficient price history")

        previous, latest = candles[-2], candles[-1]
        if previous.close <= 0:
            raise SourceFetchError(self.name, symbol, "invalid previous close")

        buy_score, sell_score, reasons = score_bars(
            previous, latest, average_volume(candles[:-1])
        )

        if buy_score > sell_score + 1:
            signal_type = SignalType.BUY
            confidence = min(60 + buy_score * 10, 95)
        elif sell_score > buy_score + 1:
            signal_type = SignalType.SELL
            confidence = min(60 + sell_score * 10, 95)
        else:
            signal_type = SignalType.HOLD
            confidence = 50

        return RawSignal(
            source=self.name,
            symbol=symbol,
            signal=signal_type,
            confidence=float(confidence),
            reason=", ".join(reasons) or "no significant movement",
        )
