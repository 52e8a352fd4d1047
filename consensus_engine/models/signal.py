"""Signal models for consensus decisions."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class SignalType(str, Enum):
    """Provider opinion on a symbol."""

    BUY = "BUY"
    HOLD = "HOLD"
    SELL = "SELL"


@dataclass(frozen=True)
class RawSignal:
    """One provider's opinion for one symbol."""

    source: str
    symbol: str
    signal: SignalType
    confidence: float  # 0 to 100
    reason: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        """Validate signal data."""
        if not 0.0 <= self.confidence <= 100.0:
            raise ValueError("Confidence must be between 0 and 100")


@dataclass(frozen=True)
class AggregatedSignal:
    """Combined verdict across every source that responded for a symbol.

    Attributes:
        symbol: Symbol the verdict applies to
        total_sources: Number of sources that responded in time
        buy_signals: BUY votes
        hold_signals: HOLD votes
        sell_signals: SELL votes
        buy_percentage: buy_signals / total_sources * 100
        should_buy: BUY votes reached the required vote count
        should_sell: SELL votes reached the required vote count
        signals: Contributing signals, in source registration order
    """

    symbol: str
    total_sources: int
    buy_signals: int
    hold_signals: int
    sell_signals: int
    buy_percentage: float
    should_buy: bool
    should_sell: bool
    signals: tuple[RawSignal, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.buy_signals + self.hold_signals + self.sell_signals != self.total_sources:
            raise ValueError("Vote counts must sum to total_sources")

    @property
    def sell_percentage(self) -> float:
        if self.total_sources == 0:
            return 0.0
        return self.sell_signals / self.total_sources * 100

    @property
    def average_confidence(self) -> float:
        if not self.signals:
            return 0.0
        return sum(s.confidence for s in self.signals) / len(self.signals)

    @property
    def verdict(self) -> SignalType:
        if self.should_buy:
            return SignalType.BUY
        if self.should_sell:
            return SignalType.SELL
        return SignalType.HOLD
