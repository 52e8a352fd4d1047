"""OHLCV bar model returned by price feeds."""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Candle:
    """OHLCV candle data."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    def __post_init__(self) -> None:
        """Validate candle data integrity."""
        if self.high < max(self.open, self.close, self.low):
            raise ValueError("High must be >= open, close, and low")
        if self.low > min(self.open, self.close, self.high):
            raise ValueError("Low must be <= open, close, and high")
        if self.volume < 0:
            raise ValueError("Volume must be non-negative")
