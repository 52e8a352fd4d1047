"""Price feeds and return statistics."""

from .feed import PriceFeed
from .statistics import annualized_volatility_pct, average_volume, log_returns
from .stub_feed import StubPriceFeed

__all__ = [
    "PriceFeed",
    "StubPriceFeed",
    "annualized_volatility_pct",
    "average_volume",
    "log_returns",
]
