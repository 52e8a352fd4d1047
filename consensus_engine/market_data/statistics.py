"""Return statistics over daily bars."""

import math

import numpy as np

from consensus_engine.models.candle import Candle

TRADING_DAYS_PER_YEAR = 252


def log_returns(candles: list[Candle]) -> np.ndarray:
    """Close-to-close log returns, oldest first."""
    closes = np.array([c.close for c in candles], dtype=float)
    if closes.size < 2 or np.any(closes <= 0):
        return np.array([], dtype=float)
    return np.diff(np.log(closes))


def annualized_volatility_pct(
    candles: list[Candle], periods_per_year: int = TRADING_DAYS_PER_YEAR
) -> float:
    """
    Annualized volatility of daily log returns, in percent.

    Returns 0.0 when fewer than two returns are available.
    """
    returns = log_returns(candles)
    if returns.size < 2:
        return 0.0
    return float(np.std(returns, ddof=1) * math.sqrt(periods_per_year) * 100.0)


def average_volume(candles: list[Candle]) -> float:
    if not candles:
        return 0.0
    return float(np.mean([c.volume for c in candles]))
