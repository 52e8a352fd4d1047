"""Data models for signals, market data, orders and accounts."""

from .candle import Candle
from .order import Account, BrokerPosition, OrderRequest, OrderResult, OrderSide, OrderStatus
from .signal import AggregatedSignal, RawSignal, SignalType

__all__ = [
    "Account",
    "AggregatedSignal",
    "BrokerPosition",
    "Candle",
    "OrderRequest",
    "OrderResult",
    "OrderSide",
    "OrderStatus",
    "RawSignal",
    "SignalType",
]
