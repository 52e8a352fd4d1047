"""Signal sources and majority-vote aggregation."""

from .aggregator import SignalAggregator
from .factory import build_sources
from .http_source import HttpSignalSource
from .price_action import PriceActionSignalSource
from .source import SignalSource
from .stub_source import StubSignalSource

__all__ = [
    "HttpSignalSource",
    "PriceActionSignalSource",
    "SignalAggregator",
    "SignalSource",
    "StubSignalSource",
    "build_sources",
]
