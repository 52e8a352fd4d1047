"""Position sizing, broker adapters and order submission."""

from consensus_engine.execution.position_sizer import PositionSizer, SizingResult
from .broker import BrokerAdapter
from .order_manager import OrderManager
from .paper_broker import PaperBroker

__all__ = [
    "BrokerAdapter",
    "OrderManager",
    "PaperBroker",
    "PositionSizer",
    "SizingResult",
]
