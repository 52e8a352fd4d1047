"""Session state, portfolio ledger and the engine event channel.

Note: TradingLoop and ReconnectSupervisor are not exported here to avoid
import chain issues. Import directly:
`from consensus_engine.core.trading_loop import TradingLoop`
"""

from .events import EngineEvent, EventBus, Subscription
from .portfolio_ledger import LedgerPosition, PortfolioLedger, PortfolioSnapshot
from .session import SessionStatus, TradingSession
from .trading_hours import TradingHours

__all__ = [
    "EngineEvent",
    "EventBus",
    "LedgerPosition",
    "PortfolioLedger",
    "PortfolioSnapshot",
    "SessionStatus",
    "Subscription",
    "TradingHours",
    "TradingSession",
]
