"""Error taxonomy for the consensus engine.

Per-source and per-symbol errors are isolated by the caller that catches
them; connectivity exhaustion and emergency stop are terminal for a session.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from consensus_engine.risk.risk_manager import RiskDecision


class EngineError(Exception):
    """Base class for all engine errors."""


class SourceFetchError(EngineError):
    """One signal source failed to produce a signal (network or parse)."""

    def __init__(self, source: str, symbol: str, reason: str):
        self.source = source
        self.symbol = symbol
        self.reason = reason
        super().__init__(f"{source} failed for {symbol}: {reason}")


class SourceUnavailableError(EngineError):
    """Signal source is disabled by its circuit breaker."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source} unavailable: {reason}")


class InsufficientSourcesError(EngineError):
    """Fewer sources responded than the aggregation requires."""

    def __init__(self, symbol: str, responded: int, required: int):
        self.symbol = symbol
        self.responded = responded
        self.required = required
        super().__init__(
            f"insufficient sources for {symbol}: {responded} responded, {required} required"
        )


class RiskRejection(EngineError):
    """A named risk constraint blocked an order."""

    def __init__(self, decision: "RiskDecision"):
        self.decision = decision
        super().__init__(f"order rejected by {decision.rule.value}: {decision.reason}")

    @property
    def rule(self) -> str:
        return self.decision.rule.value


class ConnectivityError(EngineError):
    """Broker could not be reached."""


class BrokerDisconnectedError(ConnectivityError):
    """Reconnect attempts exhausted; the broker is considered gone."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"broker disconnected after {attempts} reconnect attempts")


class InvalidTransitionError(ValueError):
    """Illegal trading session status transition."""
