"""Trading session lifecycle with validated status transitions."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from consensus_engine.errors import InvalidTransitionError


class SessionStatus(str, Enum):
    """Lifecycle of one trading session."""

    INITIALIZED = "INITIALIZED"  # Created, not yet trading
    ACTIVE = "ACTIVE"  # Cycles run entries and exits
    PAUSED = "PAUSED"  # Cycles only protect open positions
    STOPPED = "STOPPED"  # Normal or emergency stop; terminal
    ERROR = "ERROR"  # Unrecoverable fault (broker gone); terminal

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.STOPPED, SessionStatus.ERROR)


# Valid status transitions
VALID_TRANSITIONS: dict[SessionStatus, list[SessionStatus]] = {
    SessionStatus.INITIALIZED: [SessionStatus.ACTIVE, SessionStatus.STOPPED],
    SessionStatus.ACTIVE: [SessionStatus.PAUSED, SessionStatus.STOPPED, SessionStatus.ERROR],
    SessionStatus.PAUSED: [SessionStatus.ACTIVE, SessionStatus.STOPPED, SessionStatus.ERROR],
    SessionStatus.STOPPED: [],
    SessionStatus.ERROR: [],
}


@dataclass
class TradingSession:
    """One run of the engine from start to stop."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: SessionStatus = SessionStatus.INITIALIZED
    start_time: datetime | None = None
    end_time: datetime | None = None
    trades_count: int = 0
    total_pnl: float = 0.0
    stop_reason: str = ""

    def transition_to(self, new_status: SessionStatus, reason: str = "") -> SessionStatus:
        """
        Move to a new status with validation.

        Args:
            new_status: Target status
            reason: Recorded as stop_reason on terminal transitions

        Returns:
            The previous status

        Raises:
            InvalidTransitionError: If transition is invalid
        """
        if not self.can_transition_to(new_status):
            raise InvalidTransitionError(
                f"Invalid session transition from {self.status.value} to {new_status.value}"
            )

        previous = self.status
        self.status = new_status
        now = datetime.now(timezone.utc)
        if new_status is SessionStatus.ACTIVE and self.start_time is None:
            self.start_time = now
        if new_status.is_terminal:
            self.end_time = now
            self.stop_reason = reason
        return previous

    def can_transition_to(self, new_status: SessionStatus) -> bool:
        return new_status in VALID_TRANSITIONS[self.status]

    @property
    def is_running(self) -> bool:
        return self.status in (SessionStatus.ACTIVE, SessionStatus.PAUSED)

    def to_record(self) -> dict[str, Any]:
        """Row for the session status log."""
        return {
            "id": self.id,
            "status": self.status.value,
            "started_at": self.start_time,
            "ended_at": self.end_time,
            "trades_count": self.trades_count,
            "total_pnl": self.total_pnl,
            "reason": self.stop_reason or None,
        }
