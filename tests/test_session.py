"""Tests for TradingSession status transitions."""

import pytest

from consensus_engine.core.session import VALID_TRANSITIONS, SessionStatus, TradingSession
from consensus_engine.errors import InvalidTransitionError


class TestTransitions:
    """Only the transitions listed in VALID_TRANSITIONS are accepted."""

    def test_start_sets_start_time(self):
        session = TradingSession()

        previous = session.transition_to(SessionStatus.ACTIVE)

        assert previous is SessionStatus.INITIALIZED
        assert session.start_time is not None
        assert session.end_time is None
        assert session.is_running is True

    def test_pause_and_resume_keep_start_time(self):
        session = TradingSession()
        session.transition_to(SessionStatus.ACTIVE)
        started = session.start_time

        session.transition_to(SessionStatus.PAUSED)
        assert session.is_running is True
        session.transition_to(SessionStatus.ACTIVE)

        assert session.start_time == started

    def test_stop_records_end_and_reason(self):
        session = TradingSession()
        session.transition_to(SessionStatus.ACTIVE)

        session.transition_to(SessionStatus.STOPPED, reason="emergency stop: drawdown")

        assert session.end_time is not None
        assert session.end_time >= session.start_time
        assert session.stop_reason == "emergency stop: drawdown"
        assert session.is_running is False

    def test_stop_before_start(self):
        session = TradingSession()
        session.transition_to(SessionStatus.STOPPED)
        assert session.start_time is None
        assert session.end_time is not None

    @pytest.mark.parametrize(
        "path",
        [
            [SessionStatus.PAUSED],
            [SessionStatus.ERROR],
            [SessionStatus.ACTIVE, SessionStatus.INITIALIZED],
            [SessionStatus.ACTIVE, SessionStatus.STOPPED, SessionStatus.ACTIVE],
            [SessionStatus.ACTIVE, SessionStatus.ERROR, SessionStatus.STOPPED],
        ],
    )
    def test_invalid_transitions(self, path: list[SessionStatus]):
        session = TradingSession()
        *valid, invalid = path
        for status in valid:
            session.transition_to(status)

        with pytest.raises(InvalidTransitionError, match="Invalid session transition"):
            session.transition_to(invalid)

    def test_terminal_states_have_no_exits(self):
        for status in SessionStatus:
            assert (VALID_TRANSITIONS[status] == []) is status.is_terminal


def test_to_record():
    session = TradingSession(id="s-1")
    session.transition_to(SessionStatus.ACTIVE)
    session.trades_count = 3
    session.total_pnl = 125.5

    record = session.to_record()

    assert record["id"] == "s-1"
    assert record["status"] == "ACTIVE"
    assert record["trades_count"] == 3
    assert record["total_pnl"] == 125.5
    assert record["reason"] is None
