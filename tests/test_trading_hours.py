"""Tests for the trading window."""

from datetime import datetime, timezone

from consensus_engine.config.models import TradingHoursConfig
from consensus_engine.core.trading_hours import TradingHours

# 2026-03-02 is a Monday
UTC = timezone.utc


def hours(start: str, end: str, tz: str = "UTC", weekdays: list[int] | None = None) -> TradingHours:
    return TradingHours(
        TradingHoursConfig(start=start, end=end, timezone=tz, weekdays=weekdays or [0, 1, 2, 3, 4])
    )


class TestDayWindow:
    def test_inside(self):
        assert hours("09:00", "15:00").is_open(datetime(2026, 3, 2, 12, 0, tzinfo=UTC)) is True

    def test_end_inclusive_to_the_minute(self):
        window = hours("09:00", "15:00")
        assert window.is_open(datetime(2026, 3, 2, 15, 0, 59, tzinfo=UTC)) is True
        assert window.is_open(datetime(2026, 3, 2, 15, 1, tzinfo=UTC)) is False
        assert window.is_open(datetime(2026, 3, 2, 9, 0, tzinfo=UTC)) is True
        assert window.is_open(datetime(2026, 3, 2, 8, 59, 59, tzinfo=UTC)) is False

    def test_weekend_closed(self):
        assert hours("09:00", "15:00").is_open(datetime(2026, 3, 7, 12, 0, tzinfo=UTC)) is False

    def test_timezone_conversion(self):
        # 00:30 UTC is 09:30 in Tokyo
        window = hours("09:00", "15:00", tz="Asia/Tokyo")
        assert window.is_open(datetime(2026, 3, 2, 0, 30, tzinfo=UTC)) is True
        assert window.is_open(datetime(2026, 3, 2, 7, 0, tzinfo=UTC)) is False

    def test_naive_datetime_is_utc(self):
        assert hours("09:00", "15:00").is_open(datetime(2026, 3, 2, 12, 0)) is True


class TestOvernightWindow:
    def test_spans_midnight(self):
        window = hours("22:00", "02:00")
        assert window.spans_midnight is True
        assert window.is_open(datetime(2026, 3, 2, 23, 0, tzinfo=UTC)) is True
        assert window.is_open(datetime(2026, 3, 3, 1, 30, tzinfo=UTC)) is True
        assert window.is_open(datetime(2026, 3, 3, 3, 0, tzinfo=UTC)) is False

    def test_weekday_of_opening_day(self):
        window = hours("22:00", "02:00")
        # Friday night session continues into Saturday morning
        assert window.is_open(datetime(2026, 3, 7, 1, 0, tzinfo=UTC)) is True
        # Sunday night does not open; Monday morning belongs to Sunday's window
        assert window.is_open(datetime(2026, 3, 8, 23, 0, tzinfo=UTC)) is False
        assert window.is_open(datetime(2026, 3, 2, 1, 0, tzinfo=UTC)) is False


def test_describe():
    assert hours("09:00", "15:00").describe() == "09:00-15:00 UTC days=[0, 1, 2, 3, 4]"
