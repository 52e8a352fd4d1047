"""Daily trading window in a configured timezone."""

from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

from consensus_engine.config.models import TradingHoursConfig


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class TradingHours:
    """Answers whether a moment falls inside the trading window.

    Both ends are inclusive. A window whose end is earlier than its start
    spans midnight; its weekday is the day the window opened.
    """

    def __init__(self, config: TradingHoursConfig):
        self.config = config
        self.tz = ZoneInfo(config.timezone)
        self.start = _parse_hhmm(config.start)
        self.end = _parse_hhmm(config.end)
        self.weekdays = frozenset(config.weekdays)

    @property
    def spans_midnight(self) -> bool:
        return self.end < self.start

    def is_open(self, now: datetime | None = None) -> bool:
        """
        Check the window at ``now`` (aware; defaults to the current time).

        Naive datetimes are taken as UTC.
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local = now.astimezone(self.tz)
        clock = local.time().replace(second=0, microsecond=0)
        weekday = local.weekday()

        if not self.spans_midnight:
            return weekday in self.weekdays and self.start <= clock <= self.end

        if clock >= self.start:
            return weekday in self.weekdays
        if clock <= self.end:
            return (weekday - 1) % 7 in self.weekdays
        return False

    def describe(self) -> str:
        return f"{self.config.start}-{self.config.end} {self.config.timezone} days={sorted(self.weekdays)}"
