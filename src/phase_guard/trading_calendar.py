# trading_calendar.py
# Exchange trading-day calendar. Dates are controller-owned, never planner-owned.

from collections.abc import Iterable
from datetime import date, timedelta

DEFAULT_HOLIDAYS: frozenset[date] = frozenset(
    date.fromisoformat(d)
    for d in (
        # 2025
        "2025-01-26", "2025-03-08", "2025-03-29", "2025-04-14", "2025-04-17",
        "2025-05-01", "2025-06-17", "2025-08-15", "2025-08-26", "2025-10-02",
        "2025-10-12", "2025-10-31", "2025-11-01", "2025-11-15", "2025-12-25",
        # 2026
        "2026-01-26", "2026-03-14", "2026-03-28", "2026-04-03", "2026-04-14",
        "2026-05-01", "2026-06-06", "2026-08-14", "2026-08-15", "2026-10-01",
        "2026-10-02", "2026-10-20", "2026-10-21", "2026-11-04", "2026-12-25",
    )
)


class TradingCalendar:
    """Weekends plus a fixed holiday list. Unknown years have no holidays."""

    def __init__(self, holidays: Iterable[date] | None = None) -> None:
        self._holidays = frozenset(holidays) if holidays is not None else DEFAULT_HOLIDAYS

    def is_holiday(self, day: date) -> bool:
        return day in self._holidays

    def is_trading_day(self, day: date) -> bool:
        return day.weekday() < 5 and not self.is_holiday(day)

    def validate_trading_day(self, day: date) -> str | None:
        """Return None for a trading day, else a reason string."""
        if self.is_trading_day(day):
            return None
        if day.weekday() == 5:
            reason = "Saturday"
        elif day.weekday() == 6:
            reason = "Sunday"
        else:
            reason = "trading holiday"
        return f"{day.isoformat()} is a {reason} and not a trading day"

    def last_trading_day(self, day: date) -> date:
        d = day - timedelta(days=1)
        while not self.is_trading_day(d):
            d -= timedelta(days=1)
        return d

    def next_trading_day(self, day: date) -> date:
        d = day + timedelta(days=1)
        while not self.is_trading_day(d):
            d += timedelta(days=1)
        return d

    def resolve_live_dates(self, today: date) -> dict[str, str]:
        return {
            "to_date": today.isoformat(),
            "from_date": self.last_trading_day(today).isoformat(),
            "from_date_reason": "LAST_TRADING_DAY",
        }
