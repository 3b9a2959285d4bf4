"""
Project: School Canteen Wallet
Date: October 2026

Description:
Time providers and the date refresh signal. Everything that needs "now"
takes a clock; DateRefresh publishes date.changed on the event bus when
the calendar day of its clock rolls over.
"""

from datetime import date, datetime, timedelta, timezone

from errors import ValidationError


class SystemClock:
    def now(self) -> datetime:
        # naive UTC, matching what the DateTime columns store
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def today(self) -> date:
        return self.now().date()


class FixedClock(SystemClock):
    """Clock pinned to a given instant; tests move it with advance()."""

    def __init__(self, instant: datetime):
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime):
        self._instant = instant

    def advance(self, **delta):
        self._instant = self._instant + timedelta(**delta)


def week_bounds(day: date) -> tuple[date, date]:
    """Monday..Sunday of the week containing day."""
    start = day - timedelta(days=day.weekday())
    return start, start + timedelta(days=6)


def date_range(name: str, clock) -> tuple[date, date] | None:
    today = clock.today()
    if name == "today":
        return today, today
    if name == "week":
        return week_bounds(today)
    if name == "all":
        return None
    raise ValidationError(f"unknown range: {name}", field="range")


class DateRefresh:
    def __init__(self, clock, bus):
        self.clock = clock
        self.bus = bus
        self.current = clock.today()

    def tick(self) -> bool:
        today = self.clock.today()
        if today == self.current:
            return False
        previous, self.current = self.current, today
        week_start, week_end = week_bounds(today)
        self.bus.publish(
            "date.changed",
            {
                "previous": previous.isoformat(),
                "today": today.isoformat(),
                "week_start": week_start.isoformat(),
                "week_end": week_end.isoformat(),
            },
        )
        return True
