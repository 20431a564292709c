"""
clock.py - Injectable time source.

Engines never call datetime.now() directly; they ask their Clock. Tests and
simulations use FrozenClock to move time by hand.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional


def add_years(moment: datetime, years: int) -> datetime:
    """Calendar-year addition; Feb 29 lands on Feb 28 in non-leap years."""
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


class Clock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def timestamp(self) -> float:
        return self.now().timestamp()

    def today(self) -> date:
        return self.now().date()


class FrozenClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime):
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        self._now = moment

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def advance_years(self, years: int) -> datetime:
        self._now = add_years(self._now, years)
        return self._now
