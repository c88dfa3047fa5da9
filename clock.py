"""Wall-clock providers.

Everything that needs "now" takes a ``Clock`` so that wait estimation,
operating hours and the daily reset can be tested without sleeping.
Timestamps are stored as naive UTC; calendar decisions (which day it is,
whether the shop is open) use the configured local zone.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo


class Clock(ABC):
    """Base clock.  Subclasses only need to implement ``now``."""

    def __init__(self, tz: str = "UTC") -> None:
        self.tz = ZoneInfo(tz)

    @abstractmethod
    def now(self) -> datetime:
        """Timezone-aware current time."""

    def utcnow(self) -> datetime:
        """Naive UTC timestamp, the form stored in the database."""
        return self.now().astimezone(timezone.utc).replace(tzinfo=None)

    def local_now(self) -> datetime:
        return self.now().astimezone(self.tz)

    def today(self) -> date:
        return self.local_now().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, current: Optional[datetime] = None, tz: str = "UTC") -> None:
        super().__init__(tz)
        if current is None:
            current = datetime(2024, 1, 1, 10, 0, tzinfo=self.tz)
        elif current.tzinfo is None:
            current = current.replace(tzinfo=self.tz)
        self.current = current

    def now(self) -> datetime:
        return self.current

    def set(self, current: datetime) -> None:
        if current.tzinfo is None:
            current = current.replace(tzinfo=self.tz)
        self.current = current

    def advance(self, **kwargs: float) -> None:
        self.current = self.current + timedelta(**kwargs)
