"""
Clock Module

Injectable time source so activation dates and arrears ages can be pinned in
tests instead of reading the wall clock.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from .errors import ValidationError


class Clock(ABC):
    """Time source handed to managers through their constructors"""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time"""
        ...

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    """Wall-clock time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock that only moves when told to"""

    def __init__(self, current: Optional[datetime] = None):
        if current is None:
            current = datetime.now(timezone.utc)
        elif current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._current = current

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> None:
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._current = current

    def advance(self, **kwargs) -> datetime:
        self._current = self._current + timedelta(**kwargs)
        return self._current


def parse_date(value, field_name: str = "date") -> Optional[date]:
    """
    Accept a date, a datetime or an ISO ``YYYY-MM-DD`` string; None and blank
    strings pass through as None

    Raises:
        ValidationError: On anything else
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            pass
    raise ValidationError(f"{field_name} must be an ISO date (YYYY-MM-DD), got {value!r}")
