"""
Clock Source Module

Injectable time source for due-date and overdue computation.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Abstract time source"""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware datetime"""
        pass

    def today(self):
        return self.now().date()


class SystemClock(Clock):
    """Wall-clock time in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Settable clock for deterministic tests and replays"""

    def __init__(self, current: Optional[datetime] = None):
        self._current = current or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> None:
        self._current = current

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta given as keyword arguments (days=, hours=, ...)"""
        self._current = self._current + timedelta(**kwargs)
        return self._current
