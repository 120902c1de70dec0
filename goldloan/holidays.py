"""
Holiday Calendar Module

Non-business-day calendar used by the early-repayment grace period: a fixed
list of holidays plus every Sunday.
"""

from abc import ABC, abstractmethod
from datetime import date, timedelta
from typing import Iterable, Optional, Set

from .config import GoldLoanConfig, get_config


class HolidayCalendar(ABC):
    """Abstract non-business-day calendar"""

    @abstractmethod
    def is_non_business_day(self, day: date) -> bool:
        pass

    def next_business_day(self, day: date) -> date:
        """
        Shift a date forward, one day at a time, until it is a business day.

        A business day is returned unchanged, so shifting is idempotent.
        """
        while self.is_non_business_day(day):
            day = day + timedelta(days=1)
        return day


class FixedHolidayCalendar(HolidayCalendar):
    """Fixed list of holidays plus Sundays"""

    def __init__(self, holidays: Optional[Iterable[date]] = None):
        if holidays is None:
            holidays = [date.fromisoformat(value) for value in get_config().holidays]
        self._holidays: Set[date] = set(holidays)

    @classmethod
    def from_config(cls, config: Optional[GoldLoanConfig] = None) -> "FixedHolidayCalendar":
        """Calendar built from the configured holiday list"""
        config = config or get_config()
        return cls(date.fromisoformat(value) for value in config.holidays)

    @property
    def holidays(self) -> Set[date]:
        return set(self._holidays)

    def is_non_business_day(self, day: date) -> bool:
        return day.weekday() == 6 or day in self._holidays
