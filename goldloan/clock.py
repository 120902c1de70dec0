"""
Clock Module

Injected time source. Calculators and transitions never read the wall clock
themselves; the service asks a Clock for ``now`` and passes it down.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta


class Clock(ABC):
    """Abstract time source"""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC datetime"""
        pass


class SystemClock(Clock):
    """Wall clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock pinned to a given instant, for tests and replays"""

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant

    def advance(self, days: int = 0, **kwargs) -> datetime:
        self._instant = self._instant + timedelta(days=days, **kwargs)
        return self._instant
