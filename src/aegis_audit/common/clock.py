"""Injectable time and id providers.

Services take a Clock and an id factory instead of calling datetime.now()
or uuid4() directly, so tests can pin time and ids.
"""

import itertools
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4


IdFactory = Callable[[], str]


def uuid_factory() -> str:
    """Default id provider."""
    return str(uuid4())


def sequential_ids(prefix: str = "id") -> IdFactory:
    """Deterministic id provider: prefix-1, prefix-2, ..."""
    counter = itertools.count(1)
    lock = threading.Lock()
    
    def _next() -> str:
        with lock:
            return f"{prefix}-{next(counter)}"
    
    return _next


class Clock(ABC):
    """Source of the current time."""
    
    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time."""
    
    @abstractmethod
    def sleep(self, seconds: float) -> None:
        """Block for the given number of seconds."""


class SystemClock(Clock):
    """Wall clock."""
    
    def now(self) -> datetime:
        return datetime.now(timezone.utc)
    
    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class ManualClock(Clock):
    """Clock that only moves when told to.
    
    sleep() advances the clock instead of blocking, and records the
    requested durations so backoff schedules can be asserted.
    """
    
    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()
        self.sleeps: list = []
    
    def now(self) -> datetime:
        with self._lock:
            return self._now
    
    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds, **kwargs)
            return self._now
    
    def set(self, moment: datetime) -> None:
        with self._lock:
            self._now = moment
    
    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
