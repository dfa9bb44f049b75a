"""Periodic tickers for background work (buffer flush, check sweeps)."""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Ticker(ABC):
    """Runs a callback on a fixed period until stopped."""
    
    def __init__(self, name: str, interval: float, callback: Callable[[], None]):
        self.name = name
        self.interval = interval
        self.callback = callback
    
    @abstractmethod
    def start(self) -> None:
        """Begin ticking."""
    
    @abstractmethod
    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop ticking and wait for an in-progress tick to finish."""
    
    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Whether the ticker is active."""
    
    def _fire(self) -> None:
        try:
            self.callback()
        except Exception as e:
            # A failing tick must not kill the ticker
            logger.error(f"Ticker {self.name} callback failed: {e}", exc_info=True)


class ThreadTicker(Ticker):
    """Ticker backed by a daemon thread and a stop event."""
    
    def __init__(self, name: str, interval: float, callback: Callable[[], None]):
        super().__init__(name, interval, callback)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
    
    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Ticker {self.name} started (interval={self.interval}s)")
    
    def _loop(self) -> None:
        # wait() returns True once stop() is called
        while not self._stop_event.wait(self.interval):
            self._fire()
    
    def stop(self, timeout: Optional[float] = None) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Ticker {self.name} did not stop cleanly")
        self._thread = None
        logger.info(f"Ticker {self.name} stopped")
    
    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class ManualTicker(Ticker):
    """Ticker advanced explicitly with tick(); for tests and embedding."""
    
    def __init__(self, name: str, interval: float, callback: Callable[[], None]):
        super().__init__(name, interval, callback)
        self._running = False
        self.ticks = 0
    
    def start(self) -> None:
        self._running = True
    
    def stop(self, timeout: Optional[float] = None) -> None:
        self._running = False
    
    @property
    def is_running(self) -> bool:
        return self._running
    
    def tick(self, times: int = 1) -> None:
        for _ in range(times):
            if not self._running:
                return
            self.ticks += 1
            self._fire()


TickerFactory = Callable[[str, float, Callable[[], None]], Ticker]
