"""
Clock abstraction and keyed deferred timers
Lets cooldowns run on the event loop in production and on a manual clock in tests
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .logger import get_logger

logger = get_logger(__name__)


class Clock:
    """Monotonic clock for intervals, wall clock for record timestamps"""

    is_manual = False

    def now(self) -> float:
        return time.monotonic()

    def wall(self) -> datetime:
        return datetime.now()


class ManualClock(Clock):
    """Clock that only moves when told to"""

    is_manual = True

    def __init__(self, start: float = 0.0):
        self._start = start
        self._now = start
        self._wall_base = datetime.now()

    def now(self) -> float:
        return self._now

    def wall(self) -> datetime:
        return self._wall_base + timedelta(seconds=self._now - self._start)

    def advance(self, seconds: float):
        self._now += seconds


@dataclass
class _Timer:
    due: float
    callback: Callable[[], None]
    handle: Optional[asyncio.TimerHandle] = None


class TimerRegistry:
    """
    Deferred callbacks keyed by an identifier

    Scheduling a key that already has a timer replaces it. On a real
    clock the callback is armed with loop.call_later when a loop is
    running; run_pending() fires anything overdue either way.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()
        self._timers: Dict[str, _Timer] = {}

    def schedule(self, key: str, delay: float, callback: Callable[[], None]):
        self.cancel(key)
        timer = _Timer(due=self.clock.now() + delay, callback=callback)

        if not self.clock.is_manual:
            try:
                loop = asyncio.get_running_loop()
                timer.handle = loop.call_later(delay, self._fire, key)
            except RuntimeError:
                # No running loop; run_pending() picks it up later
                pass

        self._timers[key] = timer

    def cancel(self, key: str) -> bool:
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        if timer.handle is not None:
            timer.handle.cancel()
        return True

    def has(self, key: str) -> bool:
        return key in self._timers

    def pending(self) -> List[str]:
        return list(self._timers)

    def _fire(self, key: str):
        timer = self._timers.pop(key, None)
        if timer is None:
            return
        try:
            timer.callback()
        except Exception as e:
            logger.error(f"Timer callback {key} failed: {e}")

    def run_pending(self) -> int:
        """Fire every timer whose due time has passed, returns how many fired"""
        now = self.clock.now()
        due = [k for k, t in self._timers.items() if t.due <= now]
        for key in due:
            timer = self._timers.get(key)
            if timer is not None and timer.handle is not None:
                timer.handle.cancel()
            self._fire(key)
        return len(due)

    def cancel_all(self):
        for key in list(self._timers):
            self.cancel(key)
