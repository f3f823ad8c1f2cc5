"""
Local request budget per provider
Refuses calls before they hit the network once a window is used up
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Optional

from .errors import ErrorKind, MarketDataError
from .logger import get_logger
from .timers import Clock

logger = get_logger(__name__)


class QuotaPeriod(Enum):
    """Quota windows"""
    MINUTE = 60
    HOUR = 3600


@dataclass
class QuotaWindow:
    """Sliding window of call timestamps"""
    limit: int
    period: QuotaPeriod
    calls: Deque[float] = field(default_factory=deque)

    def prune(self, now: float):
        horizon = now - self.period.value
        while self.calls and self.calls[0] <= horizon:
            self.calls.popleft()

    def used(self, now: float) -> int:
        self.prune(now)
        return len(self.calls)

    def remaining(self, now: float) -> int:
        return max(0, self.limit - self.used(now))

    def retry_after(self, now: float) -> float:
        """Seconds until the oldest call leaves the window"""
        self.prune(now)
        if not self.calls:
            return 0.0
        return max(0.0, self.calls[0] + self.period.value - now)


class QuotaGuard:
    """Tracks per-provider usage against per-minute and per-hour limits"""

    def __init__(
        self,
        requests_per_minute: int = 60,
        requests_per_hour: int = 1000,
        clock: Optional[Clock] = None
    ):
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour
        self.clock = clock or Clock()
        self.windows: Dict[str, Dict[QuotaPeriod, QuotaWindow]] = {}

    @classmethod
    def from_config(cls, api_config, clock: Optional[Clock] = None) -> 'QuotaGuard':
        return cls(api_config.requests_per_minute, api_config.requests_per_hour, clock)

    def _windows_for(self, provider: str) -> Dict[QuotaPeriod, QuotaWindow]:
        if provider not in self.windows:
            self.windows[provider] = {
                QuotaPeriod.MINUTE: QuotaWindow(self.requests_per_minute, QuotaPeriod.MINUTE),
                QuotaPeriod.HOUR: QuotaWindow(self.requests_per_hour, QuotaPeriod.HOUR),
            }
        return self.windows[provider]

    def check(self, provider: str) -> bool:
        """True when a call would fit in every window"""
        now = self.clock.now()
        return all(w.remaining(now) > 0 for w in self._windows_for(provider).values())

    def consume(self, provider: str, count: int = 1):
        """
        Record a call or refuse it

        Raises:
            MarketDataError(RATE_LIMITED) when any window is exhausted
        """
        now = self.clock.now()
        windows = self._windows_for(provider)

        for window in windows.values():
            if window.remaining(now) < count:
                retry_after = window.retry_after(now)
                logger.warning(
                    f"Local {window.period.name.lower()} budget exhausted for {provider}, "
                    f"next slot in {retry_after:.0f}s"
                )
                raise MarketDataError(
                    ErrorKind.RATE_LIMITED,
                    f"Local request budget exceeded for {provider} ({window.limit} per {window.period.name.lower()})",
                    provider=provider,
                    retry_after=retry_after
                )

        for window in windows.values():
            for _ in range(count):
                window.calls.append(now)

    def get_status(self) -> Dict[str, Dict[str, Dict[str, int]]]:
        """Usage per provider and window"""
        now = self.clock.now()
        status = {}
        for provider, windows in self.windows.items():
            status[provider] = {
                period.name.lower(): {
                    'used': window.used(now),
                    'limit': window.limit,
                    'remaining': window.remaining(now),
                }
                for period, window in windows.items()
            }
        return status

    def reset(self, provider: Optional[str] = None):
        if provider is None:
            self.windows.clear()
        else:
            self.windows.pop(provider, None)
