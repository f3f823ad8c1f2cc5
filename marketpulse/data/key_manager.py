"""
API key pool with health scoring and rotation
One manager per provider; keys are disabled on repeated rate limits or errors
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..utils import get_logger
from ..utils.timers import Clock, TimerRegistry

logger = get_logger(__name__)

MAX_HEALTH = 100
SUCCESS_REWARD = 1
ERROR_PENALTY = 10
RATE_LIMIT_PENALTY = 5
REENABLE_BONUS = 20

PLACEHOLDER_KEYS = frozenset({"demo-key-1", "demo-key-2", "demo-key-3"})


def mask_key(key: str) -> str:
    """Show only the first and last four characters"""
    if len(key) <= 8:
        return "***"
    return f"{key[:4]}***{key[-4:]}"


@dataclass
class KeyStatus:
    """Health record for one API key"""
    key: str
    is_active: bool = True
    health_score: int = MAX_HEALTH
    error_count: int = 0
    rate_limit_hits: int = 0
    last_used: Optional[datetime] = None
    last_error: Optional[str] = None
    disabled_until: Optional[float] = None

    def adjust_health(self, delta: int):
        self.health_score = max(0, min(MAX_HEALTH, self.health_score + delta))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': mask_key(self.key),
            'is_active': self.is_active,
            'health_score': self.health_score,
            'error_count': self.error_count,
            'rate_limit_hits': self.rate_limit_hits,
            'last_used': self.last_used.isoformat() if self.last_used else None,
            'last_error': self.last_error,
        }


class ApiKeyManager:
    """
    Chooses the healthiest active key for a provider

    Rate-limit hits past rotation_threshold put a key on a timed cooldown;
    errors past max_error_count disable it until enable_key() or a
    fleet-wide reset when every key is down.
    """

    def __init__(
        self,
        keys: List[str],
        rotation_threshold: int = 5,
        max_error_count: int = 10,
        cooldown: float = 300.0,
        provider: str = "provider",
        clock: Optional[Clock] = None,
        timers: Optional[TimerRegistry] = None
    ):
        usable = [k for k in keys if k and k not in PLACEHOLDER_KEYS]
        if not usable:
            usable = [k for k in keys if k]
        if not usable:
            raise ValueError(f"At least one API key is required for {provider}")

        self.provider = provider
        self.rotation_threshold = rotation_threshold
        self.max_error_count = max_error_count
        self.cooldown = cooldown
        self.clock = clock or Clock()
        self.timers = timers or TimerRegistry(self.clock)

        self.keys: List[KeyStatus] = [KeyStatus(key=k) for k in usable]
        self.current_index = 0

        logger.info(f"Initialized {provider} key manager with {len(self.keys)} key(s)")

    @property
    def current(self) -> KeyStatus:
        return self.keys[self.current_index]

    def _active_indices(self) -> List[int]:
        return [i for i, status in enumerate(self.keys) if status.is_active]

    def _reset_all(self):
        logger.warning(f"All {self.provider} keys disabled, resetting every key to active")
        for i, status in enumerate(self.keys):
            self.timers.cancel(self._timer_key(i))
            status.is_active = True
            status.health_score = MAX_HEALTH
            status.error_count = 0
            status.rate_limit_hits = 0
            status.disabled_until = None

    def _timer_key(self, index: int) -> str:
        return f"{self.provider}:key:{index}"

    def _best_active_index(self) -> int:
        """Highest health wins; ties go to the first key in ring order from current_index"""
        count = len(self.keys)
        best = None
        for offset in range(count):
            i = (self.current_index + offset) % count
            status = self.keys[i]
            if not status.is_active:
                continue
            if best is None or status.health_score > self.keys[best].health_score:
                best = i
        return best

    def get_current_key(self) -> str:
        """Best active key, resetting the pool first if nothing is active"""
        self.timers.run_pending()

        if not self._active_indices():
            self._reset_all()

        self.current_index = self._best_active_index()
        status = self.current
        status.last_used = datetime.now()
        return status.key

    def rotate_key(self) -> str:
        """
        Record a rate-limit hit on the current key and move to the next active key

        With one or no active key there is nothing to rotate to; the
        current key is returned unchanged and no hit is recorded.
        """
        self.timers.run_pending()

        active = self._active_indices()
        if len(active) <= 1:
            logger.warning(f"Cannot rotate {self.provider} key: only {len(active)} active key(s)")
            return self.get_current_key()

        old_index = self.current_index
        status = self.current
        status.rate_limit_hits += 1
        status.adjust_health(-RATE_LIMIT_PENALTY)

        if status.rate_limit_hits >= self.rotation_threshold:
            self._disable_temporarily(old_index)

        count = len(self.keys)
        for offset in range(1, count + 1):
            i = (old_index + offset) % count
            if self.keys[i].is_active:
                self.current_index = i
                break

        new_status = self.current
        new_status.last_used = datetime.now()
        logger.info(
            f"Rotated {self.provider} key {mask_key(status.key)} -> {mask_key(new_status.key)}"
        )
        return new_status.key

    def _disable_temporarily(self, index: int):
        status = self.keys[index]
        status.is_active = False
        status.disabled_until = self.clock.now() + self.cooldown
        logger.warning(
            f"{self.provider} key {mask_key(status.key)} hit {status.rate_limit_hits} rate limits, "
            f"cooling down for {self.cooldown:.0f}s"
        )
        self.timers.schedule(self._timer_key(index), self.cooldown, lambda: self._reenable(index))

    def _reenable(self, index: int):
        status = self.keys[index]
        # Permanent disable wins over a pending cooldown
        if status.error_count >= self.max_error_count:
            return
        status.is_active = True
        status.rate_limit_hits = 0
        status.disabled_until = None
        status.adjust_health(REENABLE_BONUS)
        logger.info(f"Re-enabled {self.provider} key {mask_key(status.key)} after cooldown")

    def record_success(self):
        status = self.current
        status.error_count = 0
        status.last_error = None
        status.adjust_health(SUCCESS_REWARD)

    def record_error(self, message: str = ""):
        status = self.current
        status.error_count += 1
        status.last_error = message or None
        status.adjust_health(-ERROR_PENALTY)

        if status.error_count >= self.max_error_count and status.is_active:
            status.is_active = False
            status.disabled_until = None
            self.timers.cancel(self._timer_key(self.current_index))
            logger.error(
                f"{self.provider} key {mask_key(status.key)} disabled after {status.error_count} errors"
            )

    def _index_of(self, key: str) -> Optional[int]:
        for i, status in enumerate(self.keys):
            if status.key == key:
                return i
        return None

    def enable_key(self, key: str) -> bool:
        index = self._index_of(key)
        if index is None:
            return False
        self.timers.cancel(self._timer_key(index))
        status = self.keys[index]
        status.is_active = True
        status.error_count = 0
        status.rate_limit_hits = 0
        status.disabled_until = None
        logger.info(f"Enabled {self.provider} key {mask_key(key)}")
        return True

    def disable_key(self, key: str) -> bool:
        index = self._index_of(key)
        if index is None:
            return False
        self.timers.cancel(self._timer_key(index))
        self.keys[index].is_active = False
        self.keys[index].disabled_until = None
        logger.info(f"Disabled {self.provider} key {mask_key(key)}")
        return True

    def get_key_statuses(self) -> List[Dict[str, Any]]:
        self.timers.run_pending()
        return [status.to_dict() for status in self.keys]

    def get_stats(self) -> Dict[str, Any]:
        self.timers.run_pending()
        active = self._active_indices()
        total = len(self.keys)
        return {
            'provider': self.provider,
            'total_keys': total,
            'active_keys': len(active),
            'current_key': mask_key(self.current.key),
            'average_health': sum(s.health_score for s in self.keys) / total,
            'total_errors': sum(s.error_count for s in self.keys),
            'total_rate_limit_hits': sum(s.rate_limit_hits for s in self.keys),
        }
