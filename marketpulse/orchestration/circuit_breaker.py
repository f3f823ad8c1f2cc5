"""
Circuit breaker for provider calls

closed -> open after failure_threshold consecutive failures,
open -> half_open once recovery_timeout has elapsed,
half_open -> closed on a successful trial, back to open on a failed one.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..utils import get_logger
from ..utils.errors import ErrorKind, MarketDataError, NON_RETRYABLE_KINDS
from ..utils.timers import Clock

logger = get_logger(__name__)


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitState:
    """Point-in-time snapshot of a breaker"""
    name: str
    state: BreakerState
    failure_count: int
    last_failure_time: Optional[float]
    success_count: int
    total_failures: int
    last_error: Optional[str]

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'state': self.state.value,
            'failure_count': self.failure_count,
            'last_failure_time': self.last_failure_time,
            'success_count': self.success_count,
            'total_failures': self.total_failures,
            'last_error': self.last_error,
        }


class CircuitBreaker:
    """Per-name breaker; validation and circuit-open errors never count as failures"""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Optional[Clock] = None
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock or Clock()

        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.success_count = 0
        self.total_failures = 0
        self.last_error: Optional[str] = None

        self._open_until: Optional[float] = None
        self._trial_in_flight = False

    def _cooldown_elapsed(self) -> bool:
        if self._open_until is not None:
            return self.clock.now() >= self._open_until
        if self.last_failure_time is None:
            return True
        return self.clock.now() - self.last_failure_time >= self.recovery_timeout

    @property
    def is_open(self) -> bool:
        """True when a call would be refused right now; does not change state"""
        if self.state == BreakerState.OPEN:
            return not self._cooldown_elapsed()
        if self.state == BreakerState.HALF_OPEN:
            return self._trial_in_flight
        return False

    def allow_request(self) -> bool:
        """Admit a call, moving open -> half_open when the cooldown is over"""
        if self.state == BreakerState.CLOSED:
            return True

        if self.state == BreakerState.OPEN:
            if not self._cooldown_elapsed():
                return False
            self.state = BreakerState.HALF_OPEN
            self._open_until = None
            logger.info(f"Circuit {self.name} half-open, allowing trial request")

        # half-open admits exactly one trial
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def record_success(self):
        if self.state != BreakerState.CLOSED:
            logger.info(f"Circuit {self.name} closed after successful trial")
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.success_count += 1
        self._trial_in_flight = False
        self._open_until = None

    def record_failure(self, error: Optional[BaseException] = None):
        self.failure_count += 1
        self.total_failures += 1
        self.last_failure_time = self.clock.now()
        self.last_error = str(error)[:500] if error is not None else None
        was_trial = self.state == BreakerState.HALF_OPEN
        self._trial_in_flight = False

        if was_trial or self.failure_count >= self.failure_threshold:
            self._trip()

    def _trip(self, timeout: Optional[float] = None):
        self.state = BreakerState.OPEN
        self._open_until = None if timeout is None else self.clock.now() + timeout
        logger.warning(
            f"Circuit {self.name} opened after {self.failure_count} failures: {self.last_error}"
        )

    def _refusal(self) -> MarketDataError:
        return MarketDataError(
            ErrorKind.CIRCUIT_OPEN,
            f"Circuit breaker open for {self.name}",
            provider=self.name
        )

    async def execute(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run operation() through the breaker"""
        if not self.allow_request():
            raise self._refusal()

        try:
            result = await operation()
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        except MarketDataError as e:
            if e.kind in NON_RETRYABLE_KINDS:
                self._trial_in_flight = False
            else:
                self.record_failure(e)
            raise
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result

    def reset(self):
        """Manual close"""
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self.last_error = None
        self._open_until = None
        self._trial_in_flight = False
        logger.info(f"Circuit {self.name} reset")

    def force_open(self, timeout: Optional[float] = None):
        """Manual open; stays open for timeout seconds (default recovery_timeout)"""
        self.last_failure_time = self.clock.now()
        self.last_error = "forced open"
        self._trial_in_flight = False
        self._trip(timeout if timeout is not None else self.recovery_timeout)

    def get_state(self) -> CircuitState:
        return CircuitState(
            name=self.name,
            state=self.state,
            failure_count=self.failure_count,
            last_failure_time=self.last_failure_time,
            success_count=self.success_count,
            total_failures=self.total_failures,
            last_error=self.last_error
        )
