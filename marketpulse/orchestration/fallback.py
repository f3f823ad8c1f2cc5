"""
Fallback orchestration across prioritized data sources
Tries each source in priority order behind its own circuit breaker and retry policy
"""

import asyncio
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..utils import get_logger
from ..utils.errors import (
    ErrorKind,
    MarketDataError,
    NON_RETRYABLE_KINDS,
    classify_error,
    wrap_error
)
from ..utils.retry import RetryManager, RetryPolicy
from ..utils.timers import Clock
from .circuit_breaker import CircuitBreaker

logger = get_logger(__name__)


@dataclass
class FallbackStrategy:
    """Retry and breaker settings applied to every source"""
    max_retries: int = 3
    retry_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout: float = 60.0

    @classmethod
    def from_config(cls, reliability) -> 'FallbackStrategy':
        return cls(
            max_retries=reliability.retry_max_retries,
            retry_delay=reliability.retry_base_delay,
            backoff_multiplier=reliability.retry_backoff_multiplier,
            max_delay=reliability.retry_max_delay,
            circuit_breaker_threshold=reliability.circuit_failure_threshold,
            circuit_breaker_timeout=reliability.circuit_recovery_seconds
        )

    def to_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.retry_delay,
            backoff_multiplier=self.backoff_multiplier,
            max_delay=self.max_delay
        )


@dataclass
class FallbackSource:
    """One candidate in a fallback chain"""
    name: str
    operation: Callable[[], Awaitable[Any]]
    priority: int = 0
    circuit_breaker: Optional[CircuitBreaker] = None
    retry_policy: Optional[RetryPolicy] = None


@dataclass
class ProviderResult:
    """Outcome of a fallback run"""
    success: bool
    data: Any = None
    error: Optional[MarketDataError] = None
    source: str = "none"
    attempt: int = 0
    latency_ms: float = 0.0


@dataclass
class SourceHealth:
    """Orchestrator-side view of one source"""
    name: str
    breaker: CircuitBreaker
    success_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_success: Optional[datetime] = None

    def record_success(self):
        self.success_count += 1
        self.error_count = 0
        self.last_success = datetime.now()

    def record_error(self, error: BaseException):
        self.error_count += 1
        self.last_error = str(error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.breaker.state.value,
            'is_healthy': not self.breaker.is_open,
            'failure_count': self.breaker.failure_count,
            'success_count': self.success_count,
            'error_count': self.error_count,
            'last_error': self.last_error,
            'last_success': self.last_success.isoformat() if self.last_success else None,
        }


def _should_retry(error: BaseException) -> bool:
    return classify_error(error) not in NON_RETRYABLE_KINDS


class FallbackManager:
    """
    Runs a list of FallbackSource candidates and returns the first success

    A source is skipped when either its orchestrator breaker or the
    provider breaker it carries is open. Every attempt goes through the
    orchestrator breaker; failures are recorded in that source's health.
    """

    def __init__(
        self,
        strategy: Optional[FallbackStrategy] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        self.strategy = strategy or FallbackStrategy()
        self.clock = clock or Clock()
        self._sleep = sleep or asyncio.sleep
        self.health: Dict[str, SourceHealth] = {}
        self._zombies: Set[asyncio.Future] = set()

    def _health_for(self, name: str) -> SourceHealth:
        if name not in self.health:
            self.health[name] = SourceHealth(
                name=name,
                breaker=CircuitBreaker(
                    f"fallback:{name}",
                    failure_threshold=self.strategy.circuit_breaker_threshold,
                    recovery_timeout=self.strategy.circuit_breaker_timeout,
                    clock=self.clock
                )
            )
        return self.health[name]

    async def execute(self, sources: List[FallbackSource]) -> ProviderResult:
        """Try sources in ascending priority; never raises for source failures"""
        ordered = sorted(sources, key=lambda s: s.priority)
        last_error: Optional[MarketDataError] = None

        for source in ordered:
            health = self._health_for(source.name)

            if health.breaker.is_open or (source.circuit_breaker is not None and source.circuit_breaker.is_open):
                logger.debug(f"Skipping {source.name}: circuit open")
                if last_error is None:
                    last_error = MarketDataError(
                        ErrorKind.CIRCUIT_OPEN,
                        f"Circuit breaker open for {source.name}",
                        provider=source.name
                    )
                continue

            result = await self._run_source(source, health)
            if result.success:
                return result
            last_error = result.error

        if last_error is None:
            last_error = MarketDataError(ErrorKind.EXHAUSTED, "No data sources available")

        return ProviderResult(success=False, error=last_error, source="none")

    async def _run_source(self, source: FallbackSource, health: SourceHealth) -> ProviderResult:
        retry = RetryManager(source.retry_policy or self.strategy.to_retry_policy(), sleep=self._sleep)
        attempts = 0
        start = time.perf_counter()

        async def attempt_once():
            nonlocal attempts
            attempts += 1
            return await health.breaker.execute(source.operation)

        def on_failure(error: BaseException, attempt: int):
            if classify_error(error) != ErrorKind.CIRCUIT_OPEN:
                health.record_error(error)
            logger.debug(f"{source.name} attempt {attempt} failed: {error}")

        try:
            data = await retry.execute(
                attempt_once,
                should_retry=_should_retry,
                on_failure=on_failure,
                label=source.name
            )
        except Exception as e:
            error = wrap_error(e, provider=source.name)
            error.attempt = attempts
            logger.warning(f"Source {source.name} failed after {attempts} attempt(s): {error}")
            return ProviderResult(
                success=False,
                error=error,
                source=source.name,
                attempt=attempts,
                latency_ms=(time.perf_counter() - start) * 1000
            )

        health.record_success()
        latency_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"Source {source.name} succeeded on attempt {attempts} in {latency_ms:.0f}ms")
        return ProviderResult(
            success=True,
            data=data,
            source=source.name,
            attempt=attempts,
            latency_ms=latency_ms
        )

    async def execute_with_timeout(self, sources: List[FallbackSource], timeout: float) -> ProviderResult:
        """
        Same as execute() with a deadline

        On timeout the chain keeps running in the background and its
        result is dropped; breaker and health updates it makes still count.

        Raises:
            MarketDataError(TIMEOUT) when the deadline passes
        """
        task = asyncio.ensure_future(self.execute(sources))
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            return task.result()

        self._zombies.add(task)
        task.add_done_callback(self._discard_late_result)
        names = ", ".join(s.name for s in sources) or "none"
        logger.warning(f"Fallback chain [{names}] exceeded {timeout}s deadline")
        raise MarketDataError(ErrorKind.TIMEOUT, f"Fallback chain timed out after {timeout}s")

    def _discard_late_result(self, task: asyncio.Future):
        self._zombies.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug(f"Late fallback chain failed: {exc}")
        else:
            logger.debug(f"Discarded late fallback result from {task.result().source}")

    async def drain(self):
        """Wait for chains abandoned by execute_with_timeout"""
        if self._zombies:
            await asyncio.gather(*list(self._zombies), return_exceptions=True)

    def get_health_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: health.to_dict() for name, health in self.health.items()}

    def reset_source_health(self, name: str) -> bool:
        health = self.health.get(name)
        if health is None:
            return False
        health.breaker.reset()
        health.success_count = 0
        health.error_count = 0
        health.last_error = None
        health.last_success = None
        logger.info(f"Reset health for source {name}")
        return True

    def reset_all_health(self):
        for name in list(self.health):
            self.reset_source_health(name)

    def open_circuit_breaker(self, name: str, timeout: Optional[float] = None):
        self._health_for(name).breaker.force_open(timeout)
        logger.warning(f"Circuit for source {name} opened manually")

    def close_circuit_breaker(self, name: str):
        self._health_for(name).breaker.reset()

    def get_strategy(self) -> Dict[str, Any]:
        return asdict(self.strategy)

    def update_strategy(self, **changes):
        """Change strategy fields; existing breakers pick up threshold/timeout changes"""
        for key, value in changes.items():
            if not hasattr(self.strategy, key):
                raise ValueError(f"Unknown strategy field: {key}")
            setattr(self.strategy, key, value)

        for health in self.health.values():
            health.breaker.failure_threshold = self.strategy.circuit_breaker_threshold
            health.breaker.recovery_timeout = self.strategy.circuit_breaker_timeout

        logger.info(f"Fallback strategy updated: {changes}")
