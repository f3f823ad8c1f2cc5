"""Unit tests for the orchestration layer: breakers, retries and fallback chains."""

import asyncio

import pytest

from marketpulse.config.settings import ReliabilityConfig
from marketpulse.orchestration.circuit_breaker import BreakerState, CircuitBreaker
from marketpulse.orchestration.fallback import (
    FallbackManager,
    FallbackSource,
    FallbackStrategy
)
from marketpulse.utils.errors import ErrorKind, MarketDataError
from marketpulse.utils.retry import RetryManager, RetryPolicy


def transient(message="upstream 503"):
    return MarketDataError(ErrorKind.TRANSIENT, message)


class CountingOperation:
    """Async callable that fails a set number of times before succeeding"""

    def __init__(self, failures=0, result="ok", error=None):
        self.failures = failures
        self.result = result
        self.error = error or transient()
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestCircuitBreaker:
    """Test CircuitBreaker state transitions."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, clock):
        """Consecutive failures trip the breaker and later calls are refused."""
        breaker = CircuitBreaker("svc", failure_threshold=3, recovery_timeout=60, clock=clock)
        op = CountingOperation(failures=100)

        for _ in range(3):
            with pytest.raises(MarketDataError):
                await breaker.execute(op)

        assert breaker.state == BreakerState.OPEN
        assert breaker.is_open

        with pytest.raises(MarketDataError) as exc_info:
            await breaker.execute(op)
        assert exc_info.value.kind == ErrorKind.CIRCUIT_OPEN
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self, clock):
        """After the cooldown a successful trial closes the circuit."""
        breaker = CircuitBreaker("svc", failure_threshold=1, recovery_timeout=60, clock=clock)
        with pytest.raises(MarketDataError):
            await breaker.execute(CountingOperation(failures=1))

        clock.advance(60)
        assert not breaker.is_open
        # Reading is_open does not move the state
        assert breaker.state == BreakerState.OPEN

        assert await breaker.execute(CountingOperation()) == "ok"
        assert breaker.state == BreakerState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, clock):
        """A failed trial sends the breaker straight back to open."""
        breaker = CircuitBreaker("svc", failure_threshold=2, recovery_timeout=30, clock=clock)
        for _ in range(2):
            with pytest.raises(MarketDataError):
                await breaker.execute(CountingOperation(failures=1))

        clock.advance(30)
        with pytest.raises(MarketDataError) as exc_info:
            await breaker.execute(CountingOperation(failures=1))
        assert exc_info.value.kind == ErrorKind.TRANSIENT
        assert breaker.state == BreakerState.OPEN

        clock.advance(10)
        assert breaker.is_open

    @pytest.mark.asyncio
    async def test_half_open_admits_single_trial(self, clock):
        """Only one call is let through while the trial is in flight."""
        breaker = CircuitBreaker("svc", failure_threshold=1, recovery_timeout=10, clock=clock)
        with pytest.raises(MarketDataError):
            await breaker.execute(CountingOperation(failures=1))
        clock.advance(10)

        gate = asyncio.Event()

        async def slow_trial():
            await gate.wait()
            return "trial"

        trial = asyncio.ensure_future(breaker.execute(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state == BreakerState.HALF_OPEN

        with pytest.raises(MarketDataError) as exc_info:
            await breaker.execute(CountingOperation())
        assert exc_info.value.kind == ErrorKind.CIRCUIT_OPEN

        gate.set()
        assert await trial == "trial"
        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_validation_errors_are_neutral(self, clock):
        """Bad-input errors never count toward tripping."""
        breaker = CircuitBreaker("svc", failure_threshold=1, clock=clock)
        op = CountingOperation(
            failures=5, error=MarketDataError(ErrorKind.VALIDATION, "unknown symbol")
        )

        for _ in range(3):
            with pytest.raises(MarketDataError):
                await breaker.execute(op)

        assert breaker.state == BreakerState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_plain_exceptions_count(self, clock):
        breaker = CircuitBreaker("svc", failure_threshold=1, clock=clock)

        async def broken():
            raise RuntimeError("socket closed")

        with pytest.raises(RuntimeError):
            await breaker.execute(broken)
        assert breaker.state == BreakerState.OPEN
        assert breaker.get_state().last_error == "socket closed"

    def test_force_open_and_reset(self, clock):
        """Manual open honours its own timeout; reset closes immediately."""
        breaker = CircuitBreaker("svc", recovery_timeout=60, clock=clock)
        breaker.force_open(timeout=5)
        assert breaker.is_open

        clock.advance(5)
        assert not breaker.is_open

        breaker.force_open()
        breaker.reset()
        assert breaker.state == BreakerState.CLOSED
        assert not breaker.is_open

    def test_state_snapshot(self, clock):
        breaker = CircuitBreaker("svc", clock=clock)
        state = breaker.get_state().to_dict()
        assert state['name'] == "svc"
        assert state['state'] == "closed"
        assert state['failure_count'] == 0

    def test_threshold_validation(self):
        with pytest.raises(ValueError):
            CircuitBreaker("svc", failure_threshold=0)


class TestRetryManager:
    """Test RetryManager backoff."""

    def test_delay_schedule_is_capped(self):
        policy = RetryPolicy(max_retries=5, base_delay=1.0, backoff_multiplier=2.0, max_delay=8.0)
        assert [policy.compute_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self, no_sleep):
        manager = RetryManager(RetryPolicy(max_retries=3), sleep=no_sleep)
        op = CountingOperation(failures=2)

        assert await manager.execute(op) == "ok"
        assert op.calls == 3
        assert no_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_raises_last_error_when_exhausted(self, no_sleep):
        """max_retries=3 means four attempts in total."""
        manager = RetryManager(RetryPolicy(max_retries=3), sleep=no_sleep)
        op = CountingOperation(failures=10)
        failures = []

        with pytest.raises(MarketDataError):
            await manager.execute(op, on_failure=lambda e, n: failures.append(n))

        assert op.calls == 4
        assert failures == [1, 2, 3, 4]
        assert no_sleep.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_should_retry_false_stops(self, no_sleep):
        manager = RetryManager(RetryPolicy(max_retries=3), sleep=no_sleep)
        op = CountingOperation(failures=10)

        with pytest.raises(MarketDataError):
            await manager.execute(op, should_retry=lambda e: False)

        assert op.calls == 1
        assert no_sleep.delays == []


class TestFallbackManager:
    """Test FallbackManager ordering, skipping and health tracking."""

    def make_manager(self, clock, no_sleep, **strategy):
        strategy.setdefault('max_retries', 1)
        return FallbackManager(FallbackStrategy(**strategy), clock=clock, sleep=no_sleep)

    @pytest.mark.asyncio
    async def test_sources_tried_in_priority_order(self, clock, no_sleep):
        """The lowest priority value runs first; a failure falls through."""
        manager = self.make_manager(clock, no_sleep)
        order = []

        def source(name, priority, fails):
            async def operation():
                order.append(name)
                if fails:
                    raise transient()
                return name
            return FallbackSource(name=name, operation=operation, priority=priority)

        result = await manager.execute([
            source("second", 2, False),
            source("first", 1, True),
            source("third", 3, False),
        ])

        assert result.success
        assert result.data == "second"
        assert result.source == "second"
        # first is retried once before moving on
        assert order == ["first", "first", "second"]
        assert no_sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_first_priority_success_stops_chain(self, clock, no_sleep):
        manager = self.make_manager(clock, no_sleep)
        low = CountingOperation(failures=9)
        best = CountingOperation(result="best")
        mid = CountingOperation(failures=9)

        result = await manager.execute([
            FallbackSource("p3", low, priority=3),
            FallbackSource("p1", best, priority=1),
            FallbackSource("p2", mid, priority=2),
        ])

        assert result.source == "p1"
        assert result.attempt == 1
        assert (best.calls, mid.calls, low.calls) == (1, 0, 0)

    @pytest.mark.asyncio
    async def test_all_sources_fail(self, clock, no_sleep):
        manager = self.make_manager(clock, no_sleep, max_retries=0)
        result = await manager.execute([
            FallbackSource("a", CountingOperation(failures=9), priority=1),
            FallbackSource("b", CountingOperation(failures=9, error=transient("b down")), priority=2),
        ])

        assert not result.success
        assert result.source == "none"
        assert result.error.kind == ErrorKind.TRANSIENT
        assert "b down" in str(result.error)

    @pytest.mark.asyncio
    async def test_empty_chain_is_exhausted(self, clock, no_sleep):
        manager = self.make_manager(clock, no_sleep)
        result = await manager.execute([])
        assert not result.success
        assert result.error.kind == ErrorKind.EXHAUSTED

    @pytest.mark.asyncio
    async def test_validation_not_retried(self, clock, no_sleep):
        manager = self.make_manager(clock, no_sleep, max_retries=3)
        op = CountingOperation(failures=9, error=MarketDataError(ErrorKind.VALIDATION, "bad symbol"))

        result = await manager.execute([FallbackSource("a", op)])

        assert not result.success
        assert result.error.kind == ErrorKind.VALIDATION
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_open_provider_breaker_skips_source(self, clock, no_sleep):
        manager = self.make_manager(clock, no_sleep)
        breaker = CircuitBreaker("provider", clock=clock)
        breaker.force_open()
        skipped = CountingOperation()
        backup = CountingOperation(result="backup")

        result = await manager.execute([
            FallbackSource("primary", skipped, priority=1, circuit_breaker=breaker),
            FallbackSource("backup", backup, priority=2),
        ])

        assert result.data == "backup"
        assert skipped.calls == 0

    @pytest.mark.asyncio
    async def test_orchestrator_breaker_trips_and_skips(self, clock, no_sleep):
        """Retries stop once the source's own breaker opens; the next run skips it."""
        manager = self.make_manager(clock, no_sleep, max_retries=3, circuit_breaker_threshold=2)
        op = CountingOperation(failures=100)

        result = await manager.execute([FallbackSource("flaky", op)])
        assert not result.success
        assert result.error.kind == ErrorKind.CIRCUIT_OPEN
        assert result.attempt == 3
        assert op.calls == 2

        result = await manager.execute([FallbackSource("flaky", op)])
        assert op.calls == 2
        assert result.error.kind == ErrorKind.CIRCUIT_OPEN

        health = manager.get_health_status()["flaky"]
        assert health['state'] == "open"
        assert health['is_healthy'] is False
        assert health['error_count'] == 2

    @pytest.mark.asyncio
    async def test_timeout_abandons_chain(self, clock, no_sleep):
        """A late chain is left running and its result dropped."""
        manager = self.make_manager(clock, no_sleep)

        async def slow():
            await asyncio.sleep(0.2)
            return "late"

        with pytest.raises(MarketDataError) as exc_info:
            await manager.execute_with_timeout([FallbackSource("slow", slow)], timeout=0.02)
        assert exc_info.value.kind == ErrorKind.TIMEOUT

        await manager.drain()
        assert manager.get_health_status()["slow"]['success_count'] == 1
        assert not manager._zombies

    @pytest.mark.asyncio
    async def test_timeout_not_hit(self, clock, no_sleep):
        manager = self.make_manager(clock, no_sleep)
        result = await manager.execute_with_timeout(
            [FallbackSource("fast", CountingOperation(result=42))], timeout=1.0
        )
        assert result.data == 42

    @pytest.mark.asyncio
    async def test_manual_breaker_control(self, clock, no_sleep):
        manager = self.make_manager(clock, no_sleep)
        op = CountingOperation()

        manager.open_circuit_breaker("src", timeout=30)
        result = await manager.execute([FallbackSource("src", op)])
        assert not result.success
        assert op.calls == 0

        manager.close_circuit_breaker("src")
        result = await manager.execute([FallbackSource("src", op)])
        assert result.success

    @pytest.mark.asyncio
    async def test_reset_health(self, clock, no_sleep):
        manager = self.make_manager(clock, no_sleep, max_retries=0)
        await manager.execute([FallbackSource("src", CountingOperation(failures=1))])
        assert manager.get_health_status()["src"]['error_count'] == 1

        assert manager.reset_source_health("src") is True
        assert manager.get_health_status()["src"]['error_count'] == 0
        assert manager.reset_source_health("missing") is False

    def test_update_strategy(self, clock, no_sleep):
        manager = self.make_manager(clock, no_sleep)
        manager.open_circuit_breaker("src")
        manager.update_strategy(circuit_breaker_threshold=9, circuit_breaker_timeout=5)

        assert manager.get_strategy()['circuit_breaker_threshold'] == 9
        assert manager.health["src"].breaker.failure_threshold == 9

        with pytest.raises(ValueError):
            manager.update_strategy(bogus=1)

    @pytest.mark.asyncio
    async def test_configured_backoff_multiplier(self, clock, no_sleep):
        """RETRY_BACKOFF_MULTIPLIER drives the delay schedule between attempts."""
        strategy = FallbackStrategy.from_config(ReliabilityConfig(retry_backoff_multiplier=3.0))
        assert strategy.to_retry_policy().backoff_multiplier == 3.0

        manager = FallbackManager(strategy, clock=clock, sleep=no_sleep)
        op = CountingOperation(failures=9)
        result = await manager.execute([FallbackSource("a", op)])

        assert not result.success
        assert op.calls == 4
        assert no_sleep.delays == [1.0, 3.0, 9.0]
