"""Tests for the circuit breaker and its per-endpoint registry."""

import pytest

from booster_beacon.errors import CircuitOpenError
from booster_beacon.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


def make_breaker(clock, failure_threshold=3, recovery_timeout_ms=1000, success_threshold=2):
    config = CircuitBreakerConfig(
        failure_threshold=failure_threshold,
        recovery_timeout_ms=recovery_timeout_ms,
        monitoring_period_ms=10_000,
        success_threshold=success_threshold,
    )
    return CircuitBreaker(config, name="test", clock=clock)


async def succeed():
    return "ok"


async def fail():
    raise RuntimeError("boom")


async def trip(breaker, times):
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.execute(fail)


class TestCircuitBreakerConfig:
    def test_rejects_zero_failure_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0, recovery_timeout_ms=1, monitoring_period_ms=1)

    def test_rejects_negative_recovery_timeout(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=1, recovery_timeout_ms=-1, monitoring_period_ms=1)


class TestCircuitBreakerTransitions:
    @pytest.mark.asyncio
    async def test_success_passes_result_through(self):
        breaker = make_breaker(FakeClock())

        assert await breaker.execute(succeed) == "ok"
        assert breaker.get_state() == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_at_failure_threshold(self):
        clock = FakeClock()
        breaker = make_breaker(clock, failure_threshold=3)

        await trip(breaker, 2)
        assert breaker.get_state() == CircuitState.CLOSED

        await trip(breaker, 1)
        metrics = breaker.get_metrics()
        assert metrics.state == CircuitState.OPEN
        assert metrics.failure_count == 3
        assert metrics.last_failure_time == clock.now

    @pytest.mark.asyncio
    async def test_open_rejects_without_calling_operation(self):
        breaker = make_breaker(FakeClock(), failure_threshold=1)
        await trip(breaker, 1)

        calls = []

        async def tracked():
            calls.append(1)
            return "ok"

        with pytest.raises(CircuitOpenError, match="Circuit breaker is OPEN"):
            await breaker.execute(tracked)
        assert calls == []

    @pytest.mark.asyncio
    async def test_success_in_closed_resets_failure_count(self):
        breaker = make_breaker(FakeClock(), failure_threshold=3)

        await trip(breaker, 2)
        await breaker.execute(succeed)
        await trip(breaker, 2)

        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.get_metrics().failure_count == 2

    @pytest.mark.asyncio
    async def test_half_open_after_recovery_timeout(self):
        clock = FakeClock()
        breaker = make_breaker(clock, failure_threshold=1, recovery_timeout_ms=1000, success_threshold=2)
        await trip(breaker, 1)

        clock.advance(999)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeed)

        clock.advance(1)
        assert await breaker.execute(succeed) == "ok"
        assert breaker.get_state() == CircuitState.HALF_OPEN
        assert breaker.get_metrics().success_count == 1

    @pytest.mark.asyncio
    async def test_half_open_closes_after_success_threshold(self):
        clock = FakeClock()
        breaker = make_breaker(clock, failure_threshold=1, recovery_timeout_ms=1000, success_threshold=2)
        await trip(breaker, 1)
        clock.advance(1000)

        await breaker.execute(succeed)
        await breaker.execute(succeed)

        metrics = breaker.get_metrics()
        assert metrics.state == CircuitState.CLOSED
        assert metrics.failure_count == 0
        assert metrics.success_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = make_breaker(clock, failure_threshold=2, recovery_timeout_ms=1000)
        await trip(breaker, 2)
        clock.advance(1000)

        await trip(breaker, 1)

        assert breaker.get_state() == CircuitState.OPEN
        assert breaker.get_metrics().last_failure_time == clock.now
        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeed)

    @pytest.mark.asyncio
    async def test_operation_error_is_reraised_unchanged(self):
        breaker = make_breaker(FakeClock())

        with pytest.raises(RuntimeError, match="boom"):
            await breaker.execute(fail)

    @pytest.mark.asyncio
    async def test_reset_forces_closed(self):
        breaker = make_breaker(FakeClock(), failure_threshold=1)
        await trip(breaker, 1)

        breaker.reset()

        metrics = breaker.get_metrics()
        assert metrics.state == CircuitState.CLOSED
        assert metrics.failure_count == 0
        assert metrics.success_count == 0
        assert metrics.last_failure_time == 0
        assert await breaker.execute(succeed) == "ok"

    def test_metrics_to_dict(self):
        breaker = make_breaker(FakeClock())

        assert breaker.get_metrics().to_dict() == {
            "state": "CLOSED",
            "failureCount": 0,
            "successCount": 0,
            "lastFailureTime": 0,
        }


class TestCircuitBreakerRegistry:
    def test_same_host_shares_breaker(self):
        registry = CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=1, recovery_timeout_ms=10, monitoring_period_ms=10)
        )

        a = registry.for_endpoint("https://discord.com/api/webhooks/1/abc")
        b = registry.for_endpoint("https://Discord.com/api/webhooks/2/def")
        c = registry.for_endpoint("https://hooks.example.com/x")

        assert a is b
        assert a is not c
        assert a.name == "discord.com"

    @pytest.mark.asyncio
    async def test_failures_isolated_per_host(self):
        registry = CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=1, recovery_timeout_ms=10_000, monitoring_period_ms=10),
            clock=FakeClock(),
        )
        bad = registry.for_endpoint("https://down.example.com/hook")
        good = registry.for_endpoint("https://up.example.com/hook")

        await trip(bad, 1)

        assert bad.get_state() == CircuitState.OPEN
        assert await good.execute(succeed) == "ok"
        assert registry.all_metrics()["down.example.com"]["state"] == "OPEN"

    @pytest.mark.asyncio
    async def test_reset_all(self):
        registry = CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=1, recovery_timeout_ms=10_000, monitoring_period_ms=10),
            clock=FakeClock(),
        )
        breaker = registry.for_endpoint("https://down.example.com/hook")
        await trip(breaker, 1)

        registry.reset_all()

        assert breaker.get_state() == CircuitState.CLOSED
