"""Property-based tests for the circuit breaker.

**Property: Open Circuit Rejects Calls Without Invoking Them**
**Property: Half-Open Admits Exactly One Trial**
"""

import asyncio

import pytest
from hypothesis import given, settings, strategies as st

from voicebilling.core.errors import CircuitOpenError, ExternalServiceError
from voicebilling.core.resilience import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    get_resilience_health,
    with_billing_resilience,
    with_external_service_resilience,
)
from voicebilling.modules.invoice.interface import PaymentProcessorError
from tests.fakes import RecordingSleep


class MonotonicClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def succeed():
    return "ok"


async def fail():
    raise ConnectionError("dependency down")


async def trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.call(fail)


class TestCircuitBreakerTransitions:
    """Tests for CLOSED -> OPEN -> HALF_OPEN -> CLOSED/OPEN."""

    @given(threshold=st.integers(min_value=1, max_value=10))
    @settings(max_examples=50)
    @pytest.mark.asyncio
    async def test_opens_exactly_at_threshold(self, threshold):
        """For any threshold N, N-1 failures SHALL keep the circuit closed and N SHALL open it."""
        breaker = CircuitBreaker("svc", failure_threshold=threshold, clock=MonotonicClock())

        await trip(breaker, threshold - 1)
        assert breaker.state == CircuitState.CLOSED, (
            f"Circuit opened after {threshold - 1} failures with threshold {threshold}"
        )

        await trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    @given(calls=st.integers(min_value=1, max_value=20))
    @settings(max_examples=50)
    @pytest.mark.asyncio
    async def test_open_circuit_does_not_invoke_operation(self, calls):
        """For any number of calls while OPEN, the operation SHALL never run."""
        clock = MonotonicClock()
        breaker = CircuitBreaker("svc", failure_threshold=1, recovery_time=60.0, clock=clock)
        await trip(breaker, 1)

        invoked = 0

        async def counted():
            nonlocal invoked
            invoked += 1
            return "ok"

        for _ in range(calls):
            clock.now += 1.0
            if clock.now - 1000.0 >= 60.0:
                break
            with pytest.raises(CircuitOpenError):
                await breaker.call(counted)

        assert invoked == 0, f"Operation invoked {invoked} times while circuit was open"

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("svc", failure_threshold=3, clock=MonotonicClock())
        await trip(breaker, 2)
        assert await breaker.call(succeed) == "ok"
        assert breaker.failure_count == 0

        await trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_after_recovery_time(self):
        clock = MonotonicClock()
        breaker = CircuitBreaker("svc", failure_threshold=1, recovery_time=60.0, clock=clock)
        await trip(breaker, 1)

        clock.now += 59.9
        assert breaker.state == CircuitState.OPEN
        clock.now += 0.1
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_successful_trial_closes_circuit(self):
        clock = MonotonicClock()
        breaker = CircuitBreaker("svc", failure_threshold=1, recovery_time=60.0, clock=clock)
        await trip(breaker, 1)
        clock.now += 60.0

        assert await breaker.call(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_failed_trial_reopens_and_restarts_recovery_clock(self):
        clock = MonotonicClock()
        breaker = CircuitBreaker("svc", failure_threshold=3, recovery_time=60.0, clock=clock)
        await trip(breaker, 3)
        clock.now += 60.0
        assert breaker.state == CircuitState.HALF_OPEN

        await trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

        clock.now += 30.0
        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)
        clock.now += 30.0
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_admits_single_trial(self):
        clock = MonotonicClock()
        breaker = CircuitBreaker("svc", failure_threshold=1, recovery_time=10.0, clock=clock)
        await trip(breaker, 1)
        clock.now += 10.0

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "trial"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)

        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)

        release.set()
        assert await trial == "trial"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_client_errors_do_not_count_as_failures(self):
        breaker = CircuitBreaker("svc", failure_threshold=2, clock=MonotonicClock())

        async def declined():
            raise PaymentProcessorError("card declined", status_code=402)

        for _ in range(5):
            with pytest.raises(PaymentProcessorError):
                await breaker.call(declined)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_trial_releases_half_open_slot(self):
        clock = MonotonicClock()
        breaker = CircuitBreaker("svc", failure_threshold=1, recovery_time=10.0, clock=clock)
        await trip(breaker, 1)
        clock.now += 10.0

        async def hang():
            await asyncio.Event().wait()

        trial = asyncio.create_task(breaker.call(hang))
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        assert await breaker.call(succeed) == "ok"

    def test_reset_closes_circuit(self):
        breaker = CircuitBreaker("svc", failure_threshold=1, clock=MonotonicClock())
        asyncio.run(trip(breaker, 1))
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_status()["seconds_until_half_open"] is None


class TestCircuitBreakerRegistry:
    """Tests for registry and health reporting."""

    def test_same_name_returns_same_breaker(self):
        registry = CircuitBreakerRegistry()
        assert registry.get_breaker("stripe") is registry.get_breaker("stripe")
        assert registry.get_breaker("stripe") is not registry.get_breaker("database")

    @pytest.mark.asyncio
    async def test_health_lists_open_circuits(self):
        registry = CircuitBreakerRegistry()
        stripe_breaker = registry.get_breaker("stripe", failure_threshold=1, clock=MonotonicClock())
        registry.get_breaker("database")

        assert get_resilience_health(registry)["healthy"] is True

        await trip(stripe_breaker, 1)
        health = get_resilience_health(registry)
        assert health["healthy"] is False
        assert health["open_circuits"] == ["stripe"]
        assert health["circuit_breakers"]["database"]["state"] == "closed"

        registry.reset_all()
        assert get_resilience_health(registry)["healthy"] is True

    @pytest.mark.asyncio
    async def test_billing_resilience_counts_exhausted_retries_once(self):
        """A call that exhausts its retries counts as one failure on the breaker."""
        registry = CircuitBreakerRegistry()
        sleep = RecordingSleep()
        calls = 0

        async def unavailable():
            nonlocal calls
            calls += 1
            raise PaymentProcessorError("Service unavailable", status_code=503)

        with pytest.raises(ExternalServiceError) as exc_info:
            await with_billing_resilience(unavailable, "create_draft_invoice", sleep=sleep, registry=registry)

        assert calls == 5
        assert len(sleep.delays) == 4
        assert exc_info.value.service == "stripe"
        assert registry.get_breaker("stripe").failure_count == 1

    @pytest.mark.asyncio
    async def test_external_service_resilience_uses_its_own_breaker(self):
        """The external-service preset retries 3 times behind the breaker it is named after."""
        registry = CircuitBreakerRegistry()
        sleep = RecordingSleep()
        calls = 0

        async def unavailable():
            nonlocal calls
            calls += 1
            raise PaymentProcessorError("Service unavailable", status_code=503)

        with pytest.raises(ExternalServiceError) as exc_info:
            await with_external_service_resilience(
                unavailable, "stripe_lookup", "retrieve_invoice", sleep=sleep, registry=registry
            )

        assert calls == 3
        assert len(sleep.delays) == 2
        assert 0.45 <= sleep.delays[0] <= 0.55
        assert 0.9 <= sleep.delays[1] <= 1.1
        assert exc_info.value.service == "stripe_lookup"
        assert registry.get_breaker("stripe_lookup").failure_count == 1
        assert "stripe" not in registry.get_all_status()

    @pytest.mark.asyncio
    async def test_external_service_resilience_rejects_when_open(self):
        registry = CircuitBreakerRegistry()
        breaker = registry.get_breaker("stripe_lookup", failure_threshold=1, clock=MonotonicClock())
        await trip(breaker, 1)
        calls = 0

        async def lookup():
            nonlocal calls
            calls += 1
            return "in_123"

        with pytest.raises(CircuitOpenError):
            await with_external_service_resilience(
                lookup, "stripe_lookup", "retrieve_invoice", sleep=RecordingSleep(), registry=registry
            )

        assert calls == 0, "Operation must not run while the circuit is open"
