"""
Tests for retry_with_backoff() and CircuitBreaker.

These tests verify that:
1. Retry returns the first success and invokes the operation k+1 times
2. Retry re-raises the last error after max_attempts invocations
3. Backoff delays double and are capped, with no jitter
4. The breaker opens after exactly failure_threshold consecutive failures
5. OPEN -> HALF_OPEN after reset timeout; one success closes, one failure reopens
6. The fallback is used whenever a call ends with the breaker OPEN
"""

import json
import logging
from typing import List

import pytest

from synthcall.errors import CircuitOpenError
from synthcall.resilience import (
    CircuitBreaker,
    CircuitState,
    build_error_context,
    compute_backoff_delay_ms,
    log_structured_error,
    retry_with_backoff,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyOperation:
    """Fails the first `failures` calls, then returns `value`."""

    def __init__(self, failures: int, value: str = "ok"):
        self.failures = failures
        self.value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"failure {self.calls}")
        return self.value


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


async def _fail() -> str:
    raise ConnectionError("service down")


async def _succeed() -> str:
    return "ok"


class TestBackoffDelay:
    def test_doubles_per_attempt(self):
        assert compute_backoff_delay_ms(1, 1000, 10000) == 1000
        assert compute_backoff_delay_ms(2, 1000, 10000) == 2000
        assert compute_backoff_delay_ms(3, 1000, 10000) == 4000

    def test_capped_at_max_delay(self):
        assert compute_backoff_delay_ms(5, 1000, 10000) == 10000
        assert compute_backoff_delay_ms(10, 1000, 10000) == 10000


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        op = FlakyOperation(failures=0)
        sleep = RecordingSleep()

        assert await retry_with_backoff(op, max_attempts=3, sleep=sleep) == "ok"
        assert op.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_succeeds_after_k_failures(self):
        op = FlakyOperation(failures=2, value="done")
        sleep = RecordingSleep()

        result = await retry_with_backoff(op, max_attempts=3, base_delay_ms=1000, max_delay_ms=10000, sleep=sleep)

        assert result == "done"
        assert op.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self):
        op = FlakyOperation(failures=10)
        sleep = RecordingSleep()

        with pytest.raises(ConnectionError, match="failure 3"):
            await retry_with_backoff(op, max_attempts=3, sleep=sleep)

        assert op.calls == 3
        # No sleep after the final attempt
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_delays_are_capped(self):
        op = FlakyOperation(failures=10)
        sleep = RecordingSleep()

        with pytest.raises(ConnectionError):
            await retry_with_backoff(op, max_attempts=5, base_delay_ms=1000, max_delay_ms=3000, sleep=sleep)

        assert sleep.delays == [1.0, 2.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            await retry_with_backoff(_succeed, max_attempts=0)


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_starts_closed_and_passes_results(self):
        breaker = CircuitBreaker("test", failure_threshold=3)

        assert await breaker.execute(_succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_failures_below_threshold_raise(self):
        breaker = CircuitBreaker("test", failure_threshold=3)

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.execute(_fail, fallback=lambda: "fallback")

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 2

    @pytest.mark.asyncio
    async def test_opens_after_exactly_threshold_failures(self):
        breaker = CircuitBreaker("test", failure_threshold=3)

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.execute(_fail)
        assert breaker.state == CircuitState.CLOSED

        with pytest.raises(ConnectionError):
            await breaker.execute(_fail)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_tripping_failure_uses_fallback(self):
        breaker = CircuitBreaker("test", failure_threshold=1)

        assert await breaker.execute(_fail, fallback=lambda: "fallback") == "fallback"
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_fourth_call_short_circuits_without_invoking(self):
        """Three consecutive failures with threshold 3: the 4th call never reaches the operation."""
        breaker = CircuitBreaker("OpenAICompletion", failure_threshold=3, reset_timeout_ms=30000)
        op = FlakyOperation(failures=100)

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.execute(op, fallback=lambda: None)
        assert await breaker.execute(op, fallback=lambda: None) is None
        assert op.calls == 3

        assert await breaker.execute(op, fallback=lambda: "fallback") == "fallback"
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_open_without_fallback_raises_circuit_open(self):
        breaker = CircuitBreaker("test", failure_threshold=1)
        with pytest.raises(ConnectionError):
            await breaker.execute(_fail)

        with pytest.raises(CircuitOpenError):
            await breaker.execute(_succeed)

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=2, reset_timeout_ms=30000, clock=clock)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.execute(_fail)
        assert breaker.state == CircuitState.OPEN

        clock.advance(30.0)
        assert await breaker.execute(_succeed) == "ok"

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0
        assert breaker.opened_until is None

    @pytest.mark.asyncio
    async def test_still_open_before_reset_timeout(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=1, reset_timeout_ms=30000, clock=clock)
        with pytest.raises(ConnectionError):
            await breaker.execute(_fail)

        clock.advance(29.9)
        op = FlakyOperation(failures=0)
        assert await breaker.execute(op, fallback=lambda: "fallback") == "fallback"
        assert op.calls == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens_and_uses_fallback(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=3, reset_timeout_ms=1000, clock=clock)
        for _ in range(3):
            try:
                await breaker.execute(_fail)
            except ConnectionError:
                pass
        assert breaker.state == CircuitState.OPEN

        clock.advance(1.0)
        assert await breaker.execute(_fail, fallback=lambda: "fallback") == "fallback"

        assert breaker.state == CircuitState.OPEN
        assert breaker.opened_until == clock.now + 1.0

    @pytest.mark.asyncio
    async def test_half_open_failure_without_fallback_raises(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=1, reset_timeout_ms=1000, clock=clock)
        with pytest.raises(ConnectionError):
            await breaker.execute(_fail)

        clock.advance(1.0)
        with pytest.raises(ConnectionError):
            await breaker.execute(_fail)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("test", failure_threshold=3)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.execute(_fail)

        await breaker.execute(_succeed)
        assert breaker.consecutive_failures == 0

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.execute(_fail)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_get_state_and_reset(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=1, reset_timeout_ms=5000, clock=clock)
        with pytest.raises(ConnectionError):
            await breaker.execute(_fail)

        state = breaker.get_state()
        assert state["name"] == "test"
        assert state["state"] == "OPEN"
        assert state["failures"] == 1
        assert state["retryInSeconds"] == 5.0

        breaker.reset()
        assert breaker.get_state()["state"] == "CLOSED"
        assert breaker.get_state()["retryInSeconds"] is None

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker("test", failure_threshold=0)


class TestStructuredErrors:
    def test_build_error_context(self):
        context = build_error_context(
            function_name="respond",
            operation="conversation turn",
            conference_sid="CF123",
            additional_context={"role": "agent"},
        )

        assert context["functionName"] == "respond"
        assert context["conferenceSid"] == "CF123"
        assert context["callSid"] is None
        assert context["additionalContext"] == {"role": "agent"}
        assert context["timestamp"].endswith("Z")

    def test_log_structured_error_is_one_json_document(self, caplog):
        with caplog.at_level(logging.ERROR, logger="synthcall.resilience"):
            log_structured_error(ValueError("boom"), build_error_context(operation="test"))

        line = next(r.getMessage() for r in caplog.records if "Structured error" in r.getMessage())
        payload = json.loads(line.split("Structured error: ", 1)[1])
        assert payload["errorType"] == "ValueError"
        assert payload["errorMessage"] == "boom"
        assert payload["context"]["operation"] == "test"
