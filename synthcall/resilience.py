"""
Resilience primitives for calls to external services.

- retry_with_backoff(): exponential backoff, no jitter
- CircuitBreaker: CLOSED -> OPEN -> HALF_OPEN state machine, per process
- build_error_context() / log_structured_error(): one JSON document per failure

Breakers wrap individual external calls (completion service, transcript
creation). They never wrap the turn loop itself.

Python 3.9 compatible - uses typing.Dict, typing.Optional
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .errors import CircuitOpenError, error_details

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def compute_backoff_delay_ms(attempt: int, base_delay_ms: int, max_delay_ms: int) -> int:
    """Delay before retrying after the given (1-based) failed attempt."""
    return min(base_delay_ms * (2 ** (attempt - 1)), max_delay_ms)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay_ms: int = 1000,
    max_delay_ms: int = 10000,
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run operation, retrying failures with exponential backoff.

    Sleeps min(base_delay_ms * 2^(attempt-1), max_delay_ms) between attempts.
    After max_attempts failures the last exception is re-raised unchanged.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_attempts: Total attempts including the first
        base_delay_ms: Delay after the first failure
        max_delay_ms: Upper bound on any single delay
        operation_name: Used in log lines only
        sleep: Awaitable sleep (injected by tests)
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            logger.debug(f"Attempting {operation_name} (attempt {attempt}/{max_attempts})")
            result = await operation()
            if attempt > 1:
                logger.info(f"{operation_name} succeeded on attempt {attempt}")
            return result
        except Exception as e:
            last_error = e

            if attempt == max_attempts:
                logger.error(
                    f"METRIC retry_exhausted operation={operation_name!r} attempts={max_attempts} "
                    + json.dumps({**error_details(e), "timestamp": utc_now_iso()})
                )
                raise

            delay_ms = compute_backoff_delay_ms(attempt, base_delay_ms, max_delay_ms)
            logger.warning(
                f"{operation_name} failed on attempt {attempt}/{max_attempts}, "
                f"retrying in {delay_ms}ms: {type(e).__name__}: {e}"
            )
            await sleep(delay_ms / 1000.0)

    # Unreachable: the loop either returns or raises
    assert last_error is not None
    raise last_error


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Per-operation circuit breaker.

    State lives in process memory; each running instance tracks failures
    independently.

    Fallback rule: whenever a call finishes with the breaker OPEN (rejected
    while open, the failure that trips it, or a failed HALF_OPEN probe) the
    fallback is returned if one was supplied, otherwise the error is raised.
    Failures below the threshold always raise.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_until: Optional[float] = None
        self._probe_in_flight = False

    def _trip(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_until = self._clock() + self.reset_timeout_ms / 1000.0
        logger.error(
            f"METRIC circuit_open name={self.name} failures={self.consecutive_failures} "
            f"reset_timeout_ms={self.reset_timeout_ms}"
        )

    def _reject(self, fallback: Optional[Callable[[], Any]]) -> Any:
        if fallback is not None:
            logger.warning(f"Circuit breaker OPEN for {self.name} - using fallback")
            return fallback()
        raise CircuitOpenError(self.name)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Optional[Callable[[], Any]] = None,
    ) -> Any:
        """Run operation through the breaker.

        Args:
            operation: Zero-argument coroutine factory
            fallback: Optional zero-argument callable returning the degraded result

        Raises:
            CircuitOpenError: Rejected while OPEN and no fallback supplied
            Exception: The operation's own error when no fallback applies
        """
        if self.state == CircuitState.OPEN:
            if self.opened_until is not None and self._clock() < self.opened_until:
                return self._reject(fallback)
            self.state = CircuitState.HALF_OPEN
            logger.info(f"Circuit breaker HALF_OPEN for {self.name} - testing service")

        is_probe = self.state == CircuitState.HALF_OPEN
        if is_probe:
            if self._probe_in_flight:
                return self._reject(fallback)
            self._probe_in_flight = True

        try:
            result = await operation()
        except Exception:
            self.consecutive_failures += 1
            logger.warning(
                f"Circuit breaker failure {self.consecutive_failures}/{self.failure_threshold} for {self.name}"
            )
            if is_probe or self.consecutive_failures >= self.failure_threshold:
                self._trip()
            if self.state == CircuitState.OPEN and fallback is not None:
                logger.warning(f"Using fallback for {self.name}")
                return fallback()
            raise
        finally:
            if is_probe:
                self._probe_in_flight = False

        if is_probe:
            logger.info(f"METRIC circuit_closed name={self.name} - service recovered")
        self.consecutive_failures = 0
        self.state = CircuitState.CLOSED
        self.opened_until = None
        return result

    def get_state(self) -> Dict[str, Any]:
        retry_in = None
        if self.state == CircuitState.OPEN and self.opened_until is not None:
            retry_in = max(0.0, round(self.opened_until - self._clock(), 3))
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self.consecutive_failures,
            "failureThreshold": self.failure_threshold,
            "retryInSeconds": retry_in,
        }

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_until = None
        self._probe_in_flight = False


def build_error_context(
    function_name: Optional[str] = None,
    operation: Optional[str] = None,
    conference_sid: Optional[str] = None,
    call_sid: Optional[str] = None,
    recording_sid: Optional[str] = None,
    transcription_sid: Optional[str] = None,
    additional_context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build the context block attached to structured error logs."""
    return {
        "timestamp": utc_now_iso(),
        "functionName": function_name,
        "operation": operation,
        "conferenceSid": conference_sid,
        "callSid": call_sid,
        "recordingSid": recording_sid,
        "transcriptionSid": transcription_sid,
        "additionalContext": additional_context or {},
    }


def log_structured_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
    """Log an error and its context as a single JSON document."""
    payload = {**error_details(error), "context": context or {}, "timestamp": utc_now_iso()}
    logger.error(f"Structured error: {json.dumps(payload, default=str)}", exc_info=error)
