"""Retry with exponential backoff and per-dependency circuit breakers.

Every call the billing engine makes to the local store or to the payment
processor goes through one of the wrappers at the bottom of this module.
"""

import asyncio
import errno
import logging
import math
import random
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy import exc as sa_exc

from voicebilling.core.config import settings
from voicebilling.core.errors import (
    BillingError,
    CircuitOpenError,
    ExternalServiceError,
    PersistenceError,
)
from voicebilling.core.logging import log_info, log_warning
from voicebilling.core.metrics import CIRCUIT_BREAKER_STATE, RETRY_ATTEMPTS_TOTAL

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]

# Transient socket/DNS failures
RETRYABLE_ERROR_CODES = frozenset({
    "ECONNRESET",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "ENOTFOUND",
    "EAI_AGAIN",
})

RETRYABLE_MESSAGE_PATTERNS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "temporary",
    "unavailable",
    "rate limit",
    "too many requests",
)


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        backoff_multiplier: float = 2.0,
        retryable_status_codes: Iterable[int] = (408, 429, 500, 502, 503, 504),
        retryable_codes: Iterable[str] = RETRYABLE_ERROR_CODES,
        retryable_exceptions: tuple[type[BaseException], ...] = (ConnectionError, TimeoutError),
        jitter: float = 0.1,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.retryable_status_codes = frozenset(retryable_status_codes)
        self.retryable_codes = frozenset(retryable_codes)
        self.retryable_exceptions = retryable_exceptions
        self.jitter = jitter

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt using exponential backoff.

        Args:
            attempt: The current attempt number (1-indexed).

        Returns:
            The delay in seconds before jitter, capped at max_delay.
        """
        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)

    def jittered_delay(self, attempt: int) -> float:
        """Backoff delay with +/- jitter applied."""
        delay = self.calculate_delay(attempt)
        if self.jitter <= 0:
            return delay
        return max(0.0, delay * (1 + random.uniform(-self.jitter, self.jitter)))


RETRY_CONFIGS = {
    "database": RetryConfig(
        max_attempts=3,
        initial_delay=0.1,
        max_delay=2.0,
        backoff_multiplier=2,
        retryable_status_codes=(502, 503, 504),
        retryable_exceptions=(
            ConnectionError,
            TimeoutError,
            sa_exc.OperationalError,
            sa_exc.InterfaceError,
            sa_exc.DisconnectionError,
        ),
    ),
    "external_service": RetryConfig(
        max_attempts=3,
        initial_delay=0.5,
        max_delay=5.0,
        backoff_multiplier=2,
        retryable_status_codes=(408, 429, 500, 502, 503, 504),
    ),
    "billing": RetryConfig(
        max_attempts=5,
        initial_delay=1.0,
        max_delay=10.0,
        backoff_multiplier=2,
        retryable_status_codes=(429, 500, 502, 503, 504),
    ),
}


def _status_of(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "http_status", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def _code_of(error: BaseException) -> Optional[str]:
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code.upper()
    if isinstance(error, OSError) and error.errno is not None:
        return errno.errorcode.get(error.errno)
    return None


def is_retryable_error(error: BaseException, config: RetryConfig) -> bool:
    """Decide whether a failed call is worth retrying under ``config``.

    A definitive client error (4xx outside the config's retryable status
    table) is never retried, whatever its message says.
    """
    if isinstance(error, BillingError):
        return error.retryable

    status = _status_of(error)
    if status is not None:
        if status in config.retryable_status_codes:
            return True
        if 400 <= status < 500:
            return False

    code = _code_of(error)
    if code and code in config.retryable_codes:
        return True

    if isinstance(error, config.retryable_exceptions):
        return True

    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_MESSAGE_PATTERNS)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    operation_name: str = "operation",
    sleep: SleepFunc = asyncio.sleep,
    service: str = "external",
) -> T:
    """Run ``operation`` until it succeeds or the retry policy is exhausted.

    Non-retryable errors are re-raised unchanged on the first occurrence.

    Raises:
        ExternalServiceError: After ``config.max_attempts`` retryable failures.
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if not is_retryable_error(e, config):
                raise
            if attempt >= config.max_attempts:
                break

            delay = config.jittered_delay(attempt)
            RETRY_ATTEMPTS_TOTAL.labels(operation=operation_name).inc()
            log_warning(
                logger,
                f"{operation_name} failed (attempt {attempt}/{config.max_attempts}), "
                f"retrying in {delay:.2f}s: {e}",
                operation=operation_name,
                attempt=attempt,
            )
            await sleep(delay)

    raise ExternalServiceError(
        f"{operation_name} failed after {config.max_attempts} attempts: {last_error}",
        service=service,
        attempts=config.max_attempts,
        context={"operation": operation_name},
    ) from last_error


# ==================== Circuit Breaker ====================

class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


def is_dependency_failure(error: BaseException) -> bool:
    """Whether an error says the dependency itself is unhealthy.

    Client errors such as a 400 for a bad request mean the dependency
    answered, so they do not count against the breaker.
    """
    if isinstance(error, ExternalServiceError):
        return True
    if isinstance(error, BillingError):
        return False
    status = _status_of(error)
    if status is not None and 400 <= status < 500 and status not in (408, 429):
        return False
    return True


class CircuitBreaker:
    """Stops calling a failing dependency until it has likely recovered.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures. OPEN
    rejects every call without invoking it until ``recovery_time`` seconds
    have elapsed on ``clock``, then HALF_OPEN lets exactly one trial call
    through. A successful trial closes the circuit, a failed one re-opens
    it and restarts the recovery clock.
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_time: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        is_failure: Callable[[BaseException], bool] = is_dependency_failure,
    ):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_time = recovery_time
        self._clock = clock
        self._is_failure = is_failure
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._publish_state()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh_state()
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _refresh_state(self) -> None:
        # Caller holds the lock
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.recovery_time
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            self._publish_state()
            log_info(logger, f"Circuit breaker for {self.service_name} is HALF_OPEN")

    def _publish_state(self) -> None:
        CIRCUIT_BREAKER_STATE.labels(service=self.service_name).set(
            _STATE_GAUGE_VALUES[self._state]
        )

    def _before_call(self) -> None:
        with self._lock:
            self._refresh_state()
            if self._state == CircuitState.OPEN:
                raise CircuitOpenError(self.service_name)
            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.service_name)
                self._trial_in_flight = True

    def _on_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                log_info(logger, f"Circuit breaker for {self.service_name} is CLOSED")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._trial_in_flight = False
            self._publish_state()

    def _on_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._trial_in_flight = False
            if (
                self._state == CircuitState.HALF_OPEN
                or self._failure_count >= self.failure_threshold
            ):
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                self._publish_state()
                log_warning(
                    logger,
                    f"Circuit breaker for {self.service_name} is OPEN "
                    f"after {self._failure_count} failures",
                    service=self.service_name,
                )

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Invoke ``operation`` through the breaker.

        Raises:
            CircuitOpenError: The circuit is open, or a half-open trial is
                already in flight. ``operation`` is not invoked.
        """
        self._before_call()
        try:
            result = await operation()
        except Exception as e:
            if self._is_failure(e):
                self._on_failure()
            else:
                # The dependency answered; only the request was rejected
                self._on_success()
            raise
        except BaseException:
            with self._lock:
                self._trial_in_flight = False
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._trial_in_flight = False
            self._publish_state()

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            self._refresh_state()
            retry_in = None
            if self._state == CircuitState.OPEN and self._opened_at is not None:
                retry_in = max(0.0, self.recovery_time - (self._clock() - self._opened_at))
            return {
                "service": self.service_name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "recovery_time": self.recovery_time,
                "seconds_until_half_open": retry_in,
            }


class CircuitBreakerRegistry:
    """Process-wide circuit breakers keyed by dependency name."""

    def __init__(self):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_breaker(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_time: float = 60.0,
        **kwargs: Any,
    ) -> CircuitBreaker:
        """Return the breaker for ``service_name``, creating it on first use."""
        with self._lock:
            breaker = self._breakers.get(service_name)
            if breaker is None:
                breaker = CircuitBreaker(
                    service_name,
                    failure_threshold=failure_threshold,
                    recovery_time=recovery_time,
                    **kwargs,
                )
                self._breakers[service_name] = breaker
            return breaker

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.service_name: b.get_status() for b in breakers}

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()

    def clear(self) -> None:
        with self._lock:
            self._breakers.clear()


circuit_breakers = CircuitBreakerRegistry()


def get_resilience_health(registry: CircuitBreakerRegistry = circuit_breakers) -> dict[str, Any]:
    """Summarize breaker states for status endpoints."""
    statuses = registry.get_all_status()
    open_circuits = [
        name for name, status in statuses.items()
        if status["state"] == CircuitState.OPEN.value
    ]
    return {
        "healthy": not open_circuits,
        "open_circuits": open_circuits,
        "circuit_breakers": statuses,
    }


# ==================== Call Wrappers ====================

async def with_database_retry(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    sleep: SleepFunc = asyncio.sleep,
) -> T:
    """Short retry policy for the local store.

    Raises:
        PersistenceError: Any store failure that survives the policy.
    """
    try:
        return await with_retry(
            operation,
            RETRY_CONFIGS["database"],
            operation_name,
            sleep=sleep,
            service="database",
        )
    except BillingError as e:
        if isinstance(e, ExternalServiceError) and e.service == "database":
            raise PersistenceError(
                f"{operation_name} failed: {e.message}",
                {"operation": operation_name, "attempts": e.attempts},
            ) from e
        raise
    except Exception as e:
        raise PersistenceError(
            f"{operation_name} failed: {e}",
            {"operation": operation_name},
        ) from e


async def with_external_service_resilience(
    operation: Callable[[], Awaitable[T]],
    service_name: str,
    operation_name: str,
    sleep: SleepFunc = asyncio.sleep,
    registry: CircuitBreakerRegistry = circuit_breakers,
) -> T:
    """Moderate retry policy behind the breaker named ``service_name``."""
    breaker = registry.get_breaker(service_name)
    return await breaker.call(
        lambda: with_retry(
            operation,
            RETRY_CONFIGS["external_service"],
            operation_name,
            sleep=sleep,
            service=service_name,
        )
    )


async def with_billing_resilience(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    sleep: SleepFunc = asyncio.sleep,
    registry: CircuitBreakerRegistry = circuit_breakers,
) -> T:
    """Payment processor calls: billing retry preset behind the "stripe" breaker."""
    breaker = registry.get_breaker(
        "stripe",
        failure_threshold=settings.STRIPE_CIRCUIT_FAILURE_THRESHOLD,
        recovery_time=settings.STRIPE_CIRCUIT_RECOVERY_SECONDS,
    )
    return await breaker.call(
        lambda: with_retry(
            operation,
            RETRY_CONFIGS["billing"],
            operation_name,
            sleep=sleep,
            service="stripe",
        )
    )
