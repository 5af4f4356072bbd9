"""Resilience patterns for memory server calls.

Implements a retry policy with linear backoff and error classification,
plus a circuit breaker with a probe latch. The breaker wraps the whole
retried operation: exhausting the retries counts as one breaker failure.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    List,
    Optional,
    TypeVar,
)

from .config import get_settings
from .exceptions import BreakerOpenError

logger = logging.getLogger("memory_client.resilience")

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
SleepFn = Callable[[float], Awaitable[Any]]
ClockFn = Callable[[], float]

# Client-request errors: retrying cannot help
NON_RETRYABLE_STATUS: FrozenSet[int] = frozenset({400, 401, 403})


# =============================================================================
# Retry Policy
# =============================================================================


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        base_delay_ms: Delay unit in milliseconds; attempt k waits base * k.
        max_delay_ms: Cap on a single delay in milliseconds.
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        """Create RetryConfig from application settings."""
        settings = get_settings()
        return cls(
            max_attempts=settings.resilience.retry_max_attempts,
            base_delay_ms=settings.resilience.retry_base_delay_ms,
            max_delay_ms=settings.resilience.retry_max_delay_ms,
        )


@dataclass
class RetryAttempt:
    """Record of one attempt made by ``RetryPolicy.execute``.

    Attributes:
        attempt: 1-based attempt index.
        delay_s: Delay slept before this attempt.
        error: The error the attempt failed with, if any.
        terminal: True if this attempt's error was propagated.
    """

    attempt: int
    delay_s: float
    error: Optional[BaseException] = None
    terminal: bool = False


def calculate_backoff_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate the delay before ``attempt`` (1-based).

    Formula: min(base * attempt, max). Attempt 1 runs immediately.

    The growth is linear in the attempt index, not exponential.

    Args:
        attempt: Index of the attempt about to run.
        config: Retry configuration.

    Returns:
        Delay in seconds.
    """
    if attempt <= 1:
        return 0.0
    linear_delay = config.base_delay_ms * attempt
    capped_delay = min(linear_delay, config.max_delay_ms)
    return capped_delay / 1000.0


def is_retryable(error: BaseException) -> bool:
    """Classify an attempt failure.

    Client-request errors (HTTP 400/401/403 semantics) and open-circuit
    rejections are terminal. Everything else (timeouts, 5xx, network and
    decode errors) is worth another attempt.
    """
    if isinstance(error, BreakerOpenError):
        return False
    status = getattr(error, "http_status", None)
    return status not in NON_RETRYABLE_STATUS


class RetryPolicy:
    """Runs one logical operation with up to ``max_attempts`` attempts.

    Usage:
        policy = RetryPolicy(RetryConfig(max_attempts=3, base_delay_ms=1000))
        result = await policy.execute(lambda: fetch_facts(user_id))
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.config = config or RetryConfig.from_settings()
        self._sleep = sleep

    async def execute(
        self,
        operation: Operation[T],
        label: str = "operation",
        history: Optional[List[RetryAttempt]] = None,
    ) -> T:
        """Execute ``operation`` with retry.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt.
            label: Name used in log records.
            history: Optional list that receives a ``RetryAttempt`` per attempt.

        Returns:
            Result of the first successful attempt.

        Raises:
            Exception: The first non-retryable error, or the last error once
                all attempts are exhausted.
        """
        max_attempts = self.config.max_attempts

        for attempt in range(1, max_attempts + 1):
            delay = calculate_backoff_delay(attempt, self.config)
            if delay > 0:
                await self._sleep(delay)

            try:
                result = await operation()
            except Exception as e:
                retryable = is_retryable(e)
                exhausted = attempt >= max_attempts
                if history is not None:
                    history.append(
                        RetryAttempt(
                            attempt=attempt,
                            delay_s=delay,
                            error=e,
                            terminal=not retryable or exhausted,
                        )
                    )

                if not retryable:
                    logger.warning(
                        f"Non-retryable error in {label}: {type(e).__name__}",
                        extra={"attempt": attempt, "http_status": getattr(e, "http_status", None)},
                    )
                    raise

                if exhausted:
                    logger.error(
                        f"All {max_attempts} attempts exhausted for {label}. "
                        f"Last error: {type(e).__name__}: {e}"
                    )
                    raise

                logger.warning(
                    f"Attempt {attempt}/{max_attempts} of {label} failed: "
                    f"{type(e).__name__}: {e}. Retrying in "
                    f"{calculate_backoff_delay(attempt + 1, self.config):.3f}s..."
                )
                continue

            if history is not None:
                history.append(RetryAttempt(attempt=attempt, delay_s=delay))
            return result

        # max_attempts >= 1 is enforced by settings validation
        raise RuntimeError("Retry logic error: no attempts made")


# =============================================================================
# Circuit Breaker Pattern with Probe Latch
# =============================================================================


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests pass through
    OPEN = "open"  # Failure threshold reached, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered (probe latch active)


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior.

    Attributes:
        failure_threshold: Consecutive failures before opening circuit.
        recovery_timeout_s: Seconds to wait before letting a probe through.
    """

    failure_threshold: int = 5
    recovery_timeout_s: float = 30.0

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        """Create CircuitBreakerConfig from application settings."""
        settings = get_settings()
        return cls(
            failure_threshold=settings.resilience.circuit_breaker_failure_threshold,
            recovery_timeout_s=settings.resilience.circuit_breaker_recovery_timeout_s,
        )


class CircuitBreaker:
    """Circuit breaker with Probe Latch mechanism.

    In HALF_OPEN state, only ONE request is allowed through to probe
    whether the service has recovered. All other requests are rejected
    until the probe succeeds or fails.

    States:
    - CLOSED: Normal operation. Failures increment counter.
    - OPEN: Service considered down. Requests fail immediately.
    - HALF_OPEN: Testing recovery. Only probe request allowed.

    The failure counter is shared by every operation routed through the
    breaker; one failing operation type can open it for all of them.

    Usage:
        breaker = CircuitBreaker("memory-server")
        result = await breaker.execute(lambda: policy.execute(call))
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: ClockFn = time.monotonic,
    ):
        """Initialize circuit breaker.

        Args:
            name: Identifier for this circuit (for logging).
            config: Circuit breaker configuration.
            clock: Monotonic time source in seconds.
        """
        self.name = name
        self.config = config or CircuitBreakerConfig.from_settings()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state (read-only, no transitions)."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> Optional[float]:
        return self._last_failure_time

    def _retry_after(self) -> float:
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return 0.0
        elapsed = self._clock() - self._last_failure_time
        return max(0.0, self.config.recovery_timeout_s - elapsed)

    async def allow_request(self) -> bool:
        """Check if a request should be allowed through.

        Uses Probe Latch mechanism in HALF_OPEN state:
        - Only ONE request (the probe) is allowed through
        - All other requests are rejected until probe completes

        Returns:
            True if request can proceed, False if blocked.
        """
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._last_failure_time is None:
                    return False

                elapsed = self._clock() - self._last_failure_time
                if elapsed >= self.config.recovery_timeout_s:
                    logger.info(
                        f"Circuit '{self.name}' transitioning OPEN -> HALF_OPEN "
                        f"after {elapsed:.1f}s"
                    )
                    self._state = CircuitState.HALF_OPEN
                    self._probe_in_flight = False
                else:
                    return False

            # HALF_OPEN state: Probe Latch mechanism
            if self._probe_in_flight:
                logger.debug(
                    f"Circuit '{self.name}' rejecting request: probe already in flight"
                )
                return False

            self._probe_in_flight = True
            logger.debug(f"Circuit '{self.name}' allowing probe request")
            return True

    async def record_success(self) -> None:
        """Record a successful operation."""
        async with self._lock:
            self._failure_count = 0
            self._probe_in_flight = False

            if self._state != CircuitState.CLOSED:
                logger.info(
                    f"Circuit '{self.name}' transitioning {self._state.name} -> CLOSED "
                    f"(service recovered)"
                )
                self._state = CircuitState.CLOSED

    async def record_failure(self) -> None:
        """Record a failed operation."""
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            self._probe_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit '{self.name}' transitioning HALF_OPEN -> OPEN "
                    f"(probe failed, service still unhealthy)"
                )
                self._state = CircuitState.OPEN
            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.config.failure_threshold:
                    logger.warning(
                        f"Circuit '{self.name}' transitioning CLOSED -> OPEN "
                        f"after {self._failure_count} consecutive failures"
                    )
                    self._state = CircuitState.OPEN

    async def execute(self, operation: Operation[T]) -> T:
        """Run ``operation`` under the breaker.

        Raises:
            BreakerOpenError: If the circuit rejects the call; the
                operation is not invoked.
            Exception: Whatever the operation raised (recorded as a failure).
        """
        if not await self.allow_request():
            raise BreakerOpenError(self.name, self._failure_count, self._retry_after())

        try:
            result = await operation()
        except asyncio.CancelledError:
            # Cancelled calls say nothing about server health; free the latch.
            self._probe_in_flight = False
            raise
        except Exception:
            await self.record_failure()
            raise

        await self.record_success()
        return result

    async def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        async with self._lock:
            logger.info(f"Circuit '{self.name}' manually reset to CLOSED")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._probe_in_flight = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "circuit_breaker": self._state.value,
            "failure_count": self._failure_count,
            "retry_after_s": round(self._retry_after(), 3),
        }
