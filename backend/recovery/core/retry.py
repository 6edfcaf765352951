"""Retry executor with exponential backoff, per-call timeouts and circuit breaking.

Every call to an external collaborator goes through ``RetryExecutor.execute``.
Circuit breakers are shared process-wide per logical downstream ("billing-api",
"notifier") so that they see the aggregate failure rate across all jobs.
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, TypeVar

from recovery.core.config import settings
from recovery.core.errors import CircuitOpenError, TransientDownstreamError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff_delay(
    attempt: int,
    base: float,
    multiplier: float = 2.0,
    cap: float = 3600.0,
    jitter_ratio: float = 0.1,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``attempt + 1`` (``attempt`` counts from 0).

    ``base * multiplier**attempt`` plus up to ``jitter_ratio`` of random jitter,
    capped at ``cap``. With ``multiplier > 1 + jitter_ratio`` the sequence is
    non-decreasing.
    """
    raw = base * (multiplier ** max(attempt, 0))
    jitter = raw * jitter_ratio * rng()
    return min(cap, raw + jitter)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    Opens after ``failure_threshold`` consecutive failures, fails fast for
    ``cooldown_seconds``, then lets exactly one trial call through (half-open).
    The trial's success closes the breaker; its failure reopens it and restarts
    the cooldown.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._trial_started_at = 0.0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def before_call(self) -> None:
        """Reserve permission to call the downstream or raise ``CircuitOpenError``."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - self._opened_at
                if elapsed < self.cooldown_seconds:
                    raise CircuitOpenError(self.name, self.cooldown_seconds - elapsed)
                self._state = CircuitState.HALF_OPEN
                self._start_trial()
                logger.info("Circuit %s half-open, allowing trial call", self.name)
                return
            if self._state == CircuitState.HALF_OPEN:
                # A trial that never reported back frees its slot after one cooldown
                if (
                    self._trial_in_flight
                    and self._clock() - self._trial_started_at < self.cooldown_seconds
                ):
                    raise CircuitOpenError(self.name)
                self._start_trial()

    def release_trial(self) -> None:
        """Give back a trial slot whose call ended without an outcome."""
        with self._lock:
            self._trial_in_flight = False

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit %s closed", self.name)
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._open()
                return
            self._consecutive_failures += 1
            if (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.failure_threshold
            ):
                self._open()

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._trial_in_flight = False

    def _start_trial(self) -> None:
        self._trial_in_flight = True
        self._trial_started_at = self._clock()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.warning(
            "Circuit %s opened after %d consecutive failures",
            self.name,
            self._consecutive_failures,
        )


class CircuitBreakerRegistry:
    """Named breakers, one per downstream, created on first use."""

    def __init__(
        self,
        failure_threshold: int | None = None,
        cooldown_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    failure_threshold=self._failure_threshold or settings.CIRCUIT_FAILURE_THRESHOLD,
                    cooldown_seconds=self._cooldown_seconds or settings.CIRCUIT_COOLDOWN_SECONDS,
                    clock=self._clock,
                )
                self._breakers[name] = breaker
            return breaker

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return {name: b.state.value for name, b in self._breakers.items()}

    def reset(self) -> None:
        with self._lock:
            self._breakers.clear()


# Process-wide breakers shared by every executor
breakers = CircuitBreakerRegistry()


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    timeout: float | None = 10.0
    use_circuit_breaker: bool = False
    circuit_name: str | None = None
    jitter_ratio: float = 0.1

    @classmethod
    def for_downstream(cls, circuit_name: str) -> "RetryPolicy":
        """Default policy for calls to a named collaborator."""
        return cls(
            max_retries=settings.DOWNSTREAM_MAX_RETRIES,
            base_delay=settings.DOWNSTREAM_BASE_DELAY_SECONDS,
            timeout=settings.DOWNSTREAM_TIMEOUT_SECONDS,
            use_circuit_breaker=True,
            circuit_name=circuit_name,
        )

    @classmethod
    def single_attempt(cls, timeout: float | None) -> "RetryPolicy":
        return cls(max_retries=0, timeout=timeout)


class ResolvedBy(str, Enum):
    """Which mechanism produced the final outcome of an execution."""

    OPERATION = "operation"
    RETRY = "retry"
    CIRCUIT_BREAKER = "circuit_breaker"
    TIMEOUT = "timeout"


@dataclass
class RetryResult:
    success: bool
    attempts: int
    elapsed: float
    resolved_by: ResolvedBy
    value: Any = None
    error: BaseException | None = None

    def unwrap(self) -> Any:
        """Return the operation's value, or raise the error that ended the execution."""
        if self.success:
            return self.value
        if self.error is None:
            raise RuntimeError("Failed execution recorded no error")
        raise self.error


class RetryExecutor:
    """Runs async operations under a ``RetryPolicy``.

    Never raises for operation failures; the outcome is described by the
    returned ``RetryResult``.
    """

    def __init__(
        self,
        registry: CircuitBreakerRegistry | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        self.registry = registry if registry is not None else breakers
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
    ) -> RetryResult:
        started = self._clock()
        breaker: CircuitBreaker | None = None
        if policy.use_circuit_breaker:
            breaker = self.registry.get(policy.circuit_name or "default")

        attempts = 0
        last_error: BaseException | None = None
        timed_out = False

        for retry_index in range(policy.max_retries + 1):
            if breaker is not None:
                try:
                    breaker.before_call()
                except CircuitOpenError as exc:
                    return RetryResult(
                        success=False,
                        attempts=attempts,
                        elapsed=self._clock() - started,
                        resolved_by=ResolvedBy.CIRCUIT_BREAKER,
                        error=exc,
                    )

            attempts += 1
            timed_out = False
            try:
                if policy.timeout is not None:
                    value = await asyncio.wait_for(operation(), timeout=policy.timeout)
                else:
                    value = await operation()
            except TimeoutError:
                timed_out = True
                last_error = TransientDownstreamError(
                    f"Operation timed out after {policy.timeout}s",
                    downstream=policy.circuit_name,
                )
            except Exception as exc:
                last_error = exc
                if not is_retryable(exc):
                    # The downstream answered; a rejected request says nothing about its health.
                    if breaker is not None:
                        breaker.record_success()
                    return RetryResult(
                        success=False,
                        attempts=attempts,
                        elapsed=self._clock() - started,
                        resolved_by=ResolvedBy.OPERATION,
                        error=exc,
                    )
            except BaseException:
                # Cancelled mid-call: the downstream gave no answer either way
                if breaker is not None:
                    breaker.release_trial()
                raise
            else:
                if breaker is not None:
                    breaker.record_success()
                return RetryResult(
                    success=True,
                    attempts=attempts,
                    elapsed=self._clock() - started,
                    resolved_by=ResolvedBy.RETRY if attempts > 1 else ResolvedBy.OPERATION,
                    value=value,
                )

            if breaker is not None:
                breaker.record_failure()

            if retry_index < policy.max_retries:
                delay = compute_backoff_delay(
                    retry_index,
                    base=policy.base_delay,
                    multiplier=policy.backoff_multiplier,
                    cap=policy.max_delay,
                    jitter_ratio=policy.jitter_ratio,
                    rng=self._rng,
                )
                logger.warning(
                    "Attempt %d/%d failed (%s); retrying in %.2fs",
                    attempts,
                    policy.max_retries + 1,
                    last_error,
                    delay,
                )
                await self._sleep(delay)

        if timed_out:
            resolved_by = ResolvedBy.TIMEOUT
        elif attempts > 1:
            resolved_by = ResolvedBy.RETRY
        else:
            resolved_by = ResolvedBy.OPERATION
        return RetryResult(
            success=False,
            attempts=attempts,
            elapsed=self._clock() - started,
            resolved_by=resolved_by,
            error=last_error,
        )
