"""
Retry engine with exponential backoff and jitter.

Failures are classified before each decision: non-retryable categories
stop immediately, and so does an open circuit for the same resource
unless the strategy explicitly opts out of circuit gating.
"""

from __future__ import annotations

import asyncio
import os
import random
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from clinic_resilience.errors import (
    ErrorCategory,
    OperationCancelledError,
    classify,
)
from clinic_resilience.telemetry import ResilienceLogger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from clinic_resilience.resilience.registry import ResourceRegistry

T = TypeVar("T")


@dataclass(frozen=True)
class RetryStrategy:
    """Backoff parameters for one retried operation.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay_ms: Delay before the second attempt
        max_delay_ms: Upper bound for the computed delay
        backoff_multiplier: Growth factor per attempt
        jitter_fraction: Delay is perturbed by +/- ``delay * jitter_fraction``
        respect_circuit_breaker: Stop retrying when the resource's circuit
            is open. Only the ``critical`` preset turns this off.
        name: Preset name, for logs
    """

    max_attempts: int = 3
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 15000.0
    backoff_multiplier: float = 2.0
    jitter_fraction: float = 0.1
    respect_circuit_breaker: bool = True
    name: str = "custom"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0 <= self.jitter_fraction <= 1:
            raise ValueError("jitter_fraction must be between 0 and 1")

    @classmethod
    def fast(cls) -> RetryStrategy:
        """Quick interactive reads."""
        return cls(2, 500.0, 5000.0, 2.0, name="fast")

    @classmethod
    def standard(cls) -> RetryStrategy:
        """Default for most queries."""
        return cls(3, 1000.0, 15000.0, 2.0, name="standard")

    @classmethod
    def patient(cls) -> RetryStrategy:
        """Background loads that can wait."""
        return cls(5, 2000.0, 30000.0, 1.5, name="patient")

    @classmethod
    def critical(cls) -> RetryStrategy:
        """Must-attempt operations such as authentication.

        Ignores circuit gating so the call is never silently blocked.
        """
        return cls(3, 1000.0, 10000.0, 2.0, respect_circuit_breaker=False, name="critical")

    @classmethod
    def preset(cls, name: str) -> RetryStrategy:
        """Look up a named preset.

        Raises:
            ValueError: If the name is unknown
        """
        factory = RETRY_PRESETS.get(name)
        if factory is None:
            raise ValueError(f"Unknown retry strategy: {name!r}")
        return factory()

    @classmethod
    def from_env(cls) -> RetryStrategy:
        """Create the standard strategy overridden by environment variables."""
        base = cls.standard()
        return cls(
            max_attempts=int(
                os.getenv("CLINIC_RESILIENCE_RETRY_MAX_ATTEMPTS", str(base.max_attempts))
            ),
            base_delay_ms=float(
                os.getenv("CLINIC_RESILIENCE_RETRY_BASE_DELAY_MS", str(base.base_delay_ms))
            ),
            max_delay_ms=float(
                os.getenv("CLINIC_RESILIENCE_RETRY_MAX_DELAY_MS", str(base.max_delay_ms))
            ),
            backoff_multiplier=base.backoff_multiplier,
            jitter_fraction=base.jitter_fraction,
            name="standard",
        )


RETRY_PRESETS: dict[str, Callable[[], RetryStrategy]] = {
    "fast": RetryStrategy.fast,
    "standard": RetryStrategy.standard,
    "patient": RetryStrategy.patient,
    "critical": RetryStrategy.critical,
}


class StopReason(str, Enum):
    """Why a retry loop ended."""

    SUCCESS = "success"
    NON_RETRYABLE = "non_retryable"
    CIRCUIT_OPEN = "circuit_open"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass
class RetryAttempt:
    """One attempt of a retried operation.

    Attributes:
        attempt_number: 1-based attempt index
        delay_ms: Delay slept before this attempt (0 for the first)
        timestamp: When the attempt started
        error: Error raised by the attempt, None on success
        category: Classified category of ``error``
    """

    attempt_number: int
    delay_ms: float
    timestamp: float
    error: BaseException | None = None
    category: ErrorCategory | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class RetryOutcome:
    """Result of ``execute_with_retry``.

    Attributes:
        success: Whether an attempt succeeded
        data: The result value (if success)
        error: The last error (if failed)
        category: Category of the last error
        attempts: Every attempt made, in order
        total_duration_ms: Wall time including delays
        total_delay_ms: Time spent sleeping between attempts
        stop_reason: Why the loop ended
    """

    success: bool
    data: Any = None
    error: BaseException | None = None
    category: ErrorCategory | None = None
    attempts: list[RetryAttempt] = field(default_factory=list)
    total_duration_ms: float = 0.0
    total_delay_ms: float = 0.0
    stop_reason: StopReason = StopReason.SUCCESS

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)

    @property
    def cancelled(self) -> bool:
        return self.stop_reason == StopReason.CANCELLED

    def unwrap(self) -> Any:
        """Return the data, or raise the last error."""
        if self.success:
            return self.data
        if self.error is None:
            raise RuntimeError("Retry failed without an error")
        raise self.error


@dataclass
class RetryStats:
    """Counters across all retried operations."""

    total_operations: int = 0
    total_attempts: int = 0
    total_retries: int = 0
    successful_retries: int = 0
    failed_operations: int = 0
    cancelled_operations: int = 0
    active_retries: int = 0
    errors_by_type: dict[str, int] = field(default_factory=dict)

    @property
    def average_attempts(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.total_attempts / self.total_operations

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_operations": self.total_operations,
            "total_attempts": self.total_attempts,
            "total_retries": self.total_retries,
            "successful_retries": self.successful_retries,
            "failed_operations": self.failed_operations,
            "cancelled_operations": self.cancelled_operations,
            "active_retries": self.active_retries,
            "average_attempts": self.average_attempts,
            "errors_by_type": dict(self.errors_by_type),
        }


class RetryEngine:
    """Executes operations with classified, circuit-aware retries.

    Example:
        >>> engine = RetryEngine(registry=registry)
        >>> outcome = await engine.execute_with_retry(
        ...     fetch_appointments, "standard", resource_key="appointments"
        ... )
        >>> if outcome.success:
        ...     print(outcome.data)
        ... else:
        ...     print(f"Failed after {outcome.total_attempts} attempts")
    """

    def __init__(
        self,
        registry: ResourceRegistry | None = None,
        logger: ResilienceLogger | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
        history_size: int = 50,
    ) -> None:
        """Initialize retry engine.

        Args:
            registry: Registry used to find the breaker for a resource key
            logger: Structured logger
            clock: Time source (seconds)
            sleep: Async sleep used between attempts (seconds)
            rng: Random source for jitter
            history_size: Attempts kept per resource key
        """
        self._registry = registry
        self._logger = logger or ResilienceLogger()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._stats = RetryStats()
        self._history: dict[str, deque[RetryAttempt]] = defaultdict(
            lambda: deque(maxlen=history_size)
        )
        self._shared: dict[str, asyncio.Task[RetryOutcome]] = {}

    def calculate_delay(self, attempt: int, strategy: RetryStrategy) -> float:
        """Calculate the delay that follows a failed attempt.

        Args:
            attempt: The failed attempt number (1-based)
            strategy: Backoff parameters

        Returns:
            Delay in milliseconds
        """
        delay = min(
            strategy.max_delay_ms,
            strategy.base_delay_ms * strategy.backoff_multiplier ** (attempt - 1),
        )
        jitter = delay * strategy.jitter_fraction * self._rng.uniform(-1.0, 1.0)
        return max(0.0, delay + jitter)

    def _circuit_open(self, resource_key: str | None) -> bool:
        if self._registry is None or resource_key is None:
            return False
        breaker = self._registry.find(resource_key)
        return breaker is not None and breaker.is_open

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        strategy: RetryStrategy | str = "standard",
        resource_key: str | None = None,
        operation_id: str | None = None,
    ) -> RetryOutcome:
        """Execute an operation with retry.

        Args:
            operation: Zero-argument async operation
            strategy: Strategy or preset name
            resource_key: Resource whose circuit gates retries
            operation_id: Concurrent calls with the same id share one loop

        Returns:
            RetryOutcome with every attempt recorded
        """
        if isinstance(strategy, str):
            strategy = RetryStrategy.preset(strategy)

        if operation_id is None:
            return await self._run(operation, strategy, resource_key)

        task = self._shared.get(operation_id)
        if task is None:
            task = asyncio.ensure_future(self._run(operation, strategy, resource_key))
            self._shared[operation_id] = task
            task.add_done_callback(lambda _: self._shared.pop(operation_id, None))
        else:
            self._logger.debug("retry", "Joining in-flight retry", operation_id=operation_id)
        return await asyncio.shield(task)

    async def _run(
        self,
        operation: Callable[[], Awaitable[T]],
        strategy: RetryStrategy,
        resource_key: str | None,
    ) -> RetryOutcome:
        started = self._clock()
        attempts: list[RetryAttempt] = []
        total_delay = 0.0
        delay_ms = 0.0
        last_error: BaseException | None = None
        last_category: ErrorCategory | None = None
        stop_reason = StopReason.EXHAUSTED

        self._stats.total_operations += 1
        self._stats.active_retries += 1
        try:
            for attempt in range(1, strategy.max_attempts + 1):
                if attempt > 1:
                    await self._sleep(delay_ms / 1000)
                    total_delay += delay_ms

                self._stats.total_attempts += 1
                timestamp = self._clock()
                try:
                    data = await operation()
                except OperationCancelledError as e:
                    self._stats.cancelled_operations += 1
                    self._logger.info(
                        "retry", "Operation cancelled, not retrying", resource=resource_key
                    )
                    return RetryOutcome(
                        success=False,
                        error=e,
                        attempts=attempts,
                        total_duration_ms=self._elapsed_ms(started),
                        total_delay_ms=total_delay,
                        stop_reason=StopReason.CANCELLED,
                    )
                except Exception as e:
                    classified = classify(e)
                    last_error, last_category = e, classified.category
                    record = RetryAttempt(attempt, delay_ms, timestamp, e, classified.category)
                    attempts.append(record)
                    self._remember(resource_key, record)
                    key = classified.category.value
                    self._stats.errors_by_type[key] = self._stats.errors_by_type.get(key, 0) + 1

                    if not classified.retryable:
                        stop_reason = StopReason.NON_RETRYABLE
                        self._logger.warning(
                            "retry",
                            "Non-retryable error, giving up",
                            error=e,
                            resource=resource_key,
                            error_category=key,
                            attempt=attempt,
                        )
                        break
                    if strategy.respect_circuit_breaker and self._circuit_open(resource_key):
                        stop_reason = StopReason.CIRCUIT_OPEN
                        self._logger.warning(
                            "retry",
                            "Circuit open, giving up",
                            error=e,
                            resource=resource_key,
                            attempt=attempt,
                        )
                        break
                    if attempt >= strategy.max_attempts:
                        break

                    delay_ms = self.calculate_delay(attempt, strategy)
                    self._stats.total_retries += 1
                    self._logger.log_retry_attempt(
                        resource_key, attempt + 1, strategy.max_attempts, delay_ms, e, key
                    )
                else:
                    record = RetryAttempt(attempt, delay_ms, timestamp)
                    attempts.append(record)
                    self._remember(resource_key, record)
                    if attempt > 1:
                        self._stats.successful_retries += 1
                        self._logger.info(
                            "retry",
                            f"Succeeded on attempt {attempt}",
                            resource=resource_key,
                            strategy=strategy.name,
                        )
                    return RetryOutcome(
                        success=True,
                        data=data,
                        attempts=attempts,
                        total_duration_ms=self._elapsed_ms(started),
                        total_delay_ms=total_delay,
                        stop_reason=StopReason.SUCCESS,
                    )
        finally:
            self._stats.active_retries -= 1

        self._stats.failed_operations += 1
        self._logger.error(
            "retry",
            f"Operation failed after {len(attempts)} attempt(s)",
            error=last_error,
            resource=resource_key,
            strategy=strategy.name,
            stop_reason=stop_reason.value,
        )
        return RetryOutcome(
            success=False,
            error=last_error,
            category=last_category,
            attempts=attempts,
            total_duration_ms=self._elapsed_ms(started),
            total_delay_ms=total_delay,
            stop_reason=stop_reason,
        )

    def _elapsed_ms(self, started: float) -> float:
        return max(0.0, (self._clock() - started) * 1000)

    def _remember(self, resource_key: str | None, attempt: RetryAttempt) -> None:
        if resource_key is not None:
            self._history[resource_key].append(attempt)

    def get_recent_attempts(self, resource_key: str) -> list[RetryAttempt]:
        """Recent attempts recorded for a resource, oldest first."""
        return list(self._history.get(resource_key, ()))

    def get_stats(self) -> RetryStats:
        """Get a copy of the retry counters."""
        return RetryStats(
            total_operations=self._stats.total_operations,
            total_attempts=self._stats.total_attempts,
            total_retries=self._stats.total_retries,
            successful_retries=self._stats.successful_retries,
            failed_operations=self._stats.failed_operations,
            cancelled_operations=self._stats.cancelled_operations,
            active_retries=self._stats.active_retries,
            errors_by_type=dict(self._stats.errors_by_type),
        )

    def reset_stats(self) -> None:
        """Zero all counters (active retries are kept)."""
        active = self._stats.active_retries
        self._stats = RetryStats(active_retries=active)
        self._history.clear()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    strategy: RetryStrategy | str = "standard",
) -> T:
    """Execute an operation with retry, raising on failure.

    Args:
        operation: Async operation to execute
        strategy: Strategy or preset name

    Returns:
        Operation result

    Raises:
        The last exception if all attempts fail
    """
    outcome = await RetryEngine().execute_with_retry(operation, strategy)
    return outcome.unwrap()
