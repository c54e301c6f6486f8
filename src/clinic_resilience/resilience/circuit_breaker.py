"""
Circuit breaker for per-resource fault isolation.

Implements the circuit breaker pattern with three states:
- Closed: Normal operation, requests pass through
- Open: Circuit tripped, requests fail fast
- Half-Open: Probing whether the backend recovered

Failures are classified before they are counted. Caller mistakes (schema
mismatch, permission) never move the breaker; row-level security
recursion and circular dependencies open it immediately.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from clinic_resilience.errors import (
    CircuitOpenError,
    ClassifiedError,
    ErrorCategory,
    OperationCancelledError,
    classify,
)
from clinic_resilience.telemetry import ResilienceLogger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

DEFAULT_ERROR_WEIGHTS: dict[ErrorCategory, float] = {
    ErrorCategory.NETWORK: 1.0,
    ErrorCategory.TIMEOUT: 1.0,
    ErrorCategory.UNKNOWN: 1.0,
    ErrorCategory.POLICY_EVALUATION: 1.0,
    ErrorCategory.SCHEMA_MISMATCH: 0.0,
    ErrorCategory.PERMISSION: 0.0,
}


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker.

    Attributes:
        failure_threshold: Weighted failures needed to trip the circuit
        success_threshold: Consecutive successes in half-open needed to close
        reset_timeout_seconds: Time to wait before probing (half-open)
        timeout_seconds: Optional timeout for each operation
        error_history_size: Number of classified errors kept for diagnostics
        policy_window_seconds: Window for "recent" policy error statistics
        error_weights: Failure weight per error category; missing
            categories weigh 1.0, zero-weight categories are never counted
    """

    failure_threshold: float = 5
    success_threshold: int = 3
    reset_timeout_seconds: float = 30.0
    timeout_seconds: float | None = None
    error_history_size: int = 10
    policy_window_seconds: float = 300.0
    error_weights: dict[ErrorCategory, float] = field(
        default_factory=lambda: dict(DEFAULT_ERROR_WEIGHTS)
    )

    @classmethod
    def default(cls) -> CircuitBreakerConfig:
        """Create default configuration."""
        return cls()

    @classmethod
    def from_env(cls) -> CircuitBreakerConfig:
        """Create configuration from environment variables."""
        return cls(
            failure_threshold=float(
                os.getenv("CLINIC_RESILIENCE_BREAKER_FAILURE_THRESHOLD", "5")
            ),
            success_threshold=int(
                os.getenv("CLINIC_RESILIENCE_BREAKER_SUCCESS_THRESHOLD", "3")
            ),
            reset_timeout_seconds=float(
                os.getenv("CLINIC_RESILIENCE_BREAKER_RESET_TIMEOUT_SECS", "30")
            ),
        )

    def weight_for(self, category: ErrorCategory) -> float:
        return self.error_weights.get(category, 1.0)


@dataclass
class CircuitStats:
    """Statistics for circuit breaker."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    ignored_failures: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None


@dataclass
class CircuitStateChange:
    """A state transition, delivered to ``on_state_change`` listeners."""

    resource: str
    old_state: CircuitState
    new_state: CircuitState
    timestamp: float
    reason: str | None = None


@dataclass
class CircuitSnapshot:
    """Read-only view of a breaker for dashboards."""

    resource: str
    state: CircuitState
    failure_count: float
    failure_threshold: float
    success_count: int
    consecutive_successes: int
    request_count: int
    last_failure_time: float | None
    opened_at: float | None
    time_until_retry: float | None
    error_history: list[ClassifiedError] = field(default_factory=list)
    policy_error_count: int = 0
    recent_policy_error_count: int = 0
    has_critical_policy_errors: bool = False

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "success_count": self.success_count,
            "consecutive_successes": self.consecutive_successes,
            "request_count": self.request_count,
            "last_failure_time": self.last_failure_time,
            "opened_at": self.opened_at,
            "time_until_retry": self.time_until_retry,
            "error_history": [e.to_dict() for e in self.error_history],
            "policy_error_count": self.policy_error_count,
            "recent_policy_error_count": self.recent_policy_error_count,
            "has_critical_policy_errors": self.has_critical_policy_errors,
        }


class CircuitBreaker:
    """Circuit breaker for a single protected resource.

    State is only mutated between suspension points, so concurrent tasks
    on one event loop always observe consistent counters.

    Example:
        >>> breaker = CircuitBreaker("patients", CircuitBreakerConfig(failure_threshold=3))
        >>> try:
        ...     rows = await breaker.execute(fetch_patients)
        ... except CircuitOpenError:
        ...     print("Backend unavailable")
    """

    def __init__(
        self,
        name: str = "default",
        config: CircuitBreakerConfig | None = None,
        logger: ResilienceLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize circuit breaker.

        Args:
            name: Protected resource name
            config: Circuit breaker configuration
            logger: Structured logger
            clock: Time source (seconds)
        """
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._logger = logger or ResilienceLogger()
        self._clock = clock
        self._state = CircuitState.CLOSED

        # Failure tracking
        self._failure_count = 0.0
        self._success_count = 0
        self._consecutive_successes = 0
        self._last_failure_time: float | None = None
        self._opened_at: float | None = None
        self._error_history: deque[ClassifiedError] = deque(
            maxlen=self._config.error_history_size
        )
        self._policy_errors: deque[ClassifiedError] = deque(maxlen=100)

        self._listeners: list[Callable[[CircuitStateChange], None]] = []
        self._stats = CircuitStats()

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self._state

    @property
    def is_closed(self) -> bool:
        """Check if circuit is closed (normal operation)."""
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        """Check if circuit is open (failing fast)."""
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        """Check if circuit is half-open (probing)."""
        return self._state == CircuitState.HALF_OPEN

    @property
    def failure_count(self) -> float:
        return self._failure_count

    # Hooks overridden by the adaptive breaker

    def _effective_threshold(self) -> float:
        return self._config.failure_threshold

    def _effective_reset_timeout(self) -> float:
        return self._config.reset_timeout_seconds

    def _failure_weight(self, category: ErrorCategory) -> float:
        return self._config.weight_for(category)

    # State machine

    def _check_state_transition(self) -> None:
        """Move OPEN to HALF_OPEN once the reset timeout has passed."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            elapsed = self._clock() - self._opened_at
            if elapsed >= self._effective_reset_timeout():
                self._transition_to(CircuitState.HALF_OPEN, "reset timeout elapsed")

    def _transition_to(self, new_state: CircuitState, reason: str | None = None) -> None:
        """Transition to a new state.

        Args:
            new_state: Target state
            reason: Why the transition happened
        """
        if new_state == self._state:
            return

        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1
        now = self._clock()

        if new_state == CircuitState.OPEN:
            self._opened_at = now
            self._consecutive_successes = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._consecutive_successes = 0
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0.0
            self._opened_at = None

        self._logger.log_circuit_state_change(
            self._name, old_state.value, new_state.value, reason
        )
        change = CircuitStateChange(self._name, old_state, new_state, now, reason)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                self._logger.error(
                    "circuit_breaker",
                    "State change listener failed",
                    error=e,
                    resource=self._name,
                )

    def record_success(self) -> None:
        """Record a successful operation."""
        self._success_count += 1
        self._stats.successful_requests += 1
        self._stats.last_success_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            self._consecutive_successes += 1
            if self._consecutive_successes >= self._config.success_threshold:
                self._transition_to(
                    CircuitState.CLOSED,
                    f"{self._consecutive_successes} consecutive successes",
                )
        elif self._state == CircuitState.CLOSED:
            # Forgive isolated blips
            self._failure_count = max(0.0, self._failure_count - 1)

    def record_failure(self, error: BaseException | Any) -> ClassifiedError:
        """Classify and record a failed operation.

        Args:
            error: The raised error

        Returns:
            The classification that drove the decision
        """
        now = self._clock()
        classified = replace(classify(error), timestamp=now)
        self._stats.failed_requests += 1
        self._stats.last_failure_time = now
        self._last_failure_time = now
        self._consecutive_successes = 0
        self._error_history.append(classified)
        if classified.is_policy_error:
            self._policy_errors.append(classified)

        if classified.is_policy_critical:
            self._failure_count = max(self._failure_count, self._effective_threshold())
            self._logger.critical(
                "circuit_breaker",
                "Policy error detected, opening circuit immediately",
                error=error,
                resource=self._name,
                error_category=classified.category.value,
            )
            self._transition_to(CircuitState.OPEN, classified.category.value)
            return classified

        weight = self._failure_weight(classified.category)
        if weight <= 0:
            self._stats.ignored_failures += 1
            self._logger.warning(
                "circuit_breaker",
                "Failure not counted toward threshold",
                error=error,
                resource=self._name,
                error_category=classified.category.value,
            )
            return classified

        self._failure_count += weight

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN, "failure while half-open")
        elif (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self._effective_threshold()
        ):
            self._transition_to(
                CircuitState.OPEN,
                f"failure threshold reached ({self._failure_count:g})",
            )
        return classified

    def get_time_until_retry(self) -> float | None:
        """Get time until circuit will transition to half-open.

        Returns:
            Seconds until retry, or None if not open
        """
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return None

        elapsed = self._clock() - self._opened_at
        return max(0.0, self._effective_reset_timeout() - elapsed)

    def _reject(self) -> CircuitOpenError:
        self._stats.rejected_requests += 1
        return CircuitOpenError(
            f"Circuit breaker for '{self._name}' is open",
            resource=self._name,
            time_until_retry=self.get_time_until_retry(),
        )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Execute an operation through the circuit breaker.

        Args:
            operation: Zero-argument async operation

        Returns:
            Operation result

        Raises:
            CircuitOpenError: If circuit is open
        """
        self._check_state_transition()
        self._stats.total_requests += 1

        if self._state == CircuitState.OPEN:
            raise self._reject()

        try:
            result = await self._execute_with_timeout(operation)
        except OperationCancelledError:
            raise
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result

    async def _execute_with_timeout(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Execute operation with optional timeout."""
        if self._config.timeout_seconds:
            return await asyncio.wait_for(operation(), timeout=self._config.timeout_seconds)
        return await operation()

    # Observers

    def on_state_change(
        self, listener: Callable[[CircuitStateChange], None]
    ) -> Callable[[], None]:
        """Register a state change listener.

        Returns:
            Callable that unregisters the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _recent_policy_errors(self) -> list[ClassifiedError]:
        since = self._clock() - self._config.policy_window_seconds
        return [e for e in self._policy_errors if e.timestamp >= since]

    def get_policy_error_stats(self) -> dict[str, Any]:
        """Get policy error statistics."""
        recent = self._recent_policy_errors()
        by_type: dict[str, int] = {}
        for e in self._policy_errors:
            by_type[e.category.value] = by_type.get(e.category.value, 0) + 1
        return {
            "total": len(self._policy_errors),
            "recent": len(recent),
            "by_type": by_type,
            "has_critical": any(e.is_policy_critical for e in recent),
            "last_error_time": self._policy_errors[-1].timestamp if self._policy_errors else None,
        }

    def should_use_policy_fallback(self) -> bool:
        """Whether callers should prefer fallback data over the backend."""
        recent = self._recent_policy_errors()
        return any(e.is_policy_critical for e in recent) or len(recent) > 2

    def get_state(self) -> CircuitSnapshot:
        """Get a read-only snapshot of the breaker."""
        recent = self._recent_policy_errors()
        return CircuitSnapshot(
            resource=self._name,
            state=self._state,
            failure_count=self._failure_count,
            failure_threshold=self._effective_threshold(),
            success_count=self._success_count,
            consecutive_successes=self._consecutive_successes,
            request_count=self._stats.total_requests,
            last_failure_time=self._last_failure_time,
            opened_at=self._opened_at,
            time_until_retry=self.get_time_until_retry(),
            error_history=list(self._error_history),
            policy_error_count=len(self._policy_errors),
            recent_policy_error_count=len(recent),
            has_critical_policy_errors=any(e.is_policy_critical for e in recent),
        )

    def get_stats(self) -> CircuitStats:
        """Get circuit breaker statistics."""
        return CircuitStats(**vars(self._stats))

    # Admin

    def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        self._transition_to(CircuitState.CLOSED, "manual reset")
        self._failure_count = 0.0
        self._consecutive_successes = 0
        self._opened_at = None

    def clear_error_history(self) -> None:
        """Forget recorded errors, including policy errors."""
        self._error_history.clear()
        self._policy_errors.clear()
        self._logger.info("circuit_breaker", "Error history cleared", resource=self._name)

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self._name!r}, state={self._state.value}, "
            f"failures={self._failure_count:g}/{self._effective_threshold():g})"
        )
