"""错误基类：提供弹性层的分层错误体系和结构化错误上下文。

Base error classes for clinic-resilience.

Provides a layered error hierarchy:
- ResilienceError: Base class for all library errors
- CategorizedError: Operation-boundary error carrying an explicit category
- CircuitOpenError: Raised when a circuit breaker rejects a call
- OperationCancelledError: Raised when a caller cancels an in-flight query
- DeduplicationTimeoutError: Raised when a shared execution times out
- FallbackUnavailableError: Raised by a recovery strategy that has no data
- ConfigurationError: Invalid configuration or alert rule files
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from clinic_resilience.errors.classification import ErrorCategory


@dataclass
class ErrorContext:
    """Structured error context for diagnostics.

    Provides actionable information for support correlation.
    """

    resource: str | None = None
    """Protected resource (table) the error relates to"""

    details: dict[str, Any] = field(default_factory=dict)
    """Additional details about the error"""

    source: str | None = None
    """Error source (e.g., 'circuit_breaker', 'dedup', 'recovery')"""

    hint: str | None = None
    """Actionable hint for resolving the error"""

    def __str__(self) -> str:
        parts = []
        if self.source:
            parts.append(f"[{self.source}]")
        if self.resource:
            parts.append(f"on '{self.resource}'")
        if self.hint:
            parts.append(f"(hint: {self.hint})")
        return " ".join(parts)


class ResilienceError(Exception):
    """Base class for all clinic-resilience errors.

    Attributes:
        message: Human-readable error message
        context: Optional structured error context
    """

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
    ) -> None:
        self.message = message
        self.context = context or ErrorContext()
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the full error message."""
        ctx_str = str(self.context)
        if ctx_str:
            return f"{self.message} {ctx_str}"
        return self.message

    def with_hint(self, hint: str) -> ResilienceError:
        """Return the same error with an actionable hint attached."""
        self.context.hint = hint
        self.args = (self._format_message(),)
        return self


class CategorizedError(ResilienceError):
    """Error raised at the operation boundary with an explicit category.

    Query builders should raise this (or a subclass) instead of relying on
    message matching; the classifier trusts ``category`` before it looks
    at the text of the error.

    Example:
        >>> raise CategorizedError(
        ...     "column patients.dob missing",
        ...     category=ErrorCategory.SCHEMA_MISMATCH,
        ... )
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        *,
        code: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        self.category = category
        self.code = code
        super().__init__(message, context)


class CircuitOpenError(CategorizedError):
    """Raised when a circuit breaker is open and rejects requests.

    Tagged as a network failure: the backend is considered unreachable
    until the breaker lets a probe through.
    """

    def __init__(
        self,
        message: str,
        *,
        resource: str | None = None,
        time_until_retry: float | None = None,
    ) -> None:
        self.resource = resource
        self.time_until_retry = time_until_retry
        super().__init__(
            message,
            ErrorCategory.NETWORK,
            code="CIRCUIT_OPEN",
            context=ErrorContext(resource=resource, source="circuit_breaker"),
        )


class OperationCancelledError(ResilienceError):
    """Raised when a caller cancels an in-flight operation.

    Cancellation is never counted as a failure by breakers or retries.
    """

    def __init__(self, message: str = "Operation cancelled", reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(message, ErrorContext(source="cancel", details={"reason": reason}))


class DeduplicationTimeoutError(CategorizedError):
    """Raised when a shared in-flight execution exceeds its timeout."""

    def __init__(self, key: str, timeout_seconds: float) -> None:
        self.key = key
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Request timed out after {timeout_seconds:g}s",
            ErrorCategory.TIMEOUT,
            code="TIMEOUT",
            context=ErrorContext(source="dedup", details={"key": key}),
        )


class FallbackUnavailableError(ResilienceError):
    """Raised by a recovery strategy that cannot produce data."""


class ConfigurationError(ResilienceError):
    """Error loading or validating configuration and alert rule files."""

    def __init__(
        self,
        message: str,
        *,
        path: str | None = None,
        hint: str | None = None,
    ) -> None:
        self.path = path
        super().__init__(
            message,
            ErrorContext(source="config", details={"path": path} if path else {}, hint=hint),
        )
