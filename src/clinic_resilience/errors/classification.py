"""错误分类模块：将后端失败映射到 8 个标准错误类别。

Error classification for backend query failures.

Matching is ordered and exclusive. Tagged errors (anything exposing an
``ErrorCategory`` as ``category``) are trusted first; the text matcher
below is the fallback for opaque failures raised by client libraries.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx


class ErrorCategory(str, Enum):
    """Standard failure categories."""

    NETWORK = "network_error"
    """Connection refused/reset, DNS failures, fetch failures."""

    TIMEOUT = "timeout_error"
    """Request timed out or was aborted."""

    PERMISSION = "permission_error"
    """Caller is not allowed to read the resource; needs a user action."""

    SCHEMA_MISMATCH = "schema_mismatch"
    """Column or relation missing; a client/server version skew."""

    POLICY_INFINITE_RECURSION = "policy_infinite_recursion"
    """Row-level security policy recursed into itself."""

    POLICY_CIRCULAR_DEPENDENCY = "policy_circular_dependency"
    """Row-level security policies depend on each other."""

    POLICY_EVALUATION = "policy_evaluation_error"
    """Any other row-level security evaluation failure."""

    UNKNOWN = "unknown_error"
    """Unrecognized failure; retried to avoid dropping transient issues."""


class ErrorSeverity(str, Enum):
    """How loudly a failure should be surfaced to the user."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_RETRYABLE_CATEGORIES = {
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.UNKNOWN,
}

_POLICY_CATEGORIES = {
    ErrorCategory.POLICY_INFINITE_RECURSION,
    ErrorCategory.POLICY_CIRCULAR_DEPENDENCY,
    ErrorCategory.POLICY_EVALUATION,
}

_POLICY_CRITICAL_CATEGORIES = {
    ErrorCategory.POLICY_INFINITE_RECURSION,
    ErrorCategory.POLICY_CIRCULAR_DEPENDENCY,
}

_SEVERITIES = {
    ErrorCategory.NETWORK: ErrorSeverity.MEDIUM,
    ErrorCategory.TIMEOUT: ErrorSeverity.MEDIUM,
    ErrorCategory.PERMISSION: ErrorSeverity.HIGH,
    ErrorCategory.SCHEMA_MISMATCH: ErrorSeverity.HIGH,
    ErrorCategory.POLICY_INFINITE_RECURSION: ErrorSeverity.CRITICAL,
    ErrorCategory.POLICY_CIRCULAR_DEPENDENCY: ErrorSeverity.CRITICAL,
    ErrorCategory.POLICY_EVALUATION: ErrorSeverity.HIGH,
    ErrorCategory.UNKNOWN: ErrorSeverity.LOW,
}

_POLICY_MESSAGE = "There's a temporary issue with data access. Our team has been notified."

_USER_MESSAGES = {
    ErrorCategory.NETWORK: (
        "Unable to connect to the server. Please check your internet connection and try again."
    ),
    ErrorCategory.TIMEOUT: "The request is taking longer than expected. Please try again.",
    ErrorCategory.PERMISSION: (
        "You don't have permission to access this data. Please contact your administrator."
    ),
    ErrorCategory.SCHEMA_MISMATCH: (
        "There's a compatibility issue with the data structure. Please refresh the page."
    ),
    ErrorCategory.POLICY_INFINITE_RECURSION: _POLICY_MESSAGE,
    ErrorCategory.POLICY_CIRCULAR_DEPENDENCY: _POLICY_MESSAGE,
    ErrorCategory.POLICY_EVALUATION: _POLICY_MESSAGE,
}

# Ordered signature table; the first matching stage wins.
_RECURSION_SIGNATURES = (
    "infinite recursion",
    "possible infinite recursion",
)
_CIRCULAR_SIGNATURES = (
    "circular dependency",
    "policy dependency cycle",
    "recursive policy evaluation",
)
_POLICY_SIGNATURES = (
    "policy evaluation failed",
    "rls policy error",
    "row level security",
    "row-level security",
)
_NETWORK_SIGNATURES = (
    "fetch",
    "network",
    "connection",
    "econnrefused",
    "enotfound",
    "econnreset",
    "name or service not known",
)
_PERMISSION_SIGNATURES = (
    "permission",
    "unauthorized",
    "forbidden",
    "access denied",
)
_TIMEOUT_SIGNATURES = (
    "timeout",
    "timed out",
    "aborted",
    "aborterror",
)

_SCHEMA_CODES = {"42703", "42P01", "PGRST204"}
_PERMISSION_CODES = {"PGRST301", "PGRST116", "42501"}


@dataclass(frozen=True)
class ClassifiedError:
    """Result of classifying a raw failure.

    Equality ignores the timestamp so repeated classification of the same
    failure compares equal.
    """

    category: ErrorCategory
    retryable: bool
    message: str
    code: str | None = None
    timestamp: float = field(default_factory=time.time, compare=False)

    @property
    def is_policy_error(self) -> bool:
        return self.category in _POLICY_CATEGORIES

    @property
    def is_policy_critical(self) -> bool:
        return self.category in _POLICY_CRITICAL_CATEGORIES

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "retryable": self.retryable,
            "message": self.message,
            "code": self.code,
            "timestamp": self.timestamp,
        }


def extract_error_message(error: Any) -> str:
    """Extract a human-readable message from an exception or error payload.

    Handles exceptions with a ``message`` attribute (backend client errors),
    plain exceptions, mappings shaped like ``{"message": ..., "code": ...}``
    and bare strings.

    Args:
        error: Raw failure

    Returns:
        Error message (may be empty)
    """
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        for key in ("message", "error", "msg", "detail", "details"):
            value = error.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict):
                nested = extract_error_message(value)
                if nested:
                    return nested
        return ""

    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    text = str(error)
    if text:
        return text
    return type(error).__name__


def extract_error_code(error: Any) -> str | None:
    """Extract a backend error code (``code`` attribute or key), if any."""
    code = error.get("code") if isinstance(error, dict) else getattr(error, "code", None)
    if code is None:
        return None
    return str(code)


def is_retryable(category: ErrorCategory) -> bool:
    """Check whether failures of this category should be retried."""
    return category in _RETRYABLE_CATEGORIES


def is_policy_error(category: ErrorCategory) -> bool:
    """Check whether the category is any row-level security policy failure."""
    return category in _POLICY_CATEGORIES


def is_policy_critical(category: ErrorCategory) -> bool:
    """Check whether the category must immediately open the circuit."""
    return category in _POLICY_CRITICAL_CATEGORIES


def severity_for(category: ErrorCategory) -> ErrorSeverity:
    """Get the user-facing severity for a category."""
    return _SEVERITIES.get(category, ErrorSeverity.LOW)


def user_message_for(category: ErrorCategory, resource: str | None = None) -> str:
    """Get an actionable, user-readable message for a category.

    Args:
        category: Error category
        resource: Resource name used by the generic message

    Returns:
        Message suitable for display
    """
    message = _USER_MESSAGES.get(category)
    if message is not None:
        return message
    label = resource or "the requested"
    return f"Unable to load {label} data. Please try again later."


def _contains_any(text: str, signatures: tuple[str, ...]) -> bool:
    return any(signature in text for signature in signatures)


def _match_category(error: Any, text: str, code: str | None) -> ErrorCategory:
    if _contains_any(text, _RECURSION_SIGNATURES):
        return ErrorCategory.POLICY_INFINITE_RECURSION

    if _contains_any(text, _CIRCULAR_SIGNATURES):
        return ErrorCategory.POLICY_CIRCULAR_DEPENDENCY

    if _contains_any(text, _POLICY_SIGNATURES) or (
        "policy" in text and ("failed" in text or "error" in text)
    ):
        return ErrorCategory.POLICY_EVALUATION

    if code in _SCHEMA_CODES or (
        ("column" in text or "relation" in text)
        and ("does not exist" in text or "not found" in text)
    ):
        return ErrorCategory.SCHEMA_MISMATCH

    if (
        isinstance(error, (ConnectionError, httpx.NetworkError))
        or code == "NETWORK_ERROR"
        or _contains_any(text, _NETWORK_SIGNATURES)
    ):
        return ErrorCategory.NETWORK

    if (
        isinstance(error, PermissionError)
        or code in _PERMISSION_CODES
        or _contains_any(text, _PERMISSION_SIGNATURES)
    ):
        return ErrorCategory.PERMISSION

    if (
        isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException))
        or code == "TIMEOUT"
        or _contains_any(text, _TIMEOUT_SIGNATURES)
    ):
        return ErrorCategory.TIMEOUT

    return ErrorCategory.UNKNOWN


def classify(error: Any) -> ClassifiedError:
    """Classify a raw failure into a category with a retryability flag.

    Pure and deterministic: the result depends only on the error's type,
    code and message.

    Args:
        error: Exception, error mapping or message string

    Returns:
        ClassifiedError

    Example:
        >>> classify(Exception("infinite recursion detected in policy")).category
        <ErrorCategory.POLICY_INFINITE_RECURSION: 'policy_infinite_recursion'>
    """
    message = extract_error_message(error)
    code = extract_error_code(error)

    tagged = getattr(error, "category", None)
    if isinstance(tagged, ErrorCategory):
        category = tagged
    else:
        category = _match_category(error, message.lower(), code)

    return ClassifiedError(
        category=category,
        retryable=is_retryable(category),
        message=message,
        code=code,
    )
