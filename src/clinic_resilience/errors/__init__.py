"""错误体系：提供弹性层的结构化错误类型与错误分类。

Error hierarchy and classification for clinic-resilience.
"""

from clinic_resilience.errors.base import (
    CategorizedError,
    CircuitOpenError,
    ConfigurationError,
    DeduplicationTimeoutError,
    ErrorContext,
    FallbackUnavailableError,
    OperationCancelledError,
    ResilienceError,
)
from clinic_resilience.errors.classification import (
    ClassifiedError,
    ErrorCategory,
    ErrorSeverity,
    classify,
    extract_error_code,
    extract_error_message,
    is_policy_critical,
    is_policy_error,
    is_retryable,
    severity_for,
    user_message_for,
)

__all__ = [
    # Base errors
    "CategorizedError",
    "CircuitOpenError",
    "ConfigurationError",
    "DeduplicationTimeoutError",
    "ErrorContext",
    "FallbackUnavailableError",
    "OperationCancelledError",
    "ResilienceError",
    # Classification
    "ClassifiedError",
    "ErrorCategory",
    "ErrorSeverity",
    "classify",
    "extract_error_code",
    "extract_error_message",
    "is_policy_critical",
    "is_policy_error",
    "is_retryable",
    "severity_for",
    "user_message_for",
]
