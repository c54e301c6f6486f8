"""
Telemetry module for clinic-resilience.

Provides the sanitizing structured logger and query metrics.
"""

from clinic_resilience.telemetry.logger import (
    JsonFormatter,
    LogContext,
    LogEntry,
    LogLevel,
    ResilienceLogger,
    SensitiveDataMasker,
    TextFormatter,
    clear_log_context,
    get_log_context,
    get_logger,
    reset_log_context,
    set_log_context,
)
from clinic_resilience.telemetry.metrics import (
    AggregatedMetrics,
    MetricsCollector,
    QuerySample,
    percentile,
)

__all__ = [
    # Logging
    "JsonFormatter",
    "LogContext",
    "LogEntry",
    "LogLevel",
    "ResilienceLogger",
    "SensitiveDataMasker",
    "TextFormatter",
    "clear_log_context",
    "get_log_context",
    "get_logger",
    "reset_log_context",
    "set_log_context",
    # Metrics
    "AggregatedMetrics",
    "MetricsCollector",
    "QuerySample",
    "percentile",
]
