"""
Structured logging for clinic-resilience.

Provides a context-aware, sanitizing logger. Every entry is redacted,
forwarded to the standard ``logging`` module and kept in a bounded
in-memory buffer for diagnostics export and test assertions.
"""

from __future__ import annotations

import json
import logging
import re
import sys
import time
from collections import Counter, deque
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from clinic_resilience.errors.classification import extract_error_code, extract_error_message

# Context variable for query-scoped logging context
_log_context: ContextVar[dict[str, Any] | None] = ContextVar("log_context", default=None)

REDACTED = "[REDACTED]"
TRUNCATED_SUFFIX = "... [truncated]"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    def to_logging_level(self) -> int:
        """Convert to standard logging level."""
        return getattr(logging, self.value.upper())


@dataclass
class LogContext:
    """Query-scoped logging context.

    Attributes:
        request_id: Unique request identifier
        resource: Protected resource (table) being queried
        operation: Logical operation name
        extra: Additional context fields
    """

    request_id: str | None = None
    resource: str | None = None
    operation: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        if self.request_id:
            result["request_id"] = self.request_id
        if self.resource:
            result["resource"] = self.resource
        if self.operation:
            result["operation"] = self.operation
        result.update(self.extra)
        return result

    def with_extra(self, **kwargs: Any) -> LogContext:
        """Create new context with additional fields."""
        return LogContext(
            request_id=self.request_id,
            resource=self.resource,
            operation=self.operation,
            extra={**self.extra, **kwargs},
        )


def get_log_context() -> LogContext:
    """Get current logging context."""
    data = _log_context.get()
    if not data:
        return LogContext()
    data = dict(data)
    return LogContext(
        request_id=data.pop("request_id", None),
        resource=data.pop("resource", None),
        operation=data.pop("operation", None),
        extra=data,
    )


def set_log_context(context: LogContext) -> Token[dict[str, Any] | None]:
    """Set logging context for the current async context.

    Returns:
        Token to pass to :func:`reset_log_context`
    """
    return _log_context.set(context.to_dict())


def reset_log_context(token: Token[dict[str, Any] | None]) -> None:
    """Restore the logging context that was active before ``set_log_context``."""
    _log_context.reset(token)


def clear_log_context() -> None:
    """Clear logging context."""
    _log_context.set(None)


class SensitiveDataMasker:
    """Masks credentials, secrets and authorization data in log output."""

    # Patterns for sensitive data inside free text
    DEFAULT_PATTERNS: ClassVar[list[tuple[str, str]]] = [
        # Bearer tokens
        (r"(Bearer\s+)([^\s\"',]+)", r"\1" + REDACTED),
        # JWTs
        (r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+", REDACTED),
        # key=value and key: value credentials
        (
            r"((?:password|passwd|token|secret|api[_-]?key|apikey|authorization)"
            r"[\"']?\s*[:=]\s*[\"']?)([^\"'\s&,]+)",
            r"\1" + REDACTED,
        ),
    ]

    SENSITIVE_KEY_PATTERN: ClassVar[str] = (
        r"password|passwd|token|secret|api[_-]?key|apikey|authorization|bearer|credential|cookie"
    )

    def __init__(
        self,
        patterns: list[tuple[str, str]] | None = None,
        max_string_length: int = 1000,
    ) -> None:
        """Initialize masker with patterns.

        Args:
            patterns: List of (pattern, replacement) tuples
            max_string_length: Strings longer than this are truncated
        """
        self._patterns = [
            (re.compile(p, re.IGNORECASE), r) for p, r in (patterns or self.DEFAULT_PATTERNS)
        ]
        self._sensitive_key = re.compile(self.SENSITIVE_KEY_PATTERN, re.IGNORECASE)
        self._url = re.compile(r"https?://[^\s\"']+")
        self._max_string_length = max_string_length

    def is_sensitive_key(self, key: str) -> bool:
        """Check whether a field name looks like it holds a secret."""
        return bool(self._sensitive_key.search(key))

    def sanitize_url(self, url: str) -> str:
        """Redact sensitive query parameters in a URL."""
        parts = urlsplit(url)
        if not parts.query:
            return url
        params = [
            (k, REDACTED if self.is_sensitive_key(k) else v)
            for k, v in parse_qsl(parts.query, keep_blank_values=True)
        ]
        query = urlencode(params, safe="[]")
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))

    def mask(self, text: str) -> str:
        """Mask sensitive data in text.

        Args:
            text: Text to mask

        Returns:
            Masked (and possibly truncated) text
        """
        result = self._url.sub(lambda m: self.sanitize_url(m.group(0)), text)
        for pattern, replacement in self._patterns:
            result = pattern.sub(replacement, result)
        if len(result) > self._max_string_length:
            result = result[: self._max_string_length] + TRUNCATED_SUFFIX
        return result

    def mask_value(self, value: Any) -> Any:
        """Mask any JSON-like value recursively."""
        if isinstance(value, str):
            return self.mask(value)
        if isinstance(value, dict):
            return self.mask_dict(value)
        if isinstance(value, (list, tuple)):
            return [self.mask_value(v) for v in value]
        return value

    def mask_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        """Mask sensitive data in dictionary.

        Args:
            data: Dictionary to mask

        Returns:
            Masked dictionary
        """
        result: dict[str, Any] = {}
        for key, value in data.items():
            if self.is_sensitive_key(str(key)):
                result[key] = REDACTED
            else:
                result[key] = self.mask_value(value)
        return result


class JsonFormatter(logging.Formatter):
    """JSON log formatter."""

    def __init__(
        self,
        masker: SensitiveDataMasker | None = None,
        include_timestamp: bool = True,
    ) -> None:
        super().__init__()
        self._masker = masker or SensitiveDataMasker()
        self._include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": self._masker.mask(record.getMessage()),
        }

        if self._include_timestamp:
            log_data["timestamp"] = time.strftime(
                "%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)
            ) + f".{int(record.msecs):03d}Z"

        context = get_log_context()
        if context_dict := context.to_dict():
            log_data["context"] = self._masker.mask_dict(context_dict)

        if hasattr(record, "extra_fields"):
            log_data.update(self._masker.mask_dict(record.extra_fields))

        if record.exc_info:
            log_data["exception"] = self._masker.mask(self.formatException(record.exc_info))

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter."""

    def __init__(
        self,
        masker: SensitiveDataMasker | None = None,
        include_context: bool = True,
    ) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self._masker = masker or SensitiveDataMasker()
        self._include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as text."""
        original_msg = record.msg
        record.msg = self._masker.mask(str(record.msg))
        result = super().format(record)
        record.msg = original_msg

        if self._include_context:
            context = get_log_context()
            if context_dict := self._masker.mask_dict(context.to_dict()):
                context_str = " ".join(f"{k}={v}" for k, v in context_dict.items())
                result = f"{result} | {context_str}"

        return result


@dataclass
class LogEntry:
    """A sanitized log entry kept in the diagnostics buffer."""

    timestamp: float
    level: LogLevel
    category: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "category": self.category,
            "message": self.message,
            "context": self.context,
            "error": self.error,
        }


_LEVEL_ORDER = {level: i for i, level in enumerate(LogLevel)}


class ResilienceLogger:
    """Injected structured logger used by every resilience component.

    Entries are sanitized before they are stored or emitted. Tests can
    construct a fresh instance and assert on :meth:`get_logs` instead of
    capturing console output.

    Example:
        >>> logger = ResilienceLogger()
        >>> logger.warning("circuit_breaker", "Circuit opened", resource="patients")
        >>> logger.get_logs(category="circuit_breaker")[0].message
        'Circuit opened'
    """

    _handler: ClassVar[logging.Handler | None] = None
    _level: ClassVar[LogLevel] = LogLevel.INFO

    @classmethod
    def configure(
        cls,
        level: LogLevel = LogLevel.INFO,
        format: str = "json",
        stream: Any = None,
        masker: SensitiveDataMasker | None = None,
    ) -> None:
        """Configure output for all ``clinic_resilience`` loggers.

        Args:
            level: Log level
            format: Output format ('json' or 'text')
            stream: Output stream (default: stderr)
            masker: Sensitive data masker
        """
        cls._level = level
        formatter: logging.Formatter
        if format == "json":
            formatter = JsonFormatter(masker=masker)
        else:
            formatter = TextFormatter(masker=masker)

        cls._handler = logging.StreamHandler(stream or sys.stderr)
        cls._handler.setFormatter(formatter)
        cls._handler.setLevel(level.to_logging_level())

        root = logging.getLogger("clinic_resilience")
        root.handlers.clear()
        root.addHandler(cls._handler)
        root.setLevel(level.to_logging_level())

    def __init__(
        self,
        name: str = "clinic_resilience",
        max_entries: int = 1000,
        masker: SensitiveDataMasker | None = None,
        clock: Any = time.time,
    ) -> None:
        """Initialize logger.

        Args:
            name: Underlying ``logging`` logger name
            max_entries: Size of the diagnostics buffer
            masker: Sensitive data masker
            clock: Timestamp source
        """
        self._logger = logging.getLogger(name)
        self._masker = masker or SensitiveDataMasker()
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._clock = clock

    @property
    def name(self) -> str:
        return self._logger.name

    def child(self, suffix: str) -> ResilienceLogger:
        """Create a logger for a sub-component sharing this buffer."""
        child = ResilienceLogger.__new__(ResilienceLogger)
        child._logger = self._logger.getChild(suffix)
        child._masker = self._masker
        child._entries = self._entries
        child._clock = self._clock
        return child

    def _serialize_error(self, error: BaseException | Any) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": type(error).__name__,
            "message": self._masker.mask(extract_error_message(error)),
        }
        code = extract_error_code(error)
        if code is not None:
            data["code"] = code
        return data

    def log(
        self,
        level: LogLevel,
        category: str,
        message: str,
        error: BaseException | Any | None = None,
        **context: Any,
    ) -> LogEntry:
        """Record and emit a structured entry.

        Args:
            level: Entry level
            category: Component category (e.g. 'retry', 'circuit_breaker')
            message: Human-readable message
            error: Optional error to attach
            **context: Structured fields

        Returns:
            The sanitized entry
        """
        merged = {**get_log_context().to_dict(), **context}
        entry = LogEntry(
            timestamp=self._clock(),
            level=level,
            category=category,
            message=self._masker.mask(message),
            context=self._masker.mask_dict(merged),
            error=self._serialize_error(error) if error is not None else None,
        )
        self._entries.append(entry)

        fields: dict[str, Any] = {"category": category, **entry.context}
        if entry.error:
            fields["error"] = entry.error
        self._logger.log(level.to_logging_level(), entry.message, extra={"extra_fields": fields})
        return entry

    def debug(self, category: str, message: str, **context: Any) -> LogEntry:
        """Log debug message."""
        return self.log(LogLevel.DEBUG, category, message, **context)

    def info(self, category: str, message: str, **context: Any) -> LogEntry:
        """Log info message."""
        return self.log(LogLevel.INFO, category, message, **context)

    def warning(
        self, category: str, message: str, error: Any | None = None, **context: Any
    ) -> LogEntry:
        """Log warning message."""
        return self.log(LogLevel.WARNING, category, message, error=error, **context)

    def error(
        self, category: str, message: str, error: Any | None = None, **context: Any
    ) -> LogEntry:
        """Log error message."""
        return self.log(LogLevel.ERROR, category, message, error=error, **context)

    def critical(
        self, category: str, message: str, error: Any | None = None, **context: Any
    ) -> LogEntry:
        """Log critical message."""
        return self.log(LogLevel.CRITICAL, category, message, error=error, **context)

    # Domain helpers

    def log_retry_attempt(
        self,
        resource: str | None,
        attempt: int,
        max_attempts: int,
        delay_ms: float,
        error: Any,
        category: str,
    ) -> LogEntry:
        """Log a scheduled retry."""
        return self.warning(
            "retry",
            f"Retry attempt {attempt}/{max_attempts} in {delay_ms:.0f}ms",
            error=error,
            resource=resource,
            attempt=attempt,
            max_attempts=max_attempts,
            delay_ms=round(delay_ms, 1),
            error_category=category,
        )

    def log_circuit_state_change(
        self, resource: str, old_state: str, new_state: str, reason: str | None = None
    ) -> LogEntry:
        """Log a circuit breaker transition."""
        level = LogLevel.ERROR if new_state == "open" else LogLevel.INFO
        return self.log(
            level,
            "circuit_breaker",
            f"Circuit {resource}: {old_state} -> {new_state}",
            resource=resource,
            old_state=old_state,
            new_state=new_state,
            reason=reason,
        )

    def log_cache_operation(
        self, operation: str, key: str, hit: bool | None = None, **context: Any
    ) -> LogEntry:
        """Log a cache read or write performed by the resilience layer."""
        return self.debug("cache", f"Cache {operation}", key=key, hit=hit, **context)

    # Readers

    def get_logs(
        self,
        level: LogLevel | None = None,
        category: str | None = None,
        since: float | None = None,
        limit: int | None = None,
    ) -> list[LogEntry]:
        """Get buffered entries, oldest first.

        Args:
            level: Minimum level to include
            category: Only include this category
            since: Only include entries at or after this timestamp
            limit: Keep only the newest ``limit`` entries
        """
        entries = list(self._entries)
        if level is not None:
            entries = [e for e in entries if _LEVEL_ORDER[e.level] >= _LEVEL_ORDER[level]]
        if category is not None:
            entries = [e for e in entries if e.category == category]
        if since is not None:
            entries = [e for e in entries if e.timestamp >= since]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def get_errors(self, limit: int = 50) -> list[LogEntry]:
        """Get the most recent error and critical entries."""
        return self.get_logs(level=LogLevel.ERROR, limit=limit)

    def get_stats(self) -> dict[str, Any]:
        """Get buffer statistics."""
        entries = list(self._entries)
        by_level = Counter(e.level.value for e in entries)
        by_category = Counter(e.category for e in entries)
        errors = by_level.get("error", 0) + by_level.get("critical", 0)
        return {
            "total": len(entries),
            "by_level": dict(by_level),
            "by_category": dict(by_category),
            "error_rate": errors / len(entries) if entries else 0.0,
        }

    def export_diagnostics(self) -> str:
        """Export buffered entries and statistics as JSON."""
        return json.dumps(
            {
                "exported_at": self._clock(),
                "stats": self.get_stats(),
                "logs": [e.to_dict() for e in self._entries],
            },
            default=str,
            indent=2,
        )

    def clear(self) -> None:
        """Drop all buffered entries."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def get_logger(name: str = "clinic_resilience") -> ResilienceLogger:
    """Get a logger instance.

    Args:
        name: Logger name

    Returns:
        Logger instance with its own diagnostics buffer
    """
    return ResilienceLogger(name)
