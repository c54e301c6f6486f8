"""诊所应用弹性层：为数据查询提供熔断、重试、去重、渐进式恢复与性能告警。

clinic-resilience: Resilience layer for clinic data queries.

Protects every query against a flaky backend with circuit breakers,
classified retries, request deduplication and progressive fallbacks, and
watches the result with metric-driven alerting and automated rollback.
"""
from __future__ import annotations

from clinic_resilience.alerting import AlertRule, PerformanceAlertingSystem
from clinic_resilience.cache import MemoryQueryCache, QueryCache, QueryKey
from clinic_resilience.config import ResilienceConfig
from clinic_resilience.errors import (
    CategorizedError,
    CircuitOpenError,
    ErrorCategory,
    OperationCancelledError,
    ResilienceError,
    classify,
)
from clinic_resilience.flags import FeatureFlagStore, InMemoryFeatureFlags
from clinic_resilience.resilience import (
    AdaptiveCircuitBreaker,
    CircuitBreaker,
    CircuitState,
    FallbackLevel,
    ProgressiveErrorRecovery,
    QueryDeduplicator,
    QueryResult,
    ResilientExecutor,
    ResourceRegistry,
    RetryEngine,
    RetryStrategy,
)
from clinic_resilience.runtime import ResilienceRuntime
from clinic_resilience.telemetry import ResilienceLogger

__version__ = "0.1.0"

__all__ = [
    # Circuit breaking
    "AdaptiveCircuitBreaker",
    # Alerting
    "AlertRule",
    # Errors
    "CategorizedError",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "ErrorCategory",
    # Recovery
    "FallbackLevel",
    # Contracts
    "FeatureFlagStore",
    "InMemoryFeatureFlags",
    "MemoryQueryCache",
    "OperationCancelledError",
    "PerformanceAlertingSystem",
    "ProgressiveErrorRecovery",
    "QueryCache",
    # Deduplication
    "QueryDeduplicator",
    "QueryKey",
    # Execution
    "QueryResult",
    "ResilienceConfig",
    "ResilienceError",
    # Telemetry
    "ResilienceLogger",
    # Runtime
    "ResilienceRuntime",
    "ResilientExecutor",
    "ResourceRegistry",
    # Retry
    "RetryEngine",
    "RetryStrategy",
    "classify",
    # Version
    "__version__",
]
