"""
Resilience layer - Circuit breaking, retry, deduplication and recovery.

This module provides the patterns that protect clinic data queries:
- CircuitBreaker: Closed/Open/Half-Open state machine with weighted failures
- AdaptiveCircuitBreaker: Load, trend and cache aware breaker
- RetryEngine: Classified retries with exponential backoff and jitter
- QueryDeduplicator: Shared execution of identical concurrent queries
- ProgressiveErrorRecovery: Cache, offline and degradation fallbacks
- PolicyErrorRecoveryManager: Recovery from row-level-security failures
- ResilientExecutor: Unified executor combining all patterns
"""

from clinic_resilience.resilience.adaptive import (
    AdaptiveBreakerConfig,
    AdaptiveCircuitBreaker,
    AdaptiveCircuitSnapshot,
    AdaptiveThresholds,
    LoadLevel,
    LoadMonitoringConfig,
    PerformanceMetric,
    PerformanceTrend,
    ProgressiveTimeoutConfig,
    SystemLoadMetrics,
)
from clinic_resilience.resilience.cancel import CancelReason, CancelState, CancelToken
from clinic_resilience.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitSnapshot,
    CircuitState,
    CircuitStateChange,
    CircuitStats,
)
from clinic_resilience.resilience.dedup import (
    DeduplicationStats,
    DeduplicatorConfig,
    InFlightRequest,
    QueryDeduplicator,
)
from clinic_resilience.resilience.executor import QueryResult, ResilientExecutor
from clinic_resilience.resilience.policy_recovery import (
    PolicyErrorRecoveryManager,
    PolicyRecoveryStatus,
    PolicyRecoveryStrategy,
)
from clinic_resilience.resilience.recovery import (
    DiskOfflineStore,
    FallbackLevel,
    MemoryOfflineStore,
    OfflineSnapshot,
    OfflineStore,
    ProgressiveErrorRecovery,
    QueryPriority,
    RecoveryConfig,
    RecoveryContext,
    RecoveryResult,
    RecoveryStats,
)
from clinic_resilience.resilience.registry import ResourceRegistry
from clinic_resilience.resilience.retry import (
    RETRY_PRESETS,
    RetryAttempt,
    RetryEngine,
    RetryOutcome,
    RetryStats,
    RetryStrategy,
    StopReason,
    with_retry,
)
from clinic_resilience.resilience.scheduler import RecurringTask

__all__ = [
    # Adaptive circuit breaker
    "AdaptiveBreakerConfig",
    "AdaptiveCircuitBreaker",
    "AdaptiveCircuitSnapshot",
    "AdaptiveThresholds",
    # Cancellation
    "CancelReason",
    "CancelState",
    "CancelToken",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitSnapshot",
    "CircuitState",
    "CircuitStateChange",
    "CircuitStats",
    # Deduplication
    "DeduplicationStats",
    "DeduplicatorConfig",
    # Recovery
    "DiskOfflineStore",
    "FallbackLevel",
    "InFlightRequest",
    "LoadLevel",
    "LoadMonitoringConfig",
    "MemoryOfflineStore",
    "OfflineSnapshot",
    "OfflineStore",
    "PerformanceMetric",
    "PerformanceTrend",
    # Policy recovery
    "PolicyErrorRecoveryManager",
    "PolicyRecoveryStatus",
    "PolicyRecoveryStrategy",
    "ProgressiveErrorRecovery",
    "ProgressiveTimeoutConfig",
    "QueryDeduplicator",
    "QueryPriority",
    # Executor
    "QueryResult",
    # Retry
    "RETRY_PRESETS",
    "RecoveryConfig",
    "RecoveryContext",
    "RecoveryResult",
    "RecoveryStats",
    # Scheduling
    "RecurringTask",
    # Registry
    "ResilientExecutor",
    "ResourceRegistry",
    "RetryAttempt",
    "RetryEngine",
    "RetryOutcome",
    "RetryStats",
    "RetryStrategy",
    "StopReason",
    "SystemLoadMetrics",
    "with_retry",
]
