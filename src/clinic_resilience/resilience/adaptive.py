"""
Adaptive circuit breaker.

Extends :class:`CircuitBreaker` with:
- Cache-aware serving while the circuit is open
- Progressive reset timeouts driven by consecutive failures and latency
- Threshold adaptation from the recent performance trend
- Load-aware scaling of threshold and timeout
- Per-category failure weights
"""

from __future__ import annotations

import os
import statistics
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from clinic_resilience.errors import (
    ClassifiedError,
    ErrorCategory,
    OperationCancelledError,
    classify,
)
from clinic_resilience.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitSnapshot,
    CircuitState,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from clinic_resilience.cache import CacheLookup, QueryCache
    from clinic_resilience.telemetry import ResilienceLogger

T = TypeVar("T")

CRITICAL_RESOURCES = frozenset({"settings", "profiles", "clinicians", "permissions"})

ADAPTIVE_ERROR_WEIGHTS: dict[ErrorCategory, float] = {
    ErrorCategory.SCHEMA_MISMATCH: 0.0,
    ErrorCategory.PERMISSION: 0.0,
    ErrorCategory.NETWORK: 0.5,
    ErrorCategory.TIMEOUT: 1.0,
    ErrorCategory.POLICY_INFINITE_RECURSION: 3.0,
    ErrorCategory.POLICY_CIRCULAR_DEPENDENCY: 3.0,
    ErrorCategory.POLICY_EVALUATION: 0.5,
    ErrorCategory.UNKNOWN: 0.2,
}


class LoadLevel(str, Enum):
    """Estimated system load."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PerformanceTrend(str, Enum):
    """Direction of recent query performance."""

    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


_LOAD_TIMEOUT_MULTIPLIERS = {
    LoadLevel.CRITICAL: 3.0,
    LoadLevel.HIGH: 2.0,
    LoadLevel.MEDIUM: 1.5,
    LoadLevel.LOW: 0.8,
}


@dataclass
class ProgressiveTimeoutConfig:
    """Progressive reset timeout settings.

    Attributes:
        enabled: Whether timeouts escalate at all
        steps: Multipliers indexed by ``consecutive_failures // 2``
        performance_thresholds_ms: Average durations that add
            ``1 + i * 0.5`` to the multiplier, ``i`` being the highest
            threshold exceeded
        cooldown_seconds: Sustained success needed to drop one step
        performance_window_seconds: Window for the latency multiplier
    """

    enabled: bool = True
    steps: tuple[float, ...] = (1.0, 1.5, 2.0, 3.0, 4.0)
    performance_thresholds_ms: tuple[float, ...] = (2000.0, 5000.0, 10000.0, 20000.0)
    cooldown_seconds: float = 120.0
    performance_window_seconds: float = 120.0


@dataclass
class LoadMonitoringConfig:
    """Load estimation settings.

    Attributes:
        enabled: Whether load scales threshold and timeout
        cpu_threshold: Estimated CPU percentage considered high
        memory_threshold: Cache footprint percentage considered high
        active_queries_threshold: Samples in ``active_window_seconds``
            considered high
        memory_budget_bytes: Cache footprint treated as 100%
        duration_window_seconds: Window for the CPU estimate
        active_window_seconds: Window for the active query count
        interval_seconds: Refresh cadence when scheduled
    """

    enabled: bool = True
    cpu_threshold: float = 70.0
    memory_threshold: float = 80.0
    active_queries_threshold: int = 20
    memory_budget_bytes: int = 50 * 1024 * 1024
    duration_window_seconds: float = 60.0
    active_window_seconds: float = 30.0
    interval_seconds: float = 30.0


@dataclass
class AdaptiveBreakerConfig(CircuitBreakerConfig):
    """Configuration for the adaptive circuit breaker.

    Attributes:
        cache_grace_period_seconds: Max cache age served while open
        critical_resources: Resources whose grace period is doubled
        max_timeout_multiplier: Cap on the progressive multiplier
        metric_window_size: Performance samples kept
        adaptation_interval_seconds: Minimum time between threshold reviews
        analysis_window_seconds: Age of samples considered in a review
        min_samples_for_adaptation: Samples needed for a review
        progressive: Progressive timeout settings
        load: Load monitoring settings
    """

    failure_threshold: float = 8
    reset_timeout_seconds: float = 15.0
    error_weights: dict[ErrorCategory, float] = field(
        default_factory=lambda: dict(ADAPTIVE_ERROR_WEIGHTS)
    )
    cache_grace_period_seconds: float = 300.0
    critical_resources: frozenset[str] = CRITICAL_RESOURCES
    max_timeout_multiplier: float = 4.0
    metric_window_size: int = 100
    adaptation_interval_seconds: float = 120.0
    analysis_window_seconds: float = 600.0
    min_samples_for_adaptation: int = 10
    progressive: ProgressiveTimeoutConfig = field(default_factory=ProgressiveTimeoutConfig)
    load: LoadMonitoringConfig = field(default_factory=LoadMonitoringConfig)

    @classmethod
    def from_env(cls) -> AdaptiveBreakerConfig:
        """Create configuration from environment variables."""
        return cls(
            failure_threshold=float(
                os.getenv("CLINIC_RESILIENCE_ADAPTIVE_FAILURE_THRESHOLD", "8")
            ),
            reset_timeout_seconds=float(
                os.getenv("CLINIC_RESILIENCE_ADAPTIVE_RESET_TIMEOUT_SECS", "15")
            ),
            cache_grace_period_seconds=float(
                os.getenv("CLINIC_RESILIENCE_ADAPTIVE_CACHE_GRACE_SECS", "300")
            ),
        )


@dataclass
class PerformanceMetric:
    """One execution observed by the adaptive breaker."""

    timestamp: float
    duration_ms: float
    success: bool
    resource: str
    category: ErrorCategory | None = None
    cache_available: bool = False


@dataclass
class AdaptiveThresholds:
    """Current adapted threshold and timeout."""

    failure_threshold: float
    reset_timeout_seconds: float
    trend: PerformanceTrend = PerformanceTrend.STABLE
    last_adjustment: float = 0.0
    adjustment_count: int = 0


@dataclass
class SystemLoadMetrics:
    """Latest load estimate."""

    cpu_estimate: float = 0.0
    memory_estimate: float = 0.0
    active_queries: int = 0
    avg_response_time_ms: float = 0.0
    load_level: LoadLevel = LoadLevel.LOW
    last_updated: float | None = None


@dataclass
class AdaptiveCircuitSnapshot(CircuitSnapshot):
    """Snapshot with performance, load and threshold details."""

    avg_duration_ms: float = 0.0
    success_rate: float = 1.0
    cache_utilization: float = 0.0
    cache_serves: int = 0
    thresholds: AdaptiveThresholds | None = None
    load: SystemLoadMetrics | None = None
    effective_reset_timeout_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "avg_duration_ms": self.avg_duration_ms,
                "success_rate": self.success_rate,
                "cache_utilization": self.cache_utilization,
                "cache_serves": self.cache_serves,
                "trend": self.thresholds.trend.value if self.thresholds else None,
                "load_level": self.load.load_level.value if self.load else None,
                "effective_reset_timeout_seconds": self.effective_reset_timeout_seconds,
            }
        )
        return data


class AdaptiveCircuitBreaker(CircuitBreaker):
    """Circuit breaker that adapts to latency, load and cache availability.

    Example:
        >>> breaker = AdaptiveCircuitBreaker("appointments", cache=cache)
        >>> rows = await breaker.execute(fetch, cache_key="appointments:today")
    """

    def __init__(
        self,
        name: str = "default",
        config: AdaptiveBreakerConfig | None = None,
        cache: QueryCache | None = None,
        logger: ResilienceLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize adaptive circuit breaker.

        Args:
            name: Protected resource name
            config: Adaptive configuration
            cache: Cache consulted while the circuit is open
            logger: Structured logger
            clock: Time source (seconds)
        """
        self._adaptive = config or AdaptiveBreakerConfig()
        super().__init__(name, self._adaptive, logger, clock)
        self._cache = cache
        self._metrics: deque[PerformanceMetric] = deque(
            maxlen=self._adaptive.metric_window_size
        )
        self._thresholds = AdaptiveThresholds(
            failure_threshold=self._adaptive.failure_threshold,
            reset_timeout_seconds=self._adaptive.reset_timeout_seconds,
            last_adjustment=clock(),
        )
        self._load = SystemLoadMetrics()
        self._consecutive_failures = 0
        self._timeout_step = 0
        self._last_failure_at: float | None = None
        self._last_step_change: float | None = None
        self._cache_serves = 0

    @property
    def thresholds(self) -> AdaptiveThresholds:
        return self._thresholds

    @property
    def load_level(self) -> LoadLevel:
        return self._load.load_level

    # Hooks

    def _effective_threshold(self) -> float:
        base = self._thresholds.failure_threshold
        if not self._adaptive.load.enabled:
            return base

        level = self._load.load_level
        if level == LoadLevel.CRITICAL:
            return max(1.0, float(int(base * 0.5)))
        if level == LoadLevel.HIGH:
            return max(2.0, float(int(base * 0.7)))
        if level == LoadLevel.MEDIUM:
            return min(base, max(3.0, float(int(base * 0.85))))
        return min(base * 1.2, base + 2)

    def _effective_reset_timeout(self) -> float:
        return (
            self._thresholds.reset_timeout_seconds
            * self._progressive_multiplier()
            * self._load_multiplier()
        )

    def _failure_weight(self, category: ErrorCategory) -> float:
        return self._adaptive.weight_for(category)

    # Progressive timeout

    def _average_duration(self, window_seconds: float) -> float | None:
        since = self._clock() - window_seconds
        durations = [m.duration_ms for m in self._metrics if m.timestamp >= since]
        if not durations:
            return None
        return statistics.mean(durations)

    def _performance_multiplier(self) -> float:
        progressive = self._adaptive.progressive
        avg = self._average_duration(progressive.performance_window_seconds)
        if avg is None:
            return 1.0
        exceeded = [
            i for i, limit in enumerate(progressive.performance_thresholds_ms) if avg > limit
        ]
        if not exceeded:
            return 1.0
        return 1 + exceeded[-1] * 0.5

    def _progressive_multiplier(self) -> float:
        progressive = self._adaptive.progressive
        if not progressive.enabled:
            return 1.0
        step = progressive.steps[min(self._timeout_step, len(progressive.steps) - 1)]
        return min(step * self._performance_multiplier(), self._adaptive.max_timeout_multiplier)

    def _load_multiplier(self) -> float:
        if not self._adaptive.load.enabled:
            return 1.0
        multiplier = _LOAD_TIMEOUT_MULTIPLIERS[self._load.load_level]
        if self._load.avg_response_time_ms > 3000:
            multiplier *= 1.5
        return multiplier

    def get_progressive_timeout_info(self) -> dict[str, Any]:
        """Describe how the effective reset timeout is composed."""
        progressive = self._adaptive.progressive
        return {
            "enabled": progressive.enabled,
            "consecutive_failures": self._consecutive_failures,
            "step": self._timeout_step,
            "step_multiplier": progressive.steps[
                min(self._timeout_step, len(progressive.steps) - 1)
            ],
            "performance_multiplier": self._performance_multiplier(),
            "load_multiplier": self._load_multiplier(),
            "base_timeout_seconds": self._thresholds.reset_timeout_seconds,
            "effective_timeout_seconds": self._effective_reset_timeout(),
        }

    # Recording

    def record_success(self) -> None:
        now = self._clock()
        self._consecutive_failures = 0
        if self._timeout_step > 0 and self._last_failure_at is not None:
            quiet_since = max(self._last_failure_at, self._last_step_change or 0.0)
            if now - quiet_since >= self._adaptive.progressive.cooldown_seconds:
                self._timeout_step -= 1
                self._last_step_change = now
                self._logger.info(
                    "circuit_breaker",
                    "Progressive timeout step decreased",
                    resource=self._name,
                    step=self._timeout_step,
                )
        super().record_success()

    def record_failure(self, error: BaseException | Any) -> ClassifiedError:
        now = self._clock()
        self._consecutive_failures += 1
        self._last_failure_at = now
        progressive = self._adaptive.progressive
        step = min(self._consecutive_failures // 2, len(progressive.steps) - 1)
        if step > self._timeout_step:
            self._timeout_step = step
            self._last_step_change = now
        return super().record_failure(error)

    def record_metric(
        self,
        duration_ms: float,
        success: bool,
        resource: str | None = None,
        category: ErrorCategory | None = None,
        cache_available: bool = False,
    ) -> PerformanceMetric:
        """Add a performance sample and review thresholds if due."""
        metric = PerformanceMetric(
            timestamp=self._clock(),
            duration_ms=duration_ms,
            success=success,
            resource=resource or self._name,
            category=category,
            cache_available=cache_available,
        )
        self._metrics.append(metric)
        self._maybe_adapt_thresholds()
        return metric

    # Cache-aware serving

    async def _lookup_cache(self, cache_key: str | None) -> CacheLookup | None:
        if self._cache is None or not cache_key:
            return None
        lookup = await self._cache.get(cache_key)
        return lookup if lookup.hit else None

    def should_serve_cache(self, lookup: CacheLookup, resource: str | None = None) -> bool:
        """Whether a cache entry is young enough to serve while open."""
        if not lookup.hit:
            return False
        grace = self._adaptive.cache_grace_period_seconds
        resource = resource or lookup.metadata.get("resource") or self._name
        if resource in self._adaptive.critical_resources:
            grace *= 2
        return lookup.age_seconds <= grace

    async def execute(  # type: ignore[override]
        self,
        operation: Callable[[], Awaitable[T]],
        cache_key: str | None = None,
        resource: str | None = None,
        bypass: bool = False,
    ) -> T:
        """Execute an operation through the adaptive breaker.

        Args:
            operation: Zero-argument async operation
            cache_key: Cache entry to serve while the circuit is open
            resource: Resource name used for grace periods and metrics
            bypass: Run without consulting or changing breaker state

        Returns:
            Operation result, or cached data while open

        Raises:
            CircuitOpenError: If open and no cache entry qualifies
        """
        resource = resource or self._name
        start = self._clock()

        if bypass:
            try:
                result = await operation()
            except OperationCancelledError:
                raise
            except Exception as e:
                self.record_metric(self._elapsed_ms(start), False, resource, classify(e).category)
                raise
            self.record_metric(self._elapsed_ms(start), True, resource)
            return result

        self._check_state_transition()
        self._stats.total_requests += 1

        if self._state == CircuitState.OPEN:
            lookup = await self._lookup_cache(cache_key)
            if lookup is not None and self.should_serve_cache(lookup, resource):
                self._cache_serves += 1
                self._logger.info(
                    "circuit_breaker",
                    "Serving cached data while circuit is open",
                    resource=resource,
                    cache_key=cache_key,
                    age_seconds=round(lookup.age_seconds, 1),
                )
                self.record_metric(self._elapsed_ms(start), True, resource, cache_available=True)
                return lookup.data
            raise self._reject()

        try:
            result = await self._execute_with_timeout(operation)
        except OperationCancelledError:
            raise
        except Exception as e:
            classified = self.record_failure(e)
            lookup = await self._lookup_cache(cache_key)
            self.record_metric(
                self._elapsed_ms(start),
                False,
                resource,
                classified.category,
                cache_available=lookup is not None,
            )
            raise

        self.record_success()
        self.record_metric(self._elapsed_ms(start), True, resource)
        return result

    def _elapsed_ms(self, start: float) -> float:
        return max(0.0, (self._clock() - start) * 1000)

    # Adaptive thresholds

    def _maybe_adapt_thresholds(self) -> None:
        now = self._clock()
        if now - self._thresholds.last_adjustment < self._adaptive.adaptation_interval_seconds:
            return
        since = now - self._adaptive.analysis_window_seconds
        window = [m for m in self._metrics if m.timestamp >= since]
        if len(window) < self._adaptive.min_samples_for_adaptation:
            return
        self._adapt_thresholds(window, now)

    @staticmethod
    def _analyze_trend(window: list[PerformanceMetric]) -> PerformanceTrend:
        half = len(window) // 2
        older, newer = window[:half], window[half:]
        old_avg = statistics.mean(m.duration_ms for m in older)
        new_avg = statistics.mean(m.duration_ms for m in newer)
        old_rate = sum(m.success for m in older) / len(older)
        new_rate = sum(m.success for m in newer) / len(newer)

        if old_avg > 0 and new_avg <= old_avg * 0.8 and new_rate >= old_rate:
            return PerformanceTrend.IMPROVING
        if (old_avg > 0 and new_avg >= old_avg * 1.2) or (
            old_rate > 0 and new_rate <= old_rate * 0.8
        ):
            return PerformanceTrend.DEGRADING
        return PerformanceTrend.STABLE

    def _adapt_thresholds(self, window: list[PerformanceMetric], now: float) -> None:
        trend = self._analyze_trend(window)
        base_threshold = self._adaptive.failure_threshold
        base_timeout = self._adaptive.reset_timeout_seconds
        threshold = self._thresholds.failure_threshold
        timeout = self._thresholds.reset_timeout_seconds

        if trend == PerformanceTrend.IMPROVING:
            threshold = min(base_threshold * 1.5, base_threshold + 3)
            timeout = max(base_timeout * 0.7, 15.0)
        elif trend == PerformanceTrend.DEGRADING:
            threshold = max(base_threshold * 0.7, 2.0)
            timeout = min(base_timeout * 1.5, 60.0)

        changed = (
            threshold != self._thresholds.failure_threshold
            or timeout != self._thresholds.reset_timeout_seconds
        )
        self._thresholds.trend = trend
        self._thresholds.last_adjustment = now
        if changed:
            self._thresholds.failure_threshold = threshold
            self._thresholds.reset_timeout_seconds = timeout
            self._thresholds.adjustment_count += 1
            self._logger.info(
                "circuit_breaker",
                "Adaptive thresholds adjusted",
                resource=self._name,
                trend=trend.value,
                failure_threshold=threshold,
                reset_timeout_seconds=timeout,
            )

    def reset_adaptive_thresholds(self) -> None:
        """Return thresholds and progressive timeout to configured values."""
        self._thresholds = AdaptiveThresholds(
            failure_threshold=self._adaptive.failure_threshold,
            reset_timeout_seconds=self._adaptive.reset_timeout_seconds,
            last_adjustment=self._clock(),
        )
        self._timeout_step = 0
        self._consecutive_failures = 0

    # Load

    def _compute_load_level(self, cpu: float, memory: float, active: int) -> LoadLevel:
        load = self._adaptive.load
        if (
            cpu > load.cpu_threshold * 1.5
            or memory > load.memory_threshold * 1.5
            or active > load.active_queries_threshold * 2
        ):
            return LoadLevel.CRITICAL
        if (
            cpu > load.cpu_threshold
            or memory > load.memory_threshold
            or active > load.active_queries_threshold
        ):
            return LoadLevel.HIGH
        if (
            cpu > load.cpu_threshold * 0.7
            or memory > load.memory_threshold * 0.7
            or active > load.active_queries_threshold * 0.7
        ):
            return LoadLevel.MEDIUM
        return LoadLevel.LOW

    async def update_system_load(self) -> SystemLoadMetrics:
        """Re-estimate load from recent samples and the cache footprint."""
        load = self._adaptive.load
        now = self._clock()
        avg = self._average_duration(load.duration_window_seconds) or 0.0
        cpu = min(100.0, avg / 1000 * 20)
        memory = 0.0
        if self._cache is not None:
            size = await self._cache.size()
            memory = min(100.0, size.bytes / load.memory_budget_bytes * 100)
        active = sum(1 for m in self._metrics if m.timestamp >= now - load.active_window_seconds)

        level = self._compute_load_level(cpu, memory, active)
        if level != self._load.load_level:
            self._logger.info(
                "circuit_breaker",
                f"Load level changed to {level.value}",
                resource=self._name,
                previous=self._load.load_level.value,
                cpu_estimate=round(cpu, 1),
                memory_estimate=round(memory, 1),
                active_queries=active,
            )
        self._load = SystemLoadMetrics(
            cpu_estimate=cpu,
            memory_estimate=memory,
            active_queries=active,
            avg_response_time_ms=avg,
            load_level=level,
            last_updated=now,
        )
        return self._load

    def get_system_load_metrics(self) -> SystemLoadMetrics:
        """Latest load estimate."""
        return SystemLoadMetrics(**vars(self._load))

    async def tick(self) -> None:
        """Refresh load and review thresholds (scheduled every 30s)."""
        if self._adaptive.load.enabled:
            await self.update_system_load()
        self._maybe_adapt_thresholds()

    # Observers

    def get_enhanced_state(self) -> AdaptiveCircuitSnapshot:
        """Snapshot including performance over the last 5 minutes."""
        base = self.get_state()
        since = self._clock() - 300
        recent = [m for m in self._metrics if m.timestamp >= since]
        return AdaptiveCircuitSnapshot(
            **vars(base),
            avg_duration_ms=statistics.mean(m.duration_ms for m in recent) if recent else 0.0,
            success_rate=sum(m.success for m in recent) / len(recent) if recent else 1.0,
            cache_utilization=(
                sum(m.cache_available for m in recent) / len(recent) if recent else 0.0
            ),
            cache_serves=self._cache_serves,
            thresholds=AdaptiveThresholds(**vars(self._thresholds)),
            load=self.get_system_load_metrics(),
            effective_reset_timeout_seconds=self._effective_reset_timeout(),
        )

    def get_metrics(self) -> list[PerformanceMetric]:
        return list(self._metrics)

    def reset(self) -> None:
        super().reset()
        self._consecutive_failures = 0
        self._timeout_step = 0
