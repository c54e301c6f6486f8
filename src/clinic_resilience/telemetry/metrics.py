"""
Query metrics for clinic-resilience.

Collects per-query samples and exposes windowed aggregates for
dashboards and the alerting system.
"""

from __future__ import annotations

import math
import statistics
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence


def percentile(values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile.

    Args:
        values: Samples (any order)
        pct: Percentile in 0-100

    Returns:
        The sample at rank ``ceil(pct/100 * n)``, or 0.0 for no samples
    """
    if not values:
        return 0.0
    ordered = sorted(values)
    index = max(0, min(len(ordered) - 1, math.ceil(pct / 100 * len(ordered)) - 1))
    return ordered[index]


@dataclass
class QuerySample:
    """One finished query as seen by the resilience layer."""

    timestamp: float
    resource: str
    duration_ms: float
    success: bool
    category: str | None = None
    cache_hit: bool = False
    cache_lookup: bool = False
    from_fallback: bool = False


@dataclass
class AggregatedMetrics:
    """Aggregated query metrics over a time window.

    Attributes:
        window_ms: Window length the aggregate covers
        total_queries: Number of samples in the window
        successful_queries: Samples that succeeded
        failed_queries: Samples that failed
        durations_ms: Durations of all samples
        cache_lookups: Samples for which a cache was consulted
        cache_hits: Samples answered from cache
        errors_by_category: Failure counts per error category
    """

    window_ms: float
    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    durations_ms: list[float] = field(default_factory=list)
    cache_lookups: int = 0
    cache_hits: int = 0
    fallbacks: int = 0
    errors_by_category: dict[str, int] = field(default_factory=dict)
    by_resource: dict[str, int] = field(default_factory=dict)

    @property
    def error_rate(self) -> float:
        """Failed share of queries (0-1)."""
        if self.total_queries == 0:
            return 0.0
        return self.failed_queries / self.total_queries

    @property
    def cache_hit_rate(self) -> float | None:
        """Share of cache lookups that hit (0-1), None without lookups."""
        if self.cache_lookups == 0:
            return None
        return self.cache_hits / self.cache_lookups

    @property
    def avg_response_time_ms(self) -> float:
        if not self.durations_ms:
            return 0.0
        return statistics.mean(self.durations_ms)

    @property
    def p95_response_time_ms(self) -> float:
        return percentile(self.durations_ms, 95)

    @property
    def p99_response_time_ms(self) -> float:
        return percentile(self.durations_ms, 99)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for dashboards."""
        return {
            "window_ms": self.window_ms,
            "total_queries": self.total_queries,
            "successful_queries": self.successful_queries,
            "failed_queries": self.failed_queries,
            "error_rate": self.error_rate,
            "cache_lookups": self.cache_lookups,
            "cache_hit_rate": self.cache_hit_rate,
            "fallbacks": self.fallbacks,
            "avg_response_time_ms": self.avg_response_time_ms,
            "p95_response_time_ms": self.p95_response_time_ms,
            "p99_response_time_ms": self.p99_response_time_ms,
            "errors_by_category": dict(self.errors_by_category),
            "by_resource": dict(self.by_resource),
        }


class MetricsCollector:
    """Collects query samples in a bounded rolling buffer.

    Example:
        >>> collector = MetricsCollector()
        >>> collector.record_query("patients", 120.0, success=True)
        >>> collector.get_aggregated_metrics(60_000).total_queries
        1
    """

    def __init__(
        self,
        max_samples: int = 5000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize collector.

        Args:
            max_samples: Oldest samples are evicted beyond this size
            clock: Timestamp source (seconds)
        """
        self._samples: deque[QuerySample] = deque(maxlen=max_samples)
        self._clock = clock

    def record_query(
        self,
        resource: str,
        duration_ms: float,
        success: bool,
        category: str | None = None,
        cache_hit: bool = False,
        cache_lookup: bool = False,
        from_fallback: bool = False,
    ) -> QuerySample:
        """Record a finished query.

        Args:
            resource: Resource (table) that was queried
            duration_ms: Wall time including retries
            success: Whether the caller received data
            category: Error category value for failures
            cache_hit: Whether the data came from cache
            cache_lookup: Whether a cache was consulted; implied by a hit
            from_fallback: Whether progressive recovery produced the data
        """
        sample = QuerySample(
            timestamp=self._clock(),
            resource=resource,
            duration_ms=duration_ms,
            success=success,
            category=category,
            cache_hit=cache_hit,
            cache_lookup=cache_lookup or cache_hit,
            from_fallback=from_fallback,
        )
        self._samples.append(sample)
        return sample

    def samples_since(self, since: float) -> list[QuerySample]:
        """Samples recorded at or after ``since``."""
        return [s for s in self._samples if s.timestamp >= since]

    def get_aggregated_metrics(self, window_ms: float) -> AggregatedMetrics:
        """Aggregate samples recorded within the last ``window_ms``."""
        samples = self.samples_since(self._clock() - window_ms / 1000)
        failures = [s for s in samples if not s.success]
        return AggregatedMetrics(
            window_ms=window_ms,
            total_queries=len(samples),
            successful_queries=len(samples) - len(failures),
            failed_queries=len(failures),
            durations_ms=[s.duration_ms for s in samples],
            cache_lookups=sum(1 for s in samples if s.cache_lookup),
            cache_hits=sum(1 for s in samples if s.cache_hit),
            fallbacks=sum(1 for s in samples if s.from_fallback),
            errors_by_category=dict(Counter(s.category or "unknown_error" for s in failures)),
            by_resource=dict(Counter(s.resource for s in samples)),
        )

    def reset(self) -> None:
        """Drop all samples."""
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)
