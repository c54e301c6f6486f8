"""
Performance alerting and rollback.

Every ``tick()`` samples :class:`SystemMetrics` into a bounded history
and evaluates the enabled rules against it. A breached rule fires an
alert (unless it is cooling down) and runs the rule's actions; an active
alert resolves once its metric is back inside the hysteresis band.
"""

from __future__ import annotations

import itertools
import math
import statistics
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from clinic_resilience.alerting.actions import ActionExecutor
from clinic_resilience.alerting.alerts import Alert
from clinic_resilience.alerting.rules import (
    Aggregation,
    AlertMetric,
    AlertRule,
    AlertSeverity,
    MetricType,
    default_alert_rules,
    format_alert_message,
)
from clinic_resilience.resilience.adaptive import PerformanceTrend
from clinic_resilience.resilience.circuit_breaker import CircuitState
from clinic_resilience.telemetry import ResilienceLogger

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    import httpx

    from clinic_resilience.cache import QueryCache
    from clinic_resilience.flags import FeatureFlagStore
    from clinic_resilience.resilience.dedup import QueryDeduplicator
    from clinic_resilience.resilience.registry import ResourceRegistry
    from clinic_resilience.telemetry import MetricsCollector

DAY_SECONDS = 24 * 60 * 60

# Cache footprint reported as a share of this budget
MEMORY_BUDGET_BYTES = 100 * 1024 * 1024

_LOWER_IS_BETTER = {MetricType.RESPONSE_TIME, MetricType.P95_RESPONSE_TIME, MetricType.ERROR_RATE}

_TREND_METRICS = (
    MetricType.RESPONSE_TIME,
    MetricType.ERROR_RATE,
    MetricType.CACHE_HIT_RATE,
    MetricType.DEDUPLICATION_SAVINGS,
)

_SEVERITY_PENALTY = {
    AlertSeverity.EMERGENCY: 30,
    AlertSeverity.CRITICAL: 30,
    AlertSeverity.WARNING: 10,
}


@dataclass
class SystemMetrics:
    """One sample of system health.

    Query-derived values are only meaningful when ``query_count`` is
    positive; :meth:`value_for` returns None for them otherwise. The
    cache hit rate is None until a cache lookup happened in the window.
    """

    timestamp: float
    query_count: int = 0
    avg_response_time_ms: float = 0.0
    p95_response_time_ms: float = 0.0
    p99_response_time_ms: float = 0.0
    error_rate: float = 0.0
    cache_hit_rate: float | None = None
    cache_size_bytes: int = 0
    circuit_state: CircuitState = CircuitState.CLOSED
    open_circuits: int = 0
    deduplication_savings: float = 0.0
    active_queries: int = 0

    @property
    def memory_usage(self) -> float:
        return min(100.0, self.cache_size_bytes / MEMORY_BUDGET_BYTES * 100)

    def value_for(self, metric: MetricType) -> float | None:
        """Value of one metric, or None when the sample has no data for it."""
        if metric == MetricType.CIRCUIT_BREAKER_STATE:
            return 1.0 if self.circuit_state == CircuitState.OPEN else 0.0
        if metric == MetricType.DEDUPLICATION_SAVINGS:
            return self.deduplication_savings
        if metric == MetricType.MEMORY_USAGE:
            return self.memory_usage
        if metric == MetricType.ACTIVE_QUERIES:
            return float(self.active_queries)
        if self.query_count == 0:
            return None
        if metric == MetricType.RESPONSE_TIME:
            return self.avg_response_time_ms
        if metric == MetricType.P95_RESPONSE_TIME:
            return self.p95_response_time_ms
        if metric == MetricType.ERROR_RATE:
            return self.error_rate
        return self.cache_hit_rate

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "query_count": self.query_count,
            "avg_response_time_ms": self.avg_response_time_ms,
            "p95_response_time_ms": self.p95_response_time_ms,
            "p99_response_time_ms": self.p99_response_time_ms,
            "error_rate": self.error_rate,
            "cache_hit_rate": self.cache_hit_rate,
            "cache_size_bytes": self.cache_size_bytes,
            "memory_usage": self.memory_usage,
            "circuit_state": self.circuit_state.value,
            "open_circuits": self.open_circuits,
            "deduplication_savings": self.deduplication_savings,
            "active_queries": self.active_queries,
        }


class SystemMetricsSampler:
    """Builds :class:`SystemMetrics` from the live components."""

    def __init__(
        self,
        metrics: MetricsCollector | None = None,
        registry: ResourceRegistry | None = None,
        cache: QueryCache | None = None,
        deduplicator: QueryDeduplicator | None = None,
        window_ms: float = 5 * 60 * 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._metrics = metrics
        self._registry = registry
        self._cache = cache
        self._dedup = deduplicator
        self._window_ms = window_ms
        self._clock = clock

    async def sample(self) -> SystemMetrics:
        sample = SystemMetrics(timestamp=self._clock())
        if self._metrics is not None:
            aggregated = self._metrics.get_aggregated_metrics(self._window_ms)
            sample.query_count = aggregated.total_queries
            sample.avg_response_time_ms = aggregated.avg_response_time_ms
            sample.p95_response_time_ms = aggregated.p95_response_time_ms
            sample.p99_response_time_ms = aggregated.p99_response_time_ms
            sample.error_rate = aggregated.error_rate
            sample.cache_hit_rate = aggregated.cache_hit_rate
        if self._registry is not None:
            sample.circuit_state = self._registry.worst_state()
            sample.open_circuits = self._registry.open_count()
        if self._cache is not None:
            sample.cache_size_bytes = (await self._cache.size()).bytes
        if self._dedup is not None:
            stats = self._dedup.get_stats()
            sample.deduplication_savings = stats.savings_percentage
            sample.active_queries = stats.in_flight_count
        return sample


def aggregate(values: Sequence[float], metric: AlertMetric) -> float:
    """Aggregate a metric series the way the rule asks for."""
    if metric.aggregation == Aggregation.AVERAGE:
        return statistics.fmean(values)
    if metric.aggregation == Aggregation.MAX:
        return max(values)
    if metric.aggregation == Aggregation.MIN:
        return min(values)
    if metric.aggregation == Aggregation.SUM:
        return math.fsum(values)
    if metric.aggregation == Aggregation.COUNT:
        return float(len(values))
    ordered = sorted(values)
    index = math.ceil((metric.percentile or 100) / 100 * len(ordered)) - 1
    return ordered[max(0, index)]


@dataclass
class MetricTrend:
    """Direction of one metric over the last hour."""

    metric: MetricType
    trend: PerformanceTrend
    change_percent: float
    data_points: list[tuple[float, float]] = field(default_factory=list)


@dataclass
class AlertingMetrics:
    """Summary of the alerting system for dashboards."""

    total_rules: int
    active_alerts: int
    alerts_last_24h: int
    alerts_by_severity: dict[str, int]
    top_rules: list[tuple[str, int]]
    avg_resolution_seconds: float
    health_score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_rules": self.total_rules,
            "active_alerts": self.active_alerts,
            "alerts_last_24h": self.alerts_last_24h,
            "alerts_by_severity": dict(self.alerts_by_severity),
            "top_rules": [{"rule_id": r, "count": c} for r, c in self.top_rules],
            "avg_resolution_seconds": self.avg_resolution_seconds,
            "health_score": self.health_score,
        }


class PerformanceAlertingSystem:
    """Evaluates alert rules against sampled system metrics.

    Example:
        >>> alerting = PerformanceAlertingSystem(sampler=sampler, flags=flags)
        >>> await alerting.tick()  # normally every 30s
        >>> [alert.rule_id for alert in alerting.get_active_alerts()]
        ['high_response_time']
    """

    def __init__(
        self,
        sampler: SystemMetricsSampler | None = None,
        flags: FeatureFlagStore | None = None,
        rules: Sequence[AlertRule] | None = None,
        logger: ResilienceLogger | None = None,
        clock: Callable[[], float] = time.time,
        http_client: httpx.AsyncClient | None = None,
        max_history: int = 1000,
        history_max_age_seconds: float = DAY_SECONDS,
        webhook_timeout_seconds: float = 5.0,
    ) -> None:
        """Initialize alerting.

        Args:
            sampler: Source of system metrics for ``tick()``
            flags: Feature flag store used by rollback actions
            rules: Alert rules; the built-in defaults when not given
            logger: Structured logger
            clock: Time source (seconds)
            http_client: Client for webhook actions
            max_history: Metric samples kept
            history_max_age_seconds: Samples and alerts older than this are
                pruned
            webhook_timeout_seconds: Timeout of webhook actions
        """
        self._sampler = sampler
        self._logger = logger or ResilienceLogger()
        self._clock = clock
        self._actions = ActionExecutor(
            flags=flags,
            logger=self._logger,
            http_client=http_client,
            clock=clock,
            webhook_timeout_seconds=webhook_timeout_seconds,
        )
        self._rules: dict[str, AlertRule] = {}
        for rule in default_alert_rules() if rules is None else rules:
            self._rules[rule.id] = rule
        self._history: deque[SystemMetrics] = deque(maxlen=max_history)
        self._max_age = history_max_age_seconds
        self._active: dict[str, Alert] = {}
        self._alerts: list[Alert] = []
        self._last_fired: dict[str, float] = {}
        self._sequence = itertools.count(1)

    # Rules

    def add_rule(self, rule: AlertRule) -> None:
        self._rules[rule.id] = rule
        self._logger.info("alerting", f"Alert rule added: {rule.name}", rule_id=rule.id)

    def remove_rule(self, rule_id: str) -> bool:
        removed = self._rules.pop(rule_id, None) is not None
        if removed:
            self._logger.info("alerting", "Alert rule removed", rule_id=rule_id)
        return removed

    def update_rule(self, rule_id: str, **updates: Any) -> AlertRule | None:
        """Change fields of a rule; the result is validated again.

        Returns:
            The updated rule, or None when the rule does not exist
        """
        rule = self._rules.get(rule_id)
        if rule is None:
            return None
        updated = AlertRule.model_validate({**rule.model_dump(), **updates, "id": rule_id})
        self._rules[rule_id] = updated
        self._logger.info("alerting", "Alert rule updated", rule_id=rule_id, fields=sorted(updates))
        return updated

    def get_rules(self) -> list[AlertRule]:
        return list(self._rules.values())

    def get_rule(self, rule_id: str) -> AlertRule | None:
        return self._rules.get(rule_id)

    def on_notification(self, listener: Callable[[Alert, str], None]) -> Callable[[], None]:
        """Register a listener for notify actions."""
        return self._actions.on_notification(listener)

    # Evaluation

    def record_metrics(self, metrics: SystemMetrics) -> None:
        """Add a sample to the history."""
        self._history.append(metrics)

    async def tick(self) -> list[Alert]:
        """Sample, evaluate and prune (scheduled every 30s).

        Returns:
            Alerts fired during this tick
        """
        if self._sampler is not None:
            self.record_metrics(await self._sampler.sample())
        fired = await self.evaluate()
        self._prune()
        return fired

    async def evaluate(self) -> list[Alert]:
        """Evaluate every enabled rule against the history."""
        fired: list[Alert] = []
        for rule in list(self._rules.values()):
            if not rule.enabled:
                continue
            try:
                alert = await self._evaluate_rule(rule)
            except Exception as e:
                self._logger.error(
                    "alerting", "Alert rule evaluation failed", error=e, rule_id=rule.id
                )
                continue
            if alert is not None:
                fired.append(alert)
        return fired

    def _rule_value(self, rule: AlertRule, now: float) -> float | None:
        since = now - rule.window_ms / 1000
        values = [
            value
            for sample in self._history
            if sample.timestamp >= since
            and (value := sample.value_for(rule.metric.type)) is not None
        ]
        if len(values) < rule.min_samples:
            return None
        return aggregate(values, rule.metric)

    async def _evaluate_rule(self, rule: AlertRule) -> Alert | None:
        now = self._clock()
        value = self._rule_value(rule, now)
        if value is None:
            return None

        if not rule.breached(value):
            if rule.resolved(value):
                for alert in [a for a in self._active.values() if a.rule_id == rule.id]:
                    self.resolve_alert(alert.id, "Condition no longer met")
            return None

        last = self._last_fired.get(rule.id)
        if last is not None and now - last < rule.cooldown_ms / 1000:
            return None
        return await self._fire(rule, value, now)

    async def _fire(self, rule: AlertRule, value: float, now: float) -> Alert:
        alert = Alert(
            id=f"{rule.id}_{int(now * 1000)}_{next(self._sequence)}",
            rule_id=rule.id,
            rule_name=rule.name,
            timestamp=now,
            current_value=value,
            threshold=rule.threshold,
            severity=rule.severity,
            message=format_alert_message(rule, value),
            context={
                "metric": rule.metric.type.value,
                "aggregation": rule.metric.aggregation.value,
                "operator": rule.operator.value,
                "window_ms": rule.window_ms,
            },
        )
        self._last_fired[rule.id] = now
        self._active[alert.id] = alert
        self._alerts.append(alert)
        self._logger.warning(
            "alerting",
            f"Alert triggered: {alert.message}",
            alert_id=alert.id,
            rule_id=rule.id,
            severity=rule.severity.value,
        )
        for action in rule.actions:
            alert.actions_taken.append(await self._actions.execute(action, alert, rule))
        return alert

    def resolve_alert(self, alert_id: str, reason: str = "Manual resolution") -> bool:
        """Resolve an active alert.

        Returns:
            False when no such alert is active
        """
        alert = self._active.pop(alert_id, None)
        if alert is None:
            return False
        alert.active = False
        alert.resolved_at = self._clock()
        alert.resolution_reason = reason
        self._logger.info(
            "alerting", f"Alert resolved: {alert.rule_name}", alert_id=alert_id, reason=reason
        )
        return True

    def _prune(self) -> None:
        cutoff = self._clock() - self._max_age
        while self._history and self._history[0].timestamp < cutoff:
            self._history.popleft()
        self._alerts = [a for a in self._alerts if a.timestamp >= cutoff or a.active]

    # Readers

    def get_alerts(self, window_ms: float | None = None) -> list[Alert]:
        """Alerts fired within the window (all retained alerts without one)."""
        if window_ms is None:
            return list(self._alerts)
        since = self._clock() - window_ms / 1000
        return [a for a in self._alerts if a.timestamp >= since]

    def get_active_alerts(self) -> list[Alert]:
        return list(self._active.values())

    def get_metrics_history(self) -> list[SystemMetrics]:
        return list(self._history)

    def get_alerting_metrics(self) -> AlertingMetrics:
        now = self._clock()
        recent = [a for a in self._alerts if a.timestamp >= now - DAY_SECONDS]
        resolution = [
            a.resolution_seconds for a in self._alerts if a.resolution_seconds is not None
        ]
        penalty = sum(_SEVERITY_PENALTY.get(a.severity, 0) for a in self._active.values())
        return AlertingMetrics(
            total_rules=len(self._rules),
            active_alerts=len(self._active),
            alerts_last_24h=len(recent),
            alerts_by_severity=dict(Counter(a.severity.value for a in self._alerts)),
            top_rules=Counter(a.rule_id for a in self._alerts).most_common(5),
            avg_resolution_seconds=statistics.fmean(resolution) if resolution else 0.0,
            health_score=max(0.0, 100.0 - penalty),
        )

    def get_performance_trends(self) -> list[MetricTrend]:
        """Compare the older and newer half of the last hour per metric.

        Returns an empty list with fewer than 10 samples.
        """
        since = self._clock() - 60 * 60
        recent = [s for s in self._history if s.timestamp >= since]
        if len(recent) < 10:
            return []

        trends: list[MetricTrend] = []
        for metric in _TREND_METRICS:
            points = [
                (s.timestamp, value)
                for s in recent
                if (value := s.value_for(metric)) is not None
            ]
            if len(points) < 2:
                continue
            middle = len(points) // 2
            first = statistics.fmean(v for _, v in points[:middle])
            second = statistics.fmean(v for _, v in points[middle:])
            change = (second - first) / first * 100 if first else 0.0

            trend = PerformanceTrend.STABLE
            if abs(change) > 5:
                better = change < 0 if metric in _LOWER_IS_BETTER else change > 0
                trend = PerformanceTrend.IMPROVING if better else PerformanceTrend.DEGRADING
            trends.append(MetricTrend(metric, trend, change, points))
        return trends

    def reset(self) -> None:
        self._history.clear()
        self._active.clear()
        self._alerts.clear()
        self._last_fired.clear()
