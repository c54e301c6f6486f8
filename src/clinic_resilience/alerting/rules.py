"""
Alert rule models.

Rules are declarative pydantic models so they can be shipped as YAML next
to the deployment and validated on load.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from clinic_resilience.errors import ConfigurationError

MINUTE_MS = 60 * 1000

# Resolution band relative to the trigger threshold
HYSTERESIS = 0.1


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class MetricType(str, Enum):
    """System metrics a rule can watch."""

    RESPONSE_TIME = "response_time"
    P95_RESPONSE_TIME = "p95_response_time"
    ERROR_RATE = "error_rate"
    CACHE_HIT_RATE = "cache_hit_rate"
    CIRCUIT_BREAKER_STATE = "circuit_breaker_state"
    DEDUPLICATION_SAVINGS = "deduplication_savings"
    MEMORY_USAGE = "memory_usage"
    ACTIVE_QUERIES = "active_queries"


class Aggregation(str, Enum):
    AVERAGE = "average"
    MAX = "max"
    MIN = "min"
    SUM = "sum"
    COUNT = "count"
    PERCENTILE = "percentile"


class Operator(str, Enum):
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"

    def compare(self, value: float, threshold: float) -> bool:
        if self is Operator.GREATER_THAN:
            return value > threshold
        if self is Operator.LESS_THAN:
            return value < threshold
        if self is Operator.EQUALS:
            return value == threshold
        return value != threshold


class ActionType(str, Enum):
    """What an alert does when it fires."""

    NOTIFY = "notify"
    LOG = "log"
    ROLLBACK_FEATURE = "rollback_feature"
    EMERGENCY_ROLLBACK = "emergency_rollback"
    WEBHOOK = "webhook"


class AlertMetric(BaseModel):
    """Metric selector and aggregation."""

    model_config = ConfigDict(extra="forbid")

    type: MetricType = Field(description="Metric to watch")
    aggregation: Aggregation = Field(default=Aggregation.AVERAGE)
    percentile: float | None = Field(
        default=None, gt=0, le=100, description="Percentile for percentile aggregation"
    )

    @model_validator(mode="after")
    def _percentile_required(self) -> AlertMetric:
        if self.aggregation == Aggregation.PERCENTILE and self.percentile is None:
            raise ValueError("percentile aggregation needs a percentile value")
        return self


class AlertAction(BaseModel):
    """An action executed when a rule fires."""

    model_config = ConfigDict(extra="forbid")

    type: ActionType
    message: str | None = Field(
        default=None,
        description="Template; {current_value}, {threshold} and {rule_name} are substituted",
    )
    feature: str | None = Field(default=None, description="Feature to roll back")
    webhook_url: str | None = Field(default=None, description="Webhook endpoint")
    log_level: str = Field(default="warning", pattern="^(debug|info|warning|error|critical)$")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _required_fields(self) -> AlertAction:
        if self.type == ActionType.ROLLBACK_FEATURE and not self.feature:
            raise ValueError("rollback_feature action needs a feature")
        if self.type == ActionType.WEBHOOK and not self.webhook_url:
            raise ValueError("webhook action needs a webhook_url")
        return self


class AlertRule(BaseModel):
    """Declarative alert rule.

    Example:
        >>> rule = AlertRule(
        ...     id="slow_queries",
        ...     name="Slow Queries",
        ...     metric=AlertMetric(type=MetricType.RESPONSE_TIME),
        ...     threshold=2000,
        ...     window_ms=5 * MINUTE_MS,
        ... )
        >>> rule.breached(2500), rule.resolved(1900), rule.resolved(1700)
        (True, False, True)
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str
    description: str = ""
    metric: AlertMetric
    threshold: float
    operator: Operator = Operator.GREATER_THAN
    window_ms: int = Field(gt=0, description="Evaluation window")
    min_samples: int = Field(default=1, ge=1, description="Samples needed in the window")
    severity: AlertSeverity = AlertSeverity.WARNING
    enabled: bool = True
    actions: list[AlertAction] = Field(default_factory=list)
    cooldown_ms: int = Field(default=10 * MINUTE_MS, ge=0)
    tags: list[str] = Field(default_factory=list)

    def breached(self, value: float) -> bool:
        return self.operator.compare(value, self.threshold)

    def resolved(self, value: float) -> bool:
        """Whether the value is back inside the hysteresis band."""
        if self.operator == Operator.GREATER_THAN:
            return not Operator.GREATER_THAN.compare(value, self.threshold * (1 - HYSTERESIS))
        if self.operator == Operator.LESS_THAN:
            return not Operator.LESS_THAN.compare(value, self.threshold * (1 + HYSTERESIS))
        return not self.breached(value)


def format_metric_value(value: float, metric_type: MetricType) -> str:
    if metric_type in (MetricType.RESPONSE_TIME, MetricType.P95_RESPONSE_TIME):
        return f"{value:.0f}ms"
    if metric_type in (MetricType.ERROR_RATE, MetricType.CACHE_HIT_RATE):
        return f"{value * 100:.1f}%"
    if metric_type in (MetricType.MEMORY_USAGE, MetricType.DEDUPLICATION_SAVINGS):
        return f"{value:.1f}%"
    return f"{value:g}"


def format_alert_message(rule: AlertRule, current_value: float, template: str | None = None) -> str:
    if template is None:
        template = (
            f"{rule.name}: current value {{current_value}} "
            f"{rule.operator.value.replace('_', ' ')} threshold {{threshold}}"
        )
    return (
        template.replace("{current_value}", format_metric_value(current_value, rule.metric.type))
        .replace("{threshold}", format_metric_value(rule.threshold, rule.metric.type))
        .replace("{rule_name}", rule.name)
    )


def default_alert_rules() -> list[AlertRule]:
    """Built-in rules for query latency, errors, cache and circuits."""
    return [
        AlertRule(
            id="high_response_time",
            name="High Response Time",
            description="Average response time above 2 seconds",
            metric=AlertMetric(type=MetricType.RESPONSE_TIME),
            threshold=2000,
            window_ms=5 * MINUTE_MS,
            min_samples=5,
            severity=AlertSeverity.WARNING,
            actions=[
                AlertAction(
                    type=ActionType.NOTIFY,
                    message=(
                        "Average response time is {current_value}, "
                        "exceeding threshold of {threshold}"
                    ),
                ),
                AlertAction(
                    type=ActionType.LOG,
                    log_level="warning",
                    message="High response time detected",
                ),
            ],
            cooldown_ms=10 * MINUTE_MS,
            tags=["performance", "response_time"],
        ),
        AlertRule(
            id="critical_response_time",
            name="Critical Response Time",
            description="Average response time above 5 seconds",
            metric=AlertMetric(type=MetricType.RESPONSE_TIME),
            threshold=5000,
            window_ms=2 * MINUTE_MS,
            min_samples=3,
            severity=AlertSeverity.EMERGENCY,
            actions=[
                AlertAction(
                    type=ActionType.NOTIFY,
                    message=(
                        "CRITICAL: average response time is {current_value}, "
                        "exceeding critical threshold"
                    ),
                ),
                AlertAction(
                    type=ActionType.EMERGENCY_ROLLBACK,
                    message="Emergency rollback triggered by critical response time",
                ),
            ],
            cooldown_ms=5 * MINUTE_MS,
            tags=["performance", "critical", "response_time"],
        ),
        AlertRule(
            id="high_error_rate",
            name="High Error Rate",
            description="Error rate above 5%",
            metric=AlertMetric(type=MetricType.ERROR_RATE),
            threshold=0.05,
            window_ms=5 * MINUTE_MS,
            min_samples=5,
            severity=AlertSeverity.CRITICAL,
            actions=[
                AlertAction(
                    type=ActionType.NOTIFY,
                    message="Error rate is {current_value}, exceeding threshold of {threshold}",
                )
            ],
            cooldown_ms=10 * MINUTE_MS,
            tags=["errors", "critical"],
        ),
        AlertRule(
            id="low_cache_hit_rate",
            name="Low Cache Hit Rate",
            description="Cache hit rate below 50%",
            metric=AlertMetric(type=MetricType.CACHE_HIT_RATE),
            threshold=0.5,
            operator=Operator.LESS_THAN,
            window_ms=10 * MINUTE_MS,
            min_samples=10,
            severity=AlertSeverity.WARNING,
            actions=[
                AlertAction(
                    type=ActionType.NOTIFY,
                    message="Cache hit rate is {current_value}, below optimal threshold",
                )
            ],
            cooldown_ms=15 * MINUTE_MS,
            tags=["cache", "performance"],
        ),
        AlertRule(
            id="circuit_breaker_open",
            name="Circuit Breaker Open",
            description="A circuit breaker is open",
            metric=AlertMetric(type=MetricType.CIRCUIT_BREAKER_STATE, aggregation=Aggregation.MAX),
            threshold=0,
            window_ms=1 * MINUTE_MS,
            min_samples=1,
            severity=AlertSeverity.CRITICAL,
            actions=[
                AlertAction(
                    type=ActionType.NOTIFY,
                    message="Circuit breaker has opened - system may be experiencing issues",
                )
            ],
            cooldown_ms=5 * MINUTE_MS,
            tags=["circuit_breaker", "critical"],
        ),
    ]


def parse_alert_rules(data: Any, source: str | None = None) -> list[AlertRule]:
    """Validate rule definitions.

    Args:
        data: A list of rule mappings, or a mapping with a ``rules`` list
        source: Where the data came from, for error messages

    Raises:
        ConfigurationError: If the data is not a valid rule list
    """
    if isinstance(data, dict):
        data = data.get("rules", [])
    if not isinstance(data, list):
        raise ConfigurationError(
            "Alert rules must be a list or a mapping with a 'rules' list",
            path=source,
        )
    try:
        rules = [AlertRule.model_validate(item) for item in data]
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid alert rule: {e}",
            path=source,
            hint="Check metric, operator and action fields against the rule schema",
        ) from e

    ids = [rule.id for rule in rules]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate alert rule ids: {', '.join(duplicates)}", path=source)
    return rules


def load_alert_rules(path: str | Path) -> list[AlertRule]:
    """Load alert rules from a YAML file.

    Example:
        >>> rules = load_alert_rules("deploy/alert_rules.yaml")
        >>> [rule.id for rule in rules]
        ['slow_appointments']
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read alert rules: {e}", path=str(path)) from e
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML: {e}", path=str(path)) from e
    return parse_alert_rules(data or [], source=str(path))
