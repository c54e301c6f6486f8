"""
Alerting module - Metric-driven alerts with automated rollback.

Provides:
- AlertRule: Declarative pydantic rule (metric, aggregation, threshold)
- PerformanceAlertingSystem: Rule evaluation with cooldown and hysteresis
- ActionExecutor: notify, log, feature rollback, emergency rollback, webhook
"""

from clinic_resilience.alerting.actions import ActionExecutor
from clinic_resilience.alerting.alerts import ActionResult, Alert
from clinic_resilience.alerting.rules import (
    ActionType,
    Aggregation,
    AlertAction,
    AlertMetric,
    AlertRule,
    AlertSeverity,
    MetricType,
    Operator,
    default_alert_rules,
    format_alert_message,
    format_metric_value,
    load_alert_rules,
    parse_alert_rules,
)
from clinic_resilience.alerting.system import (
    AlertingMetrics,
    MetricTrend,
    PerformanceAlertingSystem,
    SystemMetrics,
    SystemMetricsSampler,
    aggregate,
)

__all__ = [
    # Actions
    "ActionExecutor",
    "ActionResult",
    "ActionType",
    # Rules
    "Aggregation",
    "Alert",
    "AlertAction",
    "AlertMetric",
    "AlertRule",
    "AlertSeverity",
    # System
    "AlertingMetrics",
    "MetricTrend",
    "MetricType",
    "Operator",
    "PerformanceAlertingSystem",
    "SystemMetrics",
    "SystemMetricsSampler",
    "aggregate",
    "default_alert_rules",
    "format_alert_message",
    "format_metric_value",
    "load_alert_rules",
    "parse_alert_rules",
]
