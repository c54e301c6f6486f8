"""Tests for performance alerting and rollback actions."""

import json

import httpx
import pytest
from pydantic import ValidationError

from clinic_resilience.alerting import (
    ActionExecutor,
    ActionType,
    Aggregation,
    Alert,
    AlertAction,
    AlertMetric,
    AlertRule,
    AlertSeverity,
    MetricType,
    Operator,
    PerformanceAlertingSystem,
    SystemMetrics,
    SystemMetricsSampler,
    aggregate,
    default_alert_rules,
    format_alert_message,
    format_metric_value,
    load_alert_rules,
    parse_alert_rules,
)
from clinic_resilience.errors import ConfigurationError
from clinic_resilience.flags import InMemoryFeatureFlags
from clinic_resilience.resilience import (
    CircuitBreakerConfig,
    PerformanceTrend,
    ResourceRegistry,
)
from clinic_resilience.telemetry import LogLevel, MetricsCollector

WEBHOOK_URL = "https://hooks.example.com/alerts"


def make_rule(**overrides) -> AlertRule:
    data = {
        "id": "slow_queries",
        "name": "Slow Queries",
        "metric": {"type": "response_time"},
        "threshold": 2000,
        "window_ms": 60_000,
    }
    data.update(overrides)
    return AlertRule.model_validate(data)


def make_alert(clock, severity: AlertSeverity = AlertSeverity.WARNING) -> Alert:
    return Alert(
        id="slow_queries_1",
        rule_id="slow_queries",
        rule_name="Slow Queries",
        timestamp=clock(),
        current_value=2500,
        threshold=2000,
        severity=severity,
        message="Slow Queries: current value 2500ms greater than threshold 2000ms",
    )


class TestAlertRule:
    """Tests for AlertRule models."""

    def test_greater_than_hysteresis(self) -> None:
        """Test an alert resolves only below ninety percent of the threshold."""
        rule = make_rule()
        assert rule.breached(2500)
        assert not rule.breached(2000)
        assert not rule.resolved(1900)
        assert rule.resolved(1700)

    def test_less_than_hysteresis(self) -> None:
        """Test a below-threshold rule resolves above 110 percent."""
        rule = make_rule(
            metric={"type": "cache_hit_rate"}, threshold=0.5, operator="less_than"
        )
        assert rule.breached(0.4)
        assert not rule.resolved(0.52)
        assert rule.resolved(0.56)

    def test_equality_operators(self) -> None:
        """Test equality rules resolve as soon as they stop matching."""
        rule = make_rule(metric={"type": "active_queries"}, threshold=0, operator="equals")
        assert rule.breached(0)
        assert rule.resolved(1)

    def test_validation(self) -> None:
        """Test invalid rules are rejected."""
        with pytest.raises(ValidationError):
            AlertMetric(type=MetricType.RESPONSE_TIME, aggregation=Aggregation.PERCENTILE)
        with pytest.raises(ValidationError):
            AlertAction(type=ActionType.ROLLBACK_FEATURE)
        with pytest.raises(ValidationError):
            AlertAction(type=ActionType.WEBHOOK)
        with pytest.raises(ValidationError):
            AlertAction(type=ActionType.LOG, log_level="loud")
        with pytest.raises(ValidationError):
            make_rule(window_ms=0)
        with pytest.raises(ValidationError):
            make_rule(unexpected=True)

    def test_default_rules(self) -> None:
        """Test the built-in rule set."""
        rules = {rule.id: rule for rule in default_alert_rules()}
        assert sorted(rules) == [
            "circuit_breaker_open",
            "critical_response_time",
            "high_error_rate",
            "high_response_time",
            "low_cache_hit_rate",
        ]
        assert rules["critical_response_time"].severity == AlertSeverity.EMERGENCY
        assert rules["low_cache_hit_rate"].operator == Operator.LESS_THAN


class TestFormatting:
    """Tests for alert message formatting."""

    def test_metric_values(self) -> None:
        """Test each metric family is formatted in its own unit."""
        assert format_metric_value(2500, MetricType.RESPONSE_TIME) == "2500ms"
        assert format_metric_value(0.053, MetricType.ERROR_RATE) == "5.3%"
        assert format_metric_value(42, MetricType.MEMORY_USAGE) == "42.0%"
        assert format_metric_value(3, MetricType.ACTIVE_QUERIES) == "3"

    def test_default_message(self) -> None:
        """Test the message used when a rule has no template."""
        assert format_alert_message(make_rule(), 2500) == (
            "Slow Queries: current value 2500ms greater than threshold 2000ms"
        )

    def test_template(self) -> None:
        """Test template substitution."""
        message = format_alert_message(
            make_rule(), 3100, "{rule_name} at {current_value} (limit {threshold})"
        )
        assert message == "Slow Queries at 3100ms (limit 2000ms)"


class TestRuleLoading:
    """Tests for parsing and loading rule files."""

    def test_parse_mapping(self) -> None:
        """Test a mapping with a rules list."""
        rules = parse_alert_rules(
            {"rules": [make_rule().model_dump(mode="json")]}, source="inline"
        )
        assert [rule.id for rule in rules] == ["slow_queries"]

    def test_invalid_rule(self) -> None:
        """Test validation errors become configuration errors."""
        with pytest.raises(ConfigurationError) as exc_info:
            parse_alert_rules([{"id": "x", "name": "X"}], source="rules.yaml")
        assert exc_info.value.path == "rules.yaml"
        assert exc_info.value.context.hint is not None

    def test_duplicate_ids(self) -> None:
        """Test rule ids must be unique."""
        data = [make_rule().model_dump(mode="json")] * 2
        with pytest.raises(ConfigurationError, match="Duplicate alert rule ids: slow_queries"):
            parse_alert_rules(data)

    def test_not_a_list(self) -> None:
        """Test a scalar document is rejected."""
        with pytest.raises(ConfigurationError):
            parse_alert_rules("rules")

    def test_load_yaml(self, tmp_path) -> None:
        """Test loading rules from YAML."""
        path = tmp_path / "alert_rules.yaml"
        path.write_text(
            """
rules:
  - id: slow_appointments
    name: Slow Appointments
    metric:
      type: p95_response_time
    threshold: 3000
    window_ms: 300000
    severity: critical
    actions:
      - type: rollback_feature
        feature: appointment_prefetch
"""
        )
        rules = load_alert_rules(path)
        assert len(rules) == 1
        assert rules[0].metric.type == MetricType.P95_RESPONSE_TIME
        assert rules[0].actions[0].feature == "appointment_prefetch"

    def test_load_invalid_yaml(self, tmp_path) -> None:
        """Test malformed YAML and missing files."""
        path = tmp_path / "broken.yaml"
        path.write_text("rules: [unclosed")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_alert_rules(path)
        with pytest.raises(ConfigurationError, match="Cannot read alert rules"):
            load_alert_rules(tmp_path / "missing.yaml")

    def test_load_empty_file(self, tmp_path) -> None:
        """Test an empty file yields no rules."""
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_alert_rules(path) == []


class TestAggregate:
    """Tests for metric aggregation."""

    def test_aggregations(self) -> None:
        """Test each aggregation over a simple series."""
        values = [float(v) for v in range(1, 11)]
        assert aggregate(values, AlertMetric(type=MetricType.RESPONSE_TIME)) == 5.5
        assert aggregate(values, AlertMetric(type="response_time", aggregation="max")) == 10
        assert aggregate(values, AlertMetric(type="response_time", aggregation="min")) == 1
        assert aggregate(values, AlertMetric(type="response_time", aggregation="sum")) == 55
        assert aggregate(values, AlertMetric(type="response_time", aggregation="count")) == 10
        p90 = AlertMetric(type="response_time", aggregation="percentile", percentile=90)
        assert aggregate(values, p90) == 9


class TestPerformanceAlertingSystem:
    """Tests for PerformanceAlertingSystem."""

    def _system(self, clock, logger, *rules: AlertRule, **kwargs) -> PerformanceAlertingSystem:
        return PerformanceAlertingSystem(rules=list(rules), logger=logger, clock=clock, **kwargs)

    def _record(self, system, clock, avg_ms: float, count: int = 1) -> None:
        for _ in range(count):
            system.record_metrics(
                SystemMetrics(timestamp=clock(), query_count=10, avg_response_time_ms=avg_ms)
            )

    @pytest.mark.asyncio
    async def test_fires_when_breached(self, clock, logger) -> None:
        """Test a breached rule fires an alert."""
        system = self._system(clock, logger, make_rule(min_samples=2))
        self._record(system, clock, 3000, count=2)

        fired = await system.evaluate()

        assert len(fired) == 1
        alert = fired[0]
        assert alert.rule_id == "slow_queries"
        assert alert.current_value == 3000
        assert alert.message == "Slow Queries: current value 3000ms greater than threshold 2000ms"
        assert alert.context["aggregation"] == "average"
        assert system.get_active_alerts() == [alert]

    @pytest.mark.asyncio
    async def test_min_samples(self, clock, logger) -> None:
        """Test a rule needs enough samples in its window."""
        system = self._system(clock, logger, make_rule(min_samples=3))
        self._record(system, clock, 3000, count=2)
        assert await system.evaluate() == []

    @pytest.mark.asyncio
    async def test_samples_without_traffic_are_ignored(self, clock, logger) -> None:
        """Test response-time rules skip samples with no queries."""
        system = self._system(clock, logger, make_rule())
        system.record_metrics(SystemMetrics(timestamp=clock(), avg_response_time_ms=9000))
        assert await system.evaluate() == []

    @pytest.mark.asyncio
    async def test_old_samples_leave_the_window(self, clock, logger) -> None:
        """Test samples outside the window are not aggregated."""
        system = self._system(clock, logger, make_rule())
        self._record(system, clock, 3000)
        clock.advance(61)
        assert await system.evaluate() == []

    @pytest.mark.asyncio
    async def test_cooldown(self, clock, logger) -> None:
        """Test a rule does not fire again within its cooldown."""
        system = self._system(clock, logger, make_rule(cooldown_ms=120_000))
        self._record(system, clock, 3000)
        assert len(await system.evaluate()) == 1

        clock.advance(30)
        self._record(system, clock, 3000)
        assert await system.evaluate() == []

        clock.advance(90)
        self._record(system, clock, 3000)
        assert len(await system.evaluate()) == 1
        assert len(system.get_alerts()) == 2

    @pytest.mark.asyncio
    async def test_auto_resolve_with_hysteresis(self, clock, logger) -> None:
        """Test an alert resolves once the value is well below the threshold."""
        system = self._system(clock, logger, make_rule())
        self._record(system, clock, 3000)
        [alert] = await system.evaluate()

        clock.advance(61)
        self._record(system, clock, 1900)
        await system.evaluate()
        assert alert.active

        clock.advance(61)
        self._record(system, clock, 1700)
        await system.evaluate()
        assert not alert.active
        assert alert.resolution_reason == "Condition no longer met"
        assert alert.resolution_seconds == 122
        assert system.get_active_alerts() == []

    @pytest.mark.asyncio
    async def test_manual_resolution(self, clock, logger) -> None:
        """Test resolving by id."""
        system = self._system(clock, logger, make_rule())
        self._record(system, clock, 3000)
        [alert] = await system.evaluate()
        assert system.resolve_alert(alert.id) is True
        assert system.resolve_alert(alert.id) is False
        assert alert.resolution_reason == "Manual resolution"

    @pytest.mark.asyncio
    async def test_disabled_rules_are_skipped(self, clock, logger) -> None:
        """Test disabled rules never fire."""
        system = self._system(clock, logger, make_rule(enabled=False))
        self._record(system, clock, 3000)
        assert await system.evaluate() == []

    @pytest.mark.asyncio
    async def test_tick_samples_components(self, clock, logger) -> None:
        """Test the default circuit rule fires when any breaker is open."""
        registry = ResourceRegistry(
            CircuitBreakerConfig(failure_threshold=1), logger=logger, clock=clock
        )
        registry.get_breaker("patients").record_failure(Exception("network down"))
        sampler = SystemMetricsSampler(
            metrics=MetricsCollector(clock=clock), registry=registry, clock=clock
        )
        system = PerformanceAlertingSystem(sampler=sampler, logger=logger, clock=clock)

        fired = await system.tick()

        assert [alert.rule_id for alert in fired] == ["circuit_breaker_open"]
        sample = system.get_metrics_history()[0]
        assert sample.open_circuits == 1
        assert sample.query_count == 0

    @pytest.mark.asyncio
    async def test_healthy_traffic_fires_nothing(self, clock, logger) -> None:
        """Test fast successful queries without cache lookups raise no default alert."""
        metrics = MetricsCollector(clock=clock)
        sampler = SystemMetricsSampler(metrics=metrics, clock=clock)
        system = PerformanceAlertingSystem(sampler=sampler, logger=logger, clock=clock)

        for _ in range(12):
            metrics.record_query("patients", 120, success=True)
            await system.tick()
            clock.advance(30)

        assert system.get_active_alerts() == []
        sample = system.get_metrics_history()[-1]
        assert sample.query_count > 0
        assert sample.cache_hit_rate is None

        for _ in range(10):
            metrics.record_query("patients", 120, success=False, cache_lookup=True)
            await system.tick()

        assert "low_cache_hit_rate" in {a.rule_id for a in system.get_active_alerts()}

    @pytest.mark.asyncio
    async def test_actions_run_on_fire(self, clock, logger) -> None:
        """Test actions are recorded on the alert."""
        flags = InMemoryFeatureFlags({"appointment_prefetch": True})
        rule = make_rule(
            actions=[
                {"type": "notify"},
                {"type": "rollback_feature", "feature": "appointment_prefetch"},
            ]
        )
        system = self._system(clock, logger, rule, flags=flags)
        notified: list[str] = []
        system.on_notification(lambda alert, message: notified.append(message))
        self._record(system, clock, 3000)

        [alert] = await system.evaluate()

        assert [r.success for r in alert.actions_taken] == [True, True]
        assert notified == [alert.message]
        assert flags.is_enabled("appointment_prefetch") is False

    def test_rule_management(self, clock, logger) -> None:
        """Test adding, updating and removing rules."""
        system = self._system(clock, logger)
        system.add_rule(make_rule())

        updated = system.update_rule("slow_queries", threshold=2500, enabled=False)
        assert updated is not None
        assert updated.threshold == 2500
        assert system.get_rule("slow_queries").enabled is False
        assert system.update_rule("missing", threshold=1) is None
        with pytest.raises(ValidationError):
            system.update_rule("slow_queries", window_ms=-1)

        assert system.remove_rule("slow_queries") is True
        assert system.remove_rule("slow_queries") is False
        assert system.get_rules() == []

    def test_defaults_loaded_without_rules(self, clock, logger) -> None:
        """Test the built-in rules are used by default."""
        system = PerformanceAlertingSystem(logger=logger, clock=clock)
        assert len(system.get_rules()) == 5

    @pytest.mark.asyncio
    async def test_alerting_metrics(self, clock, logger) -> None:
        """Test the dashboard summary and health score."""
        system = self._system(clock, logger, make_rule(severity="critical"))
        self._record(system, clock, 3000)
        await system.evaluate()

        metrics = system.get_alerting_metrics()
        assert metrics.total_rules == 1
        assert metrics.active_alerts == 1
        assert metrics.alerts_last_24h == 1
        assert metrics.alerts_by_severity == {"critical": 1}
        assert metrics.top_rules == [("slow_queries", 1)]
        assert metrics.health_score == 70.0
        assert metrics.to_dict()["top_rules"] == [{"rule_id": "slow_queries", "count": 1}]

    def test_performance_trends(self, clock, logger) -> None:
        """Test trends compare the two halves of the last hour."""
        system = self._system(clock, logger)
        assert system.get_performance_trends() == []

        for avg in [100] * 5 + [200] * 5:
            self._record(system, clock, avg)
            clock.advance(60)

        trends = {t.metric: t for t in system.get_performance_trends()}
        assert trends[MetricType.RESPONSE_TIME].trend == PerformanceTrend.DEGRADING
        assert trends[MetricType.RESPONSE_TIME].change_percent == 100.0
        assert trends[MetricType.ERROR_RATE].trend == PerformanceTrend.STABLE

    @pytest.mark.asyncio
    async def test_history_is_pruned(self, clock, logger) -> None:
        """Test old samples are dropped on tick."""
        system = self._system(clock, logger, history_max_age_seconds=60)
        self._record(system, clock, 100)
        clock.advance(61)
        await system.tick()
        assert system.get_metrics_history() == []


class TestActionExecutor:
    """Tests for ActionExecutor."""

    @pytest.mark.asyncio
    async def test_notify_listeners(self, clock, logger) -> None:
        """Test notification listeners and unsubscribe."""
        executor = ActionExecutor(logger=logger, clock=clock)
        received: list[str] = []
        unsubscribe = executor.on_notification(lambda alert, message: received.append(message))

        action = AlertAction(type=ActionType.NOTIFY, message="Latency at {current_value}")
        result = await executor.execute(action, make_alert(clock), make_rule())
        assert result.success
        assert received == ["Latency at 2500ms"]

        unsubscribe()
        await executor.execute(action, make_alert(clock), make_rule())
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_failing_listener_is_logged(self, clock, logger) -> None:
        """Test a raising listener does not fail the action."""
        executor = ActionExecutor(logger=logger, clock=clock)

        def broken(alert: Alert, message: str) -> None:
            raise RuntimeError("pager down")

        executor.on_notification(broken)
        result = await executor.execute(
            AlertAction(type=ActionType.NOTIFY), make_alert(clock), make_rule()
        )
        assert result.success
        assert logger.get_errors()[-1].message == "Notification listener failed"

    @pytest.mark.asyncio
    async def test_log_action(self, clock, logger) -> None:
        """Test log actions use the configured level."""
        executor = ActionExecutor(logger=logger, clock=clock)
        action = AlertAction(type=ActionType.LOG, log_level="error", message="Queries are slow")
        result = await executor.execute(action, make_alert(clock), make_rule())

        assert result.message == "Logged at error level"
        entry = logger.get_logs(level=LogLevel.ERROR)[-1]
        assert entry.message == "Queries are slow"
        assert entry.context["rule_id"] == "slow_queries"

    @pytest.mark.asyncio
    async def test_rollback_feature(self, clock, logger) -> None:
        """Test rolling back a single feature."""
        flags = InMemoryFeatureFlags({"appointment_prefetch": True})
        executor = ActionExecutor(flags=flags, logger=logger, clock=clock)

        action = AlertAction(type=ActionType.ROLLBACK_FEATURE, feature="appointment_prefetch")
        result = await executor.execute(action, make_alert(clock), make_rule())
        assert result.success
        assert flags.is_enabled("appointment_prefetch") is False

        unknown = AlertAction(type=ActionType.ROLLBACK_FEATURE, feature="nope")
        result = await executor.execute(unknown, make_alert(clock), make_rule())
        assert not result.success
        assert result.error == "Unknown feature: nope"

    @pytest.mark.asyncio
    async def test_emergency_rollback(self, clock, logger) -> None:
        """Test emergency rollback disables every enabled feature."""
        flags = InMemoryFeatureFlags({"a": True, "b": True, "c": False})
        executor = ActionExecutor(flags=flags, logger=logger, clock=clock)
        action = AlertAction(type=ActionType.EMERGENCY_ROLLBACK)

        result = await executor.execute(
            action, make_alert(clock, AlertSeverity.EMERGENCY), make_rule()
        )

        assert result.success
        assert result.message == "Emergency rollback disabled 2 feature(s)"
        assert flags.get_all_flags() == {"a": False, "b": False, "c": False}
        assert logger.get_logs(level=LogLevel.CRITICAL)[-1].context["disabled"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_emergency_rollback_requires_emergency(self, clock, logger) -> None:
        """Test lower severities cannot trigger emergency rollback."""
        flags = InMemoryFeatureFlags({"a": True})
        executor = ActionExecutor(flags=flags, logger=logger, clock=clock)
        result = await executor.execute(
            AlertAction(type=ActionType.EMERGENCY_ROLLBACK),
            make_alert(clock, AlertSeverity.CRITICAL),
            make_rule(),
        )
        assert not result.success
        assert flags.is_enabled("a")

    @pytest.mark.asyncio
    async def test_rollback_without_flag_store(self, clock, logger) -> None:
        """Test rollback fails cleanly without a flag store."""
        executor = ActionExecutor(logger=logger, clock=clock)
        action = AlertAction(type=ActionType.ROLLBACK_FEATURE, feature="x")
        result = await executor.execute(action, make_alert(clock), make_rule())
        assert not result.success
        assert result.error == "No feature flag store configured"

    @pytest.mark.asyncio
    async def test_webhook(self, clock, logger, httpx_mock) -> None:
        """Test webhook delivery posts the alert."""
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=202)
        action = AlertAction(
            type=ActionType.WEBHOOK, webhook_url=WEBHOOK_URL, metadata={"team": "ops"}
        )

        async with httpx.AsyncClient() as client:
            executor = ActionExecutor(logger=logger, http_client=client, clock=clock)
            result = await executor.execute(action, make_alert(clock), make_rule())

        assert result.success
        assert result.message == "Webhook delivered (202)"
        body = json.loads(httpx_mock.get_request().content)
        assert body["alert"]["rule_id"] == "slow_queries"
        assert body["metadata"] == {"team": "ops"}

    @pytest.mark.asyncio
    async def test_webhook_failure(self, clock, logger, httpx_mock) -> None:
        """Test a failing webhook is captured in the result."""
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=500)
        action = AlertAction(type=ActionType.WEBHOOK, webhook_url=WEBHOOK_URL)
        executor = ActionExecutor(logger=logger, clock=clock)

        result = await executor.execute(action, make_alert(clock), make_rule())

        assert not result.success
        assert "500" in (result.error or "")
        assert logger.get_errors()[-1].message == "Alert action 'webhook' failed"
