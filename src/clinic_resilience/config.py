"""
Runtime configuration.

:class:`ResilienceConfig` gathers the component configurations. It can be
built from ``CLINIC_RESILIENCE_*`` environment variables or from a YAML
file::

    adaptive: true
    circuit_breaker:
      failure_threshold: 5
      reset_timeout_seconds: 30
    resources:
      appointments:
        failure_threshold: 3
    dedup:
      request_timeout_seconds: 20
    alerting:
      rules_path: alert_rules.yaml
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

import yaml

from clinic_resilience.cache import CacheEntryConfig
from clinic_resilience.errors import ConfigurationError, ErrorCategory
from clinic_resilience.resilience.adaptive import (
    AdaptiveBreakerConfig,
    LoadMonitoringConfig,
    ProgressiveTimeoutConfig,
)
from clinic_resilience.resilience.circuit_breaker import CircuitBreakerConfig
from clinic_resilience.resilience.dedup import DeduplicatorConfig
from clinic_resilience.resilience.recovery import RecoveryConfig
from clinic_resilience.resilience.retry import RETRY_PRESETS

C = TypeVar("C")


@dataclass
class AlertingConfig:
    """Alerting settings.

    Attributes:
        enabled: Whether the evaluator runs at all
        evaluation_interval_seconds: Cadence of ``tick()``
        rules_path: YAML file with additional rules
        include_default_rules: Keep the built-in rules next to the file's
        sample_window_ms: Window of query metrics folded into each sample
        webhook_timeout_seconds: Timeout of webhook actions
    """

    enabled: bool = True
    evaluation_interval_seconds: float = 30.0
    rules_path: str | None = None
    include_default_rules: bool = True
    sample_window_ms: float = 5 * 60 * 1000
    webhook_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> AlertingConfig:
        """Create configuration from environment variables."""
        return cls(
            enabled=os.getenv("CLINIC_RESILIENCE_ALERTING_ENABLED", "true").lower() != "false",
            evaluation_interval_seconds=float(
                os.getenv("CLINIC_RESILIENCE_ALERTING_INTERVAL_SECS", "30")
            ),
            rules_path=os.getenv("CLINIC_RESILIENCE_ALERT_RULES"),
        )


@dataclass
class LoggingConfig:
    """Logging settings.

    Attributes:
        level: Minimum level (debug, info, warning, error, critical)
        format: Output format ("json" or "text")
        max_entries: Entries kept in memory for diagnostics
    """

    level: str = "info"
    format: str = "json"
    max_entries: int = 1000

    @classmethod
    def from_env(cls) -> LoggingConfig:
        """Create configuration from environment variables."""
        return cls(
            level=os.getenv("CLINIC_RESILIENCE_LOG_LEVEL", "info").lower(),
            format=os.getenv("CLINIC_RESILIENCE_LOG_FORMAT", "json").lower(),
        )


@dataclass
class ResilienceConfig:
    """Configuration of the whole resilience runtime.

    Attributes:
        adaptive: Use adaptive circuit breakers
        circuit_breaker: Breaker settings for every resource
        resources: Per-resource breaker settings
        retry_strategy: Default retry preset
        dedup: Deduplicator settings
        recovery: Progressive recovery settings
        cache: Freshness of cached query results
        alerting: Alerting settings
        logging: Logging settings
    """

    adaptive: bool = True
    circuit_breaker: CircuitBreakerConfig = field(default_factory=AdaptiveBreakerConfig)
    resources: dict[str, CircuitBreakerConfig] = field(default_factory=dict)
    retry_strategy: str = "standard"
    dedup: DeduplicatorConfig = field(default_factory=DeduplicatorConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    cache: CacheEntryConfig = field(default_factory=CacheEntryConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self) -> None:
        if self.retry_strategy not in RETRY_PRESETS:
            raise ConfigurationError(
                f"Unknown retry strategy: {self.retry_strategy}",
                hint=f"Use one of: {', '.join(sorted(RETRY_PRESETS))}",
            )

    @classmethod
    def from_env(cls) -> ResilienceConfig:
        """Create configuration from environment variables."""
        adaptive = os.getenv("CLINIC_RESILIENCE_ADAPTIVE", "true").lower() != "false"
        breaker = AdaptiveBreakerConfig.from_env() if adaptive else CircuitBreakerConfig.from_env()
        return cls(
            adaptive=adaptive,
            circuit_breaker=breaker,
            retry_strategy=os.getenv("CLINIC_RESILIENCE_RETRY_STRATEGY", "standard"),
            dedup=DeduplicatorConfig.from_env(),
            recovery=RecoveryConfig.from_env(),
            alerting=AlertingConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: str | None = None) -> ResilienceConfig:
        """Create configuration from a parsed mapping.

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        data = dict(data)
        adaptive = bool(data.pop("adaptive", True))
        breaker_cls = AdaptiveBreakerConfig if adaptive else CircuitBreakerConfig
        breaker_data = data.pop("circuit_breaker", None) or {}

        try:
            breaker = _breaker_config(breaker_cls, breaker_data, source)
            resources = {
                name: _breaker_config(breaker_cls, {**breaker_data, **(overrides or {})}, source)
                for name, overrides in (data.pop("resources", None) or {}).items()
            }
            config = cls(
                adaptive=adaptive,
                circuit_breaker=breaker,
                resources=resources,
                retry_strategy=data.pop("retry_strategy", "standard"),
                dedup=_section(DeduplicatorConfig, data.pop("dedup", None), "dedup", source),
                recovery=_section(RecoveryConfig, data.pop("recovery", None), "recovery", source),
                cache=_section(CacheEntryConfig, data.pop("cache", None), "cache", source),
                alerting=_section(AlertingConfig, data.pop("alerting", None), "alerting", source),
                logging=_section(LoggingConfig, data.pop("logging", None), "logging", source),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}", path=source) from e

        if data:
            raise ConfigurationError(
                f"Unknown configuration keys: {', '.join(sorted(data))}", path=source
            )
        return config

    @classmethod
    def from_yaml(cls, path: str | Path) -> ResilienceConfig:
        """Load configuration from a YAML file."""
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration: {e}", path=str(path)) from e
        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {e}", path=str(path)) from e
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping", path=str(path))

        config = cls.from_dict(data, source=str(path))
        rules_path = config.alerting.rules_path
        if rules_path and not Path(rules_path).is_absolute():
            config.alerting.rules_path = str(path.parent / rules_path)
        return config


def _section(cls: type[C], data: dict[str, Any] | None, name: str, source: str | None) -> C:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section '{name}' must be a mapping", path=source)
    known = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in '{name}': {', '.join(unknown)}",
            path=source,
            hint=f"Valid keys: {', '.join(sorted(known))}",
        )
    return cls(**data)


def _breaker_config(
    cls: type[CircuitBreakerConfig], data: dict[str, Any], source: str | None
) -> CircuitBreakerConfig:
    data = dict(data)
    if "error_weights" in data:
        try:
            data["error_weights"] = {
                ErrorCategory(key): float(weight) for key, weight in data["error_weights"].items()
            }
        except ValueError as e:
            raise ConfigurationError(f"Invalid error weight: {e}", path=source) from e
    if cls is AdaptiveBreakerConfig:
        if "critical_resources" in data:
            data["critical_resources"] = frozenset(data["critical_resources"])
        if "progressive" in data:
            progressive = dict(data["progressive"])
            for key in ("steps", "performance_thresholds_ms"):
                if key in progressive:
                    progressive[key] = tuple(progressive[key])
            data["progressive"] = _section(
                ProgressiveTimeoutConfig, progressive, "progressive", source
            )
        if "load" in data:
            data["load"] = _section(LoadMonitoringConfig, data["load"], "load", source)
    return _section(cls, data, "circuit_breaker", source)
