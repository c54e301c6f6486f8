"""
Integration tests for protected queries.

Runs failures through the whole pipeline: breaker, retry, recovery
and alerting.
"""

import pytest

from clinic_resilience import InMemoryFeatureFlags, ResilienceConfig, ResilienceRuntime
from clinic_resilience.alerting import AlertRule
from clinic_resilience.cache import MemoryQueryCache
from clinic_resilience.config import AlertingConfig
from clinic_resilience.resilience import (
    CircuitBreakerConfig,
    CircuitState,
    FallbackLevel,
    ProgressiveErrorRecovery,
    ResilientExecutor,
    ResourceRegistry,
    RetryEngine,
)

pytestmark = pytest.mark.integration


@pytest.mark.asyncio
async def test_outage_opens_circuit_and_serves_stale_cache(clock, sleep, logger) -> None:
    """Five failed queries open the circuit; the sixth is answered from cache."""
    cache = MemoryQueryCache(clock=clock)
    await cache.set("patients:list", [{"id": 1, "name": "Amy"}])
    clock.advance(120)

    registry = ResourceRegistry(
        CircuitBreakerConfig(failure_threshold=5), cache=cache, logger=logger, clock=clock
    )
    executor = ResilientExecutor(
        registry,
        RetryEngine(registry, logger=logger, clock=clock, sleep=sleep),
        recovery=ProgressiveErrorRecovery(cache=cache, logger=logger, clock=clock),
        cache=cache,
        logger=logger,
        clock=clock,
    )
    calls = 0

    async def fetch_patients() -> list[dict]:
        nonlocal calls
        calls += 1
        raise Exception("network timeout")

    for _ in range(5):
        result = await executor.execute(fetch_patients, "patients", cache_key="patients:list")
        assert result.fallback_level == FallbackLevel.CACHE_STALE

    assert registry.get_breaker("patients").state == CircuitState.OPEN
    before = calls

    result = await executor.execute(fetch_patients, "patients", cache_key="patients:list")

    assert calls == before
    assert result.success
    assert result.data == [{"id": 1, "name": "Amy"}]
    assert result.fallback_level == FallbackLevel.CACHE_STALE
    assert result.retryable is True
    assert result.circuit_state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_error_spike_rolls_back_feature(clock, sleep, logger) -> None:
    """A burst of failures fires an alert that disables a feature."""
    flags = InMemoryFeatureFlags({"appointment_prefetch": True})
    rule = AlertRule.model_validate(
        {
            "id": "appointment_errors",
            "name": "Appointment Errors",
            "metric": {"type": "error_rate"},
            "threshold": 0.5,
            "window_ms": 300_000,
            "severity": "critical",
            "actions": [{"type": "rollback_feature", "feature": "appointment_prefetch"}],
        }
    )
    config = ResilienceConfig(
        adaptive=False,
        circuit_breaker=CircuitBreakerConfig(),
        alerting=AlertingConfig(enabled=True),
    )
    runtime = ResilienceRuntime(
        config, flags=flags, rules=[rule], logger=logger, clock=clock, sleep=sleep
    )

    async def fetch_appointments() -> list[dict]:
        raise Exception("permission denied for table appointments")

    for _ in range(3):
        result = await runtime.execute(fetch_appointments, "appointments")
        assert result.success is False

    await runtime.tick()

    [alert] = runtime.alerting.get_active_alerts()
    assert alert.rule_id == "appointment_errors"
    assert flags.is_enabled("appointment_prefetch") is False
    assert runtime.get_health()["alerting"]["active_alerts"] == 1
