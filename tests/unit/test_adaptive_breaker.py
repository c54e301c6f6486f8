"""Tests for the adaptive circuit breaker."""

import pytest

from clinic_resilience.cache import MemoryQueryCache
from clinic_resilience.errors import CircuitOpenError, ErrorCategory
from clinic_resilience.resilience import (
    AdaptiveBreakerConfig,
    AdaptiveCircuitBreaker,
    CircuitState,
    LoadLevel,
    LoadMonitoringConfig,
    PerformanceTrend,
)


def fixed_load_config(**kwargs) -> AdaptiveBreakerConfig:
    """Adaptive config whose thresholds do not move with load."""
    return AdaptiveBreakerConfig(load=LoadMonitoringConfig(enabled=False), **kwargs)


class TestAdaptiveBreakerConfig:
    """Tests for AdaptiveBreakerConfig."""

    def test_defaults(self) -> None:
        """Test adaptive defaults differ from the base breaker."""
        config = AdaptiveBreakerConfig()
        assert config.failure_threshold == 8
        assert config.reset_timeout_seconds == 15.0
        assert config.cache_grace_period_seconds == 300.0
        assert config.weight_for(ErrorCategory.NETWORK) == 0.5
        assert config.weight_for(ErrorCategory.POLICY_INFINITE_RECURSION) == 3.0
        assert config.weight_for(ErrorCategory.UNKNOWN) == 0.2
        assert "settings" in config.critical_resources

    def test_low_load_raises_threshold(self, clock) -> None:
        """Test low load tolerates slightly more failures."""
        breaker = AdaptiveCircuitBreaker("patients", clock=clock)
        assert breaker.load_level == LoadLevel.LOW
        assert breaker.get_state().failure_threshold == pytest.approx(9.6)


class TestCacheAwareServing:
    """Tests for serving cached data while open."""

    @pytest.mark.asyncio
    async def test_serves_fresh_enough_cache(self, clock) -> None:
        """Test an open circuit answers from cache within the grace period."""
        cache = MemoryQueryCache(clock=clock)
        await cache.set("appointments:today", [{"id": 1}])
        breaker = AdaptiveCircuitBreaker(
            "appointments",
            fixed_load_config(failure_threshold=1, reset_timeout_seconds=1000),
            cache=cache,
            clock=clock,
        )
        breaker.record_failure(Exception("request timed out"))
        assert breaker.is_open

        calls = 0

        async def operation() -> list[dict]:
            nonlocal calls
            calls += 1
            return []

        clock.advance(120)
        data = await breaker.execute(operation, cache_key="appointments:today")
        assert data == [{"id": 1}]
        assert calls == 0
        assert breaker.get_enhanced_state().cache_serves == 1

    @pytest.mark.asyncio
    async def test_rejects_when_cache_too_old(self, clock) -> None:
        """Test cache older than the grace period is not served."""
        cache = MemoryQueryCache(clock=clock)
        await cache.set("appointments:today", [{"id": 1}])
        breaker = AdaptiveCircuitBreaker(
            "appointments",
            fixed_load_config(failure_threshold=1, reset_timeout_seconds=1000),
            cache=cache,
            clock=clock,
        )
        breaker.record_failure(Exception("request timed out"))
        clock.advance(301)

        async def operation() -> list[dict]:
            return []

        with pytest.raises(CircuitOpenError):
            await breaker.execute(operation, cache_key="appointments:today")

    @pytest.mark.asyncio
    async def test_critical_resources_get_double_grace(self, clock) -> None:
        """Test critical resources accept older cache entries."""
        cache = MemoryQueryCache(clock=clock)
        await cache.set("settings:clinic", {"theme": "light"})
        breaker = AdaptiveCircuitBreaker(
            "settings",
            fixed_load_config(failure_threshold=1, reset_timeout_seconds=1000),
            cache=cache,
            clock=clock,
        )
        breaker.record_failure(Exception("request timed out"))
        clock.advance(500)

        async def operation() -> dict:
            return {}

        assert await breaker.execute(operation, cache_key="settings:clinic") == {"theme": "light"}

    @pytest.mark.asyncio
    async def test_rejects_without_cache_key(self, clock) -> None:
        """Test an open circuit without cache rejects."""
        breaker = AdaptiveCircuitBreaker(
            "appointments", fixed_load_config(failure_threshold=1), clock=clock
        )
        breaker.record_failure(Exception("request timed out"))

        async def operation() -> str:
            return "ok"

        with pytest.raises(CircuitOpenError):
            await breaker.execute(operation)

    @pytest.mark.asyncio
    async def test_bypass_leaves_state_alone(self, clock) -> None:
        """Test bypassed executions neither count nor get rejected."""
        breaker = AdaptiveCircuitBreaker(
            "auth", fixed_load_config(failure_threshold=1), clock=clock
        )

        async def failing() -> str:
            raise Exception("request timed out")

        with pytest.raises(Exception, match="timed out"):
            await breaker.execute(failing, bypass=True)
        assert breaker.is_closed
        assert breaker.failure_count == 0
        assert len(breaker.get_metrics()) == 1
        assert breaker.get_metrics()[0].category == ErrorCategory.TIMEOUT


class TestProgressiveTimeout:
    """Tests for progressive reset timeouts."""

    def test_steps_follow_consecutive_failures(self, clock) -> None:
        """Test every two consecutive failures add a step."""
        breaker = AdaptiveCircuitBreaker(
            "patients", fixed_load_config(failure_threshold=100), clock=clock
        )
        for _ in range(4):
            breaker.record_failure(Exception("request timed out"))

        info = breaker.get_progressive_timeout_info()
        assert info["step"] == 2
        assert info["step_multiplier"] == 2.0
        assert info["effective_timeout_seconds"] == 30.0

    def test_step_decreases_after_cooldown(self, clock) -> None:
        """Test sustained success lowers the step."""
        breaker = AdaptiveCircuitBreaker(
            "patients", fixed_load_config(failure_threshold=100), clock=clock
        )
        for _ in range(4):
            breaker.record_failure(Exception("request timed out"))

        breaker.record_success()
        assert breaker.get_progressive_timeout_info()["step"] == 2

        clock.advance(120)
        breaker.record_success()
        assert breaker.get_progressive_timeout_info()["step"] == 1

    def test_slow_queries_extend_timeout(self, clock) -> None:
        """Test latency above the thresholds multiplies the timeout."""
        breaker = AdaptiveCircuitBreaker("patients", fixed_load_config(), clock=clock)
        breaker.record_metric(6000, success=True)
        info = breaker.get_progressive_timeout_info()
        assert info["performance_multiplier"] == 1.5
        assert info["effective_timeout_seconds"] == 22.5

    def test_multiplier_is_capped(self, clock) -> None:
        """Test the multiplier never exceeds the configured cap."""
        breaker = AdaptiveCircuitBreaker(
            "patients", fixed_load_config(failure_threshold=100), clock=clock
        )
        for _ in range(10):
            breaker.record_failure(Exception("request timed out"))
        breaker.record_metric(25000, success=False)
        assert breaker.get_progressive_timeout_info()["effective_timeout_seconds"] == 60.0


class TestThresholdAdaptation:
    """Tests for trend-driven threshold adaptation."""

    def test_degrading_trend_lowers_threshold(self, clock) -> None:
        """Test slower recent queries make the breaker stricter."""
        breaker = AdaptiveCircuitBreaker("patients", fixed_load_config(), clock=clock)
        clock.advance(121)
        for duration in [100] * 5 + [1000] * 5:
            breaker.record_metric(duration, success=True)

        thresholds = breaker.thresholds
        assert thresholds.trend == PerformanceTrend.DEGRADING
        assert thresholds.failure_threshold == pytest.approx(5.6)
        assert thresholds.reset_timeout_seconds == 22.5
        assert thresholds.adjustment_count == 1

    def test_improving_trend_relaxes_threshold(self, clock) -> None:
        """Test faster recent queries make the breaker more tolerant."""
        breaker = AdaptiveCircuitBreaker("patients", fixed_load_config(), clock=clock)
        clock.advance(121)
        for duration in [1000] * 5 + [100] * 5:
            breaker.record_metric(duration, success=True)

        assert breaker.thresholds.trend == PerformanceTrend.IMPROVING
        assert breaker.thresholds.failure_threshold == 11
        assert breaker.thresholds.reset_timeout_seconds == 15.0

    def test_not_enough_samples(self, clock) -> None:
        """Test thresholds stay put without enough samples."""
        breaker = AdaptiveCircuitBreaker("patients", fixed_load_config(), clock=clock)
        clock.advance(121)
        for _ in range(9):
            breaker.record_metric(5000, success=False)
        assert breaker.thresholds.failure_threshold == 8
        assert breaker.thresholds.adjustment_count == 0

    def test_reset_adaptive_thresholds(self, clock) -> None:
        """Test thresholds return to configured values."""
        breaker = AdaptiveCircuitBreaker("patients", fixed_load_config(), clock=clock)
        clock.advance(121)
        for duration in [100] * 5 + [1000] * 5:
            breaker.record_metric(duration, success=True)
        breaker.reset_adaptive_thresholds()
        assert breaker.thresholds.failure_threshold == 8
        assert breaker.thresholds.reset_timeout_seconds == 15.0
        assert breaker.thresholds.trend == PerformanceTrend.STABLE


class TestLoadMonitoring:
    """Tests for load-aware thresholds."""

    @pytest.mark.asyncio
    async def test_high_load_tightens_threshold(self, clock) -> None:
        """Test many active queries lower the threshold and lengthen the timeout."""
        breaker = AdaptiveCircuitBreaker("patients", clock=clock)
        for _ in range(25):
            breaker.record_metric(100, success=True)

        load = await breaker.update_system_load()
        assert load.load_level == LoadLevel.HIGH
        assert load.active_queries == 25

        state = breaker.get_enhanced_state()
        assert state.failure_threshold == 5
        assert state.effective_reset_timeout_seconds == 30.0

    @pytest.mark.asyncio
    async def test_critical_load(self, clock) -> None:
        """Test extreme load halves the threshold."""
        breaker = AdaptiveCircuitBreaker("patients", clock=clock)
        for _ in range(41):
            breaker.record_metric(100, success=True)
        await breaker.tick()
        assert breaker.load_level == LoadLevel.CRITICAL
        assert breaker.get_state().failure_threshold == 4

    @pytest.mark.asyncio
    async def test_cache_footprint_counts_as_memory(self, clock) -> None:
        """Test memory estimate comes from the cache size."""
        cache = MemoryQueryCache(clock=clock)
        await cache.set("big", "x" * 1000)
        config = AdaptiveBreakerConfig(load=LoadMonitoringConfig(memory_budget_bytes=1000))
        breaker = AdaptiveCircuitBreaker("patients", config, cache=cache, clock=clock)
        load = await breaker.update_system_load()
        assert load.memory_estimate == 100.0
        assert load.load_level == LoadLevel.HIGH


class TestEnhancedState:
    """Tests for the enhanced snapshot."""

    @pytest.mark.asyncio
    async def test_performance_summary(self, clock) -> None:
        """Test the snapshot summarizes recent executions."""
        breaker = AdaptiveCircuitBreaker("patients", fixed_load_config(), clock=clock)

        async def ok() -> str:
            clock.advance(0.2)
            return "ok"

        async def failing() -> str:
            raise Exception("request timed out")

        await breaker.execute(ok)
        with pytest.raises(Exception):
            await breaker.execute(failing)

        state = breaker.get_enhanced_state()
        assert state.state == CircuitState.CLOSED
        assert state.success_rate == 0.5
        assert state.avg_duration_ms == pytest.approx(100.0)
        data = state.to_dict()
        assert data["trend"] == "stable"
        assert data["load_level"] == "low"
        assert data["cache_serves"] == 0
