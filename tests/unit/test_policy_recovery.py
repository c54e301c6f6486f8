"""Tests for policy error recovery."""

import pytest

from clinic_resilience.errors import ErrorCategory
from clinic_resilience.resilience import (
    CircuitBreakerConfig,
    CircuitState,
    PolicyErrorRecoveryManager,
    PolicyRecoveryStrategy,
    ResourceRegistry,
)


@pytest.fixture
def registry(clock, logger) -> ResourceRegistry:
    return ResourceRegistry(CircuitBreakerConfig(failure_threshold=1), logger=logger, clock=clock)


class TestRecoveryTriggers:
    """Tests for when recovery is entered."""

    @pytest.mark.asyncio
    async def test_critical_error_keeps_circuit_open(self, registry, clock, logger) -> None:
        """Test a recursion error triggers recovery without closing any circuit."""
        outage = registry.get_breaker("appointments")
        outage.record_failure(Exception("network down"))
        breaker = registry.get_breaker("patients")
        breaker.record_failure(Exception("infinite recursion detected in policy"))
        assert breaker.state == CircuitState.OPEN

        manager = PolicyErrorRecoveryManager(registry, logger=logger, clock=clock)
        await manager.record_policy_error(
            ErrorCategory.POLICY_INFINITE_RECURSION,
            "infinite recursion detected",
            resource="patients",
        )

        assert breaker.state == CircuitState.OPEN
        assert outage.state == CircuitState.OPEN
        status = manager.get_status()
        assert status.recovery_attempts == 1
        assert status.error_count == 0
        assert status.in_recovery is False
        succeeded = [e.message for e in logger.get_logs(category="policy_recovery")]
        assert "Strategy 'policy_health_check' succeeded" in succeeded

    @pytest.mark.asyncio
    async def test_evaluation_errors_reset_affected_circuit(
        self, registry, clock, logger
    ) -> None:
        """Test recovery closes only the circuit of the failing resource."""
        outage = registry.get_breaker("appointments")
        outage.record_failure(Exception("network down"))
        breaker = registry.get_breaker("patients")
        breaker.record_failure(Exception("network down"))

        manager = PolicyErrorRecoveryManager(registry, logger=logger, clock=clock)
        for _ in range(3):
            await manager.record_policy_error(ErrorCategory.POLICY_EVALUATION, resource="patients")

        assert manager.get_status().recovery_attempts == 1
        assert breaker.state == CircuitState.CLOSED
        assert outage.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_three_evaluation_errors(self, registry, clock, logger) -> None:
        """Test repeated evaluation errors trigger recovery on the third."""
        manager = PolicyErrorRecoveryManager(registry, logger=logger, clock=clock)
        for _ in range(2):
            await manager.record_policy_error(ErrorCategory.POLICY_EVALUATION)
        assert manager.get_status().recovery_attempts == 0
        assert manager.get_status().error_types == {"policy_evaluation_error": 2}

        await manager.record_policy_error(ErrorCategory.POLICY_EVALUATION)
        assert manager.get_status().recovery_attempts == 1

    @pytest.mark.asyncio
    async def test_five_errors_of_any_kind(self, clock, logger) -> None:
        """Test the total error count triggers recovery."""
        manager = PolicyErrorRecoveryManager(logger=logger, clock=clock)
        for _ in range(4):
            await manager.record_policy_error(ErrorCategory.NETWORK)
        assert manager.get_status().recovery_attempts == 0

        await manager.record_policy_error(ErrorCategory.NETWORK)
        status = manager.get_status()
        assert status.recovery_attempts == 1
        assert status.error_count == 0
        succeeded = [e.message for e in logger.get_logs(category="policy_recovery")]
        assert "Strategy 'clear_error_history' succeeded" in succeeded

    @pytest.mark.asyncio
    async def test_success_clears_errors(self, registry, clock, logger) -> None:
        """Test a successful query forgets tracked errors."""
        manager = PolicyErrorRecoveryManager(registry, logger=logger, clock=clock)
        await manager.record_policy_error(ErrorCategory.POLICY_EVALUATION)
        await manager.record_policy_error(ErrorCategory.POLICY_EVALUATION)
        manager.record_success()
        await manager.record_policy_error(ErrorCategory.POLICY_EVALUATION)
        assert manager.get_status().recovery_attempts == 0
        assert manager.get_status().error_count == 1


class TestRecoveryLimits:
    """Tests for cooldown and attempt caps."""

    @pytest.mark.asyncio
    async def test_cooldown(self, registry, clock, logger) -> None:
        """Test recovery is not repeated within the cooldown."""
        manager = PolicyErrorRecoveryManager(
            registry, recovery_cooldown_seconds=300, logger=logger, clock=clock
        )
        await manager.record_policy_error(ErrorCategory.POLICY_CIRCULAR_DEPENDENCY)
        clock.advance(100)
        await manager.record_policy_error(ErrorCategory.POLICY_CIRCULAR_DEPENDENCY)

        status = manager.get_status()
        assert status.recovery_attempts == 1
        assert status.can_attempt_recovery is False
        assert status.time_until_next_recovery == 200

        clock.advance(200)
        await manager.record_policy_error(ErrorCategory.POLICY_CIRCULAR_DEPENDENCY)
        assert manager.get_status().recovery_attempts == 2

    @pytest.mark.asyncio
    async def test_max_attempts(self, registry, clock, logger) -> None:
        """Test recovery stops after the attempt cap."""
        manager = PolicyErrorRecoveryManager(
            registry,
            max_recovery_attempts=1,
            recovery_cooldown_seconds=0,
            logger=logger,
            clock=clock,
        )
        await manager.record_policy_error(ErrorCategory.POLICY_INFINITE_RECURSION)
        await manager.record_policy_error(ErrorCategory.POLICY_INFINITE_RECURSION)

        assert manager.get_status().recovery_attempts == 1
        assert any(e.message == "Max recovery attempts reached" for e in logger.get_errors())

    @pytest.mark.asyncio
    async def test_manual_recovery_ignores_cooldown(self, registry, clock, logger) -> None:
        """Test manual recovery runs during the cooldown."""
        manager = PolicyErrorRecoveryManager(registry, logger=logger, clock=clock)
        await manager.record_policy_error(ErrorCategory.POLICY_INFINITE_RECURSION)
        await manager.record_policy_error(ErrorCategory.POLICY_EVALUATION)

        assert await manager.manual_recovery() is True
        assert manager.get_status().recovery_attempts == 2

    @pytest.mark.asyncio
    async def test_manual_recovery_resets_critical_circuit(self, registry, clock, logger) -> None:
        """Test an operator can close a circuit opened by a policy-critical error."""
        outage = registry.get_breaker("appointments")
        outage.record_failure(Exception("network down"))
        breaker = registry.get_breaker("patients")
        breaker.record_failure(Exception("infinite recursion detected in policy"))

        manager = PolicyErrorRecoveryManager(registry, logger=logger, clock=clock)
        await manager.record_policy_error(
            ErrorCategory.POLICY_INFINITE_RECURSION, resource="patients"
        )
        assert breaker.state == CircuitState.OPEN
        await manager.record_policy_error(
            ErrorCategory.POLICY_INFINITE_RECURSION, resource="patients"
        )

        assert await manager.manual_recovery() is True
        assert breaker.state == CircuitState.CLOSED
        assert outage.state == CircuitState.OPEN


class TestStrategies:
    """Tests for strategy execution."""

    @pytest.mark.asyncio
    async def test_failing_health_check(self, clock, logger) -> None:
        """Test errors are kept when every strategy fails."""

        async def unhealthy() -> bool:
            return False

        manager = PolicyErrorRecoveryManager(health_check=unhealthy, logger=logger, clock=clock)
        await manager.record_policy_error(ErrorCategory.POLICY_INFINITE_RECURSION)

        status = manager.get_status()
        assert status.recovery_attempts == 1
        assert status.error_count == 1
        warnings = [e.message for e in logger.get_logs(category="policy_recovery")]
        assert "All recovery strategies failed" in warnings

    @pytest.mark.asyncio
    async def test_raising_strategy_is_logged(self, registry, clock, logger) -> None:
        """Test a raising strategy does not stop the others."""

        async def explode() -> bool:
            raise RuntimeError("rpc unavailable")

        manager = PolicyErrorRecoveryManager(registry, logger=logger, clock=clock)
        manager.add_strategy(
            PolicyRecoveryStrategy(
                name="refresh_policies",
                priority=20,
                can_apply=lambda tracker: True,
                execute=explode,
            )
        )
        assert manager.strategies[0].name == "refresh_policies"

        await manager.record_policy_error(ErrorCategory.POLICY_INFINITE_RECURSION)

        errors = logger.get_errors()
        assert errors[-1].message == "Strategy 'refresh_policies' raised"
        assert errors[-1].error == {"type": "RuntimeError", "message": "rpc unavailable"}
        assert manager.get_status().error_count == 0

    def test_reset(self, clock, logger) -> None:
        """Test reset clears attempts too."""
        manager = PolicyErrorRecoveryManager(logger=logger, clock=clock)
        manager.reset()
        status = manager.get_status()
        assert status.recovery_attempts == 0
        assert status.can_attempt_recovery is True
        assert status.to_dict()["last_recovery_time"] is None
