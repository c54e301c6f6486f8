"""
Policy error recovery.

Row-level-security policy failures tend to come in bursts: a broken
policy makes every query against a table fail the same way. The manager
counts those failures and, once a pattern emerges, runs recovery
strategies in priority order. Recovery attempts are bounded and spaced
out by a cooldown.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from clinic_resilience.errors import ErrorCategory, is_policy_critical, is_policy_error
from clinic_resilience.resilience.adaptive import AdaptiveCircuitBreaker
from clinic_resilience.telemetry import ResilienceLogger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from clinic_resilience.resilience.registry import ResourceRegistry


@dataclass
class PolicyRecoveryStrategy:
    """A recovery step.

    Attributes:
        name: Strategy name used in logs
        priority: Higher runs first
        can_apply: Decides from the tracker whether the step is relevant
        execute: Returns True when recovery succeeded
    """

    name: str
    priority: int
    can_apply: Callable[[PolicyErrorTracker], bool]
    execute: Callable[[], Awaitable[bool]]
    description: str = ""


@dataclass
class PolicyErrorTracker:
    error_count: int = 0
    last_error_time: float | None = None
    error_types: Counter[ErrorCategory] = field(default_factory=Counter)
    recovery_attempts: int = 0
    last_recovery_time: float | None = None
    in_recovery: bool = False
    resources: dict[str, ErrorCategory] = field(default_factory=dict)

    def has_policy_errors(self) -> bool:
        return any(is_policy_error(category) for category in self.error_types)

    def resettable_resources(self, include_critical: bool = False) -> list[str]:
        """Resources whose circuits recovery may close.

        A resource whose latest error was policy-critical keeps its
        circuit open unless ``include_critical`` is set.
        """
        return sorted(
            resource
            for resource, category in self.resources.items()
            if include_critical or not is_policy_critical(category)
        )


@dataclass
class PolicyRecoveryStatus:
    error_count: int
    error_types: dict[str, int]
    recovery_attempts: int
    in_recovery: bool
    can_attempt_recovery: bool
    time_until_next_recovery: float
    last_error_time: float | None = None
    last_recovery_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_count": self.error_count,
            "error_types": dict(self.error_types),
            "recovery_attempts": self.recovery_attempts,
            "in_recovery": self.in_recovery,
            "can_attempt_recovery": self.can_attempt_recovery,
            "time_until_next_recovery": self.time_until_next_recovery,
            "last_error_time": self.last_error_time,
            "last_recovery_time": self.last_recovery_time,
        }


class PolicyErrorRecoveryManager:
    """Tracks policy errors and runs recovery strategies.

    Recovery is entered for a recursion or circular-dependency error, for
    three policy evaluation errors, or for five errors of any kind. Only
    the circuits of resources that reported errors are reset. A circuit
    opened by a policy-critical error stays open until its reset timeout
    lets a probe through, or until recovery is triggered manually.

    Example:
        >>> manager = PolicyErrorRecoveryManager(registry)
        >>> await manager.record_policy_error(
        ...     ErrorCategory.POLICY_INFINITE_RECURSION, "infinite recursion detected"
        ... )
        >>> manager.get_status().recovery_attempts
        1
    """

    EVALUATION_ERROR_TRIGGER = 3
    TOTAL_ERROR_TRIGGER = 5

    def __init__(
        self,
        registry: ResourceRegistry | None = None,
        health_check: Callable[[], Awaitable[bool]] | None = None,
        max_recovery_attempts: int = 3,
        recovery_cooldown_seconds: float = 300.0,
        logger: ResilienceLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize manager.

        Args:
            registry: Breakers to reset during recovery
            health_check: Probe for database policy health; the check is
                considered passing when none is given
            max_recovery_attempts: Recovery attempts before giving up
            recovery_cooldown_seconds: Minimum spacing between attempts
            logger: Structured logger
            clock: Time source (seconds)
        """
        self._registry = registry
        self._health_check = health_check
        self._max_attempts = max_recovery_attempts
        self._cooldown = recovery_cooldown_seconds
        self._logger = logger or ResilienceLogger()
        self._clock = clock
        self._tracker = PolicyErrorTracker()
        self._manual = False
        self._strategies = self._default_strategies()

    def _default_strategies(self) -> list[PolicyRecoveryStrategy]:
        return [
            PolicyRecoveryStrategy(
                name="circuit_breaker_reset",
                description="Reset circuit breakers of affected resources",
                priority=10,
                can_apply=lambda t: bool(t.resettable_resources(self._manual)),
                execute=self._reset_circuits,
            ),
            PolicyRecoveryStrategy(
                name="clear_error_history",
                description="Clear accumulated error history",
                priority=8,
                can_apply=lambda t: t.error_count >= self.TOTAL_ERROR_TRIGGER,
                execute=self._clear_history,
            ),
            PolicyRecoveryStrategy(
                name="policy_health_check",
                description="Check database policy health",
                priority=6,
                can_apply=lambda t: t.has_policy_errors(),
                execute=self._check_policy_health,
            ),
        ]

    def add_strategy(self, strategy: PolicyRecoveryStrategy) -> None:
        self._strategies.append(strategy)

    @property
    def strategies(self) -> list[PolicyRecoveryStrategy]:
        return sorted(self._strategies, key=lambda s: s.priority, reverse=True)

    async def _reset_circuits(self) -> bool:
        if self._registry is None:
            return False
        reset = False
        for resource in self._tracker.resettable_resources(self._manual):
            breaker = self._registry.find(resource)
            if breaker is None:
                continue
            self._registry.reset(resource)
            if isinstance(breaker, AdaptiveCircuitBreaker):
                breaker.reset_adaptive_thresholds()
            reset = True
        return reset

    async def _clear_history(self) -> bool:
        self._reset_tracking()
        if self._registry is not None:
            self._registry.clear_error_history()
        return True

    async def _check_policy_health(self) -> bool:
        if self._health_check is None:
            return True
        return await self._health_check()

    async def record_policy_error(
        self, category: ErrorCategory, message: str = "", resource: str | None = None
    ) -> None:
        """Count a policy error and enter recovery when a pattern emerges.

        Args:
            category: Category of the error
            message: Error detail for the log
            resource: Resource the failing query targeted
        """
        self._tracker.error_count += 1
        self._tracker.last_error_time = self._clock()
        self._tracker.error_types[category] += 1
        if resource is not None:
            self._tracker.resources[resource] = category

        self._logger.warning(
            "policy_recovery",
            f"Policy error recorded: {category.value}",
            error_category=category.value,
            total=self._tracker.error_count,
            detail=message,
            resource=resource,
        )

        if self._should_enter_recovery(category):
            await self._enter_recovery()

    def record_success(self) -> None:
        """Forget tracked errors after a query succeeded."""
        if self._tracker.error_count:
            self._reset_tracking()

    def _should_enter_recovery(self, category: ErrorCategory) -> bool:
        if is_policy_critical(category):
            return True
        evaluation_errors = self._tracker.error_types[ErrorCategory.POLICY_EVALUATION]
        if evaluation_errors >= self.EVALUATION_ERROR_TRIGGER:
            return True
        return self._tracker.error_count >= self.TOTAL_ERROR_TRIGGER

    def _seconds_since_recovery(self) -> float | None:
        if self._tracker.last_recovery_time is None:
            return None
        return self._clock() - self._tracker.last_recovery_time

    def _in_cooldown(self) -> bool:
        elapsed = self._seconds_since_recovery()
        return elapsed is not None and elapsed < self._cooldown

    async def _enter_recovery(self) -> bool:
        if self._tracker.in_recovery:
            self._logger.debug("policy_recovery", "Already in recovery, skipping")
            return False
        if self._tracker.recovery_attempts >= self._max_attempts:
            self._logger.error(
                "policy_recovery",
                "Max recovery attempts reached",
                attempts=self._tracker.recovery_attempts,
            )
            return False
        if self._in_cooldown():
            self._logger.debug("policy_recovery", "Recovery cooldown active")
            return False

        self._tracker.in_recovery = True
        self._tracker.recovery_attempts += 1
        self._tracker.last_recovery_time = self._clock()
        self._logger.info(
            "policy_recovery",
            "Entering recovery",
            attempt=self._tracker.recovery_attempts,
            max_attempts=self._max_attempts,
        )
        try:
            return await self._run_strategies()
        finally:
            self._tracker.in_recovery = False

    async def _run_strategies(self) -> bool:
        applicable = [s for s in self.strategies if s.can_apply(self._tracker)]
        for strategy in applicable:
            try:
                succeeded = await strategy.execute()
            except Exception as e:
                self._logger.error(
                    "policy_recovery",
                    f"Strategy '{strategy.name}' raised",
                    error=e,
                    strategy=strategy.name,
                )
                continue
            if succeeded:
                self._logger.info(
                    "policy_recovery",
                    f"Strategy '{strategy.name}' succeeded",
                    strategy=strategy.name,
                )
                self._reset_tracking()
                return True
            self._logger.warning(
                "policy_recovery", f"Strategy '{strategy.name}' failed", strategy=strategy.name
            )
        self._logger.warning("policy_recovery", "All recovery strategies failed")
        return False

    def _reset_tracking(self) -> None:
        # Attempt bookkeeping survives so the cap and cooldown keep applying
        self._tracker = PolicyErrorTracker(
            recovery_attempts=self._tracker.recovery_attempts,
            last_recovery_time=self._tracker.last_recovery_time,
            in_recovery=self._tracker.in_recovery,
        )

    def get_status(self) -> PolicyRecoveryStatus:
        elapsed = self._seconds_since_recovery()
        remaining = 0.0 if elapsed is None else max(0.0, self._cooldown - elapsed)
        return PolicyRecoveryStatus(
            error_count=self._tracker.error_count,
            error_types={c.value: n for c, n in self._tracker.error_types.items()},
            recovery_attempts=self._tracker.recovery_attempts,
            in_recovery=self._tracker.in_recovery,
            can_attempt_recovery=(
                self._tracker.recovery_attempts < self._max_attempts and remaining == 0.0
            ),
            time_until_next_recovery=remaining,
            last_error_time=self._tracker.last_error_time,
            last_recovery_time=self._tracker.last_recovery_time,
        )

    @property
    def in_recovery(self) -> bool:
        return self._tracker.in_recovery

    async def manual_recovery(self) -> bool:
        """Run recovery now, ignoring the cooldown.

        The attempt cap still applies. Circuits opened by policy-critical
        errors are reset as well.

        Returns:
            True if a strategy succeeded
        """
        self._logger.info("policy_recovery", "Manual recovery triggered")
        previous = self._tracker.last_recovery_time
        self._tracker.last_recovery_time = None
        self._manual = True
        try:
            succeeded = await self._enter_recovery()
        finally:
            self._manual = False
        if not succeeded and self._tracker.last_recovery_time is None:
            self._tracker.last_recovery_time = previous
        return succeeded

    def reset(self) -> None:
        self._tracker = PolicyErrorTracker()
