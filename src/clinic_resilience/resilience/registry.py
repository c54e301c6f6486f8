"""
Per-resource circuit breaker registry.

Breakers are created lazily, one per protected resource, and shared by
every component that receives the registry. Tests build a fresh registry
instead of resetting global state.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from clinic_resilience.resilience.adaptive import AdaptiveBreakerConfig, AdaptiveCircuitBreaker
from clinic_resilience.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitSnapshot,
    CircuitState,
)
from clinic_resilience.telemetry import ResilienceLogger

if TYPE_CHECKING:
    from collections.abc import Callable

    from clinic_resilience.cache import QueryCache

_STATE_SEVERITY = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class ResourceRegistry:
    """Holds the circuit breaker of every protected resource.

    Example:
        >>> registry = ResourceRegistry(CircuitBreakerConfig(failure_threshold=5))
        >>> breaker = registry.get_breaker("patients")
        >>> registry.get_breaker("patients") is breaker
        True
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        cache: QueryCache | None = None,
        logger: ResilienceLogger | None = None,
        clock: Callable[[], float] = time.time,
        overrides: dict[str, CircuitBreakerConfig] | None = None,
    ) -> None:
        """Initialize registry.

        Args:
            config: Default breaker configuration. An
                ``AdaptiveBreakerConfig`` makes every breaker adaptive.
            cache: Cache handed to adaptive breakers
            logger: Structured logger shared by all breakers
            clock: Time source (seconds)
            overrides: Per-resource configurations
        """
        self._config = config or CircuitBreakerConfig()
        self._cache = cache
        self._logger = logger or ResilienceLogger()
        self._clock = clock
        self._overrides = dict(overrides or {})
        self._breakers: dict[str, CircuitBreaker] = {}

    def _create(self, resource: str) -> CircuitBreaker:
        config = self._overrides.get(resource, self._config)
        if isinstance(config, AdaptiveBreakerConfig):
            return AdaptiveCircuitBreaker(resource, config, self._cache, self._logger, self._clock)
        return CircuitBreaker(resource, config, self._logger, self._clock)

    def get_breaker(self, resource: str) -> CircuitBreaker:
        """Get (or create) the breaker for a resource."""
        breaker = self._breakers.get(resource)
        if breaker is None:
            breaker = self._create(resource)
            self._breakers[resource] = breaker
        return breaker

    def find(self, resource: str) -> CircuitBreaker | None:
        """Get the breaker for a resource without creating one."""
        return self._breakers.get(resource)

    def register(self, breaker: CircuitBreaker) -> CircuitBreaker:
        """Register a pre-built breaker under its name."""
        self._breakers[breaker.name] = breaker
        return breaker

    def configure(self, resource: str, config: CircuitBreakerConfig) -> None:
        """Set the configuration used when the resource's breaker is created."""
        self._overrides[resource] = config

    @property
    def resources(self) -> list[str]:
        return sorted(self._breakers)

    def breakers(self) -> list[CircuitBreaker]:
        return [self._breakers[name] for name in sorted(self._breakers)]

    def adaptive_breakers(self) -> list[AdaptiveCircuitBreaker]:
        return [b for b in self.breakers() if isinstance(b, AdaptiveCircuitBreaker)]

    def reset(self, resource: str) -> bool:
        """Manually close a resource's circuit.

        Returns:
            False if the resource has no breaker yet
        """
        breaker = self._breakers.get(resource)
        if breaker is None:
            return False
        breaker.reset()
        self._logger.info("circuit_breaker", "Circuit manually reset", resource=resource)
        return True

    def reset_all(self) -> int:
        """Manually close every circuit. Returns the number of breakers."""
        for breaker in self._breakers.values():
            breaker.reset()
        if self._breakers:
            self._logger.info(
                "circuit_breaker", "All circuits manually reset", count=len(self._breakers)
            )
        return len(self._breakers)

    def clear_error_history(self) -> None:
        for breaker in self._breakers.values():
            breaker.clear_error_history()

    def get_states(self) -> dict[str, CircuitSnapshot]:
        """Snapshot of every breaker."""
        return {name: b.get_state() for name, b in sorted(self._breakers.items())}

    def worst_state(self) -> CircuitState:
        """Most severe state across all breakers."""
        states = [b.state for b in self._breakers.values()]
        if not states:
            return CircuitState.CLOSED
        return max(states, key=_STATE_SEVERITY.__getitem__)

    def open_count(self) -> int:
        return sum(1 for b in self._breakers.values() if b.is_open)

    async def tick(self) -> None:
        """Refresh every adaptive breaker."""
        for breaker in self.adaptive_breakers():
            await breaker.tick()

    def __len__(self) -> int:
        return len(self._breakers)

    def __contains__(self, resource: object) -> bool:
        return resource in self._breakers
