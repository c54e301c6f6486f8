"""弹性执行器：统一的去重、熔断、重试与渐进式恢复。

Resilient executor combining all resilience patterns.

Every protected query goes through the same pipeline:

1. Deduplication (identical concurrent queries share one execution)
2. Circuit breaker of the queried resource
3. Retry with backoff
4. Progressive recovery once the call has finally failed
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from clinic_resilience.cache.key import CacheKeyGenerator, QueryKey
from clinic_resilience.errors import (
    ErrorCategory,
    OperationCancelledError,
    classify,
    is_policy_error,
)
from clinic_resilience.resilience.adaptive import AdaptiveCircuitBreaker
from clinic_resilience.resilience.cancel import CancelToken
from clinic_resilience.resilience.circuit_breaker import CircuitState
from clinic_resilience.resilience.recovery import (
    FallbackLevel,
    QueryPriority,
    RecoveryContext,
)
from clinic_resilience.resilience.retry import RetryOutcome, RetryStrategy
from clinic_resilience.telemetry import (
    LogContext,
    ResilienceLogger,
    reset_log_context,
    set_log_context,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from clinic_resilience.cache import CacheEntryConfig, QueryCache
    from clinic_resilience.resilience.dedup import QueryDeduplicator
    from clinic_resilience.resilience.policy_recovery import PolicyErrorRecoveryManager
    from clinic_resilience.resilience.recovery import ProgressiveErrorRecovery
    from clinic_resilience.resilience.registry import ResourceRegistry
    from clinic_resilience.resilience.retry import RetryEngine
    from clinic_resilience.telemetry import MetricsCollector

T = TypeVar("T")
_CACHE_LEVELS = (FallbackLevel.CACHE_STALE, FallbackLevel.CACHE_EXPIRED)


@dataclass
class QueryResult(Generic[T]):
    """What the caller of a protected query receives.

    Attributes:
        success: Whether data is available (fresh or from a fallback)
        data: Query result or fallback data
        error: The final error when the query itself failed
        category: Category of that error
        from_cache: Data was served from cache or an offline snapshot
        is_stale: Data may be out of date
        fallback_level: Recovery level that produced the result
        user_message: Message to surface next to the data
        retryable: Whether retrying later makes sense
        retry_delay_ms: Suggested delay before retrying
        attempts: Attempts made by this caller's execution
        duration_ms: Wall time of the whole call
        circuit_state: Breaker state after the call
    """

    success: bool
    data: T | None = None
    error: BaseException | None = None
    category: ErrorCategory | None = None
    from_cache: bool = False
    is_stale: bool = False
    fallback_level: FallbackLevel | None = None
    user_message: str | None = None
    retryable: bool = False
    retry_delay_ms: float | None = None
    attempts: int = 0
    duration_ms: float = 0.0
    circuit_state: CircuitState = CircuitState.CLOSED

    @property
    def is_fallback(self) -> bool:
        return self.fallback_level is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "category": self.category.value if self.category else None,
            "from_cache": self.from_cache,
            "is_stale": self.is_stale,
            "fallback_level": self.fallback_level.name if self.fallback_level else None,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "retry_delay_ms": self.retry_delay_ms,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "circuit_state": self.circuit_state.value,
        }


@dataclass
class _Execution:
    data: Any = None
    from_cache: bool = False
    outcomes: list[RetryOutcome] = field(default_factory=list)

    @property
    def attempts(self) -> int:
        return sum(o.total_attempts for o in self.outcomes)


class ResilientExecutor:
    """Runs queries through dedup, circuit breaker, retry and recovery.

    Example:
        >>> executor = ResilientExecutor(registry, retry_engine, recovery=recovery)
        >>> result = await executor.execute(
        ...     fetch_appointments,
        ...     "appointments",
        ...     query=QueryKey("appointments.today", {"clinic": 3}, user_id="u1"),
        ... )
        >>> result.data if result.success else result.user_message
    """

    def __init__(
        self,
        registry: ResourceRegistry,
        retry: RetryEngine,
        deduplicator: QueryDeduplicator | None = None,
        recovery: ProgressiveErrorRecovery | None = None,
        policy_recovery: PolicyErrorRecoveryManager | None = None,
        cache: QueryCache | None = None,
        metrics: MetricsCollector | None = None,
        logger: ResilienceLogger | None = None,
        clock: Callable[[], float] = time.time,
        cache_config: CacheEntryConfig | None = None,
        store_offline: bool = True,
    ) -> None:
        """Initialize resilient executor.

        Args:
            registry: Per-resource circuit breakers
            retry: Retry engine
            deduplicator: Query deduplicator; queries run alone without one
            recovery: Progressive recovery used after final failures
            policy_recovery: Receives policy errors
            cache: Cache written on success and read during recovery
            metrics: Collector fed with every finished query
            logger: Structured logger
            clock: Time source (seconds)
            cache_config: Freshness settings for cached results
            store_offline: Save successful results as offline snapshots
        """
        self._registry = registry
        self._retry = retry
        self._dedup = deduplicator
        self._recovery = recovery
        self._policy = policy_recovery
        self._cache = cache
        self._metrics = metrics
        self._logger = logger or ResilienceLogger()
        self._clock = clock
        self._cache_config = cache_config
        self._store_offline = store_offline
        self._keys = CacheKeyGenerator()

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        resource: str,
        *,
        query: QueryKey | None = None,
        cache_key: str | None = None,
        strategy: RetryStrategy | str = "standard",
        priority: QueryPriority = QueryPriority.MEDIUM,
        user_id: str | None = None,
        requires_fresh_auth: bool = False,
    ) -> QueryResult[T]:
        """Execute a query with all resilience patterns.

        Args:
            operation: Zero-argument async query
            resource: Protected resource (table) the query reads
            query: Query identity; enables deduplication and derives the
                cache key when ``cache_key`` is not given
            cache_key: Cache entry for results of this query
            strategy: Retry strategy or preset name
            priority: Priority tier, shortens the stale-cache bound
            user_id: Caller identity for offline snapshots
            requires_fresh_auth: Never serve offline data for this query

        Returns:
            QueryResult with data or the recovery outcome

        Raises:
            OperationCancelledError: The execution was cancelled
        """
        if isinstance(strategy, str):
            strategy = RetryStrategy.preset(strategy)
        if cache_key is None and query is not None:
            cache_key = self._keys.generate(query)
        if user_id is None and query is not None:
            user_id = query.user_id

        started = self._clock()
        context_token = set_log_context(
            LogContext(
                request_id=uuid.uuid4().hex[:12],
                resource=resource,
                operation=query.operation if query else None,
            )
        )
        execution = _Execution()
        try:
            try:
                if query is not None and self._dedup is not None:
                    execution = await self._dedup.deduplicate(
                        query,
                        lambda token: self._protected(
                            operation, resource, strategy, cache_key, token
                        ),
                    )
                else:
                    execution = await self._protected(
                        operation, resource, strategy, cache_key, CancelToken(self._logger)
                    )
            except OperationCancelledError:
                self._record_metrics(resource, started, False, category="cancelled")
                raise
            except Exception as e:
                return await self._recover(
                    e,
                    RecoveryContext(
                        resource=resource,
                        cache_key=cache_key,
                        priority=priority,
                        user_id=user_id,
                        requires_fresh_auth=requires_fresh_auth,
                        original_operation=operation,
                    ),
                    started,
                )

            return await self._succeed(execution, resource, cache_key, user_id, started)
        finally:
            reset_log_context(context_token)

    async def _protected(
        self,
        operation: Callable[[], Awaitable[T]],
        resource: str,
        strategy: RetryStrategy,
        cache_key: str | None,
        token: CancelToken,
    ) -> _Execution:
        execution = _Execution()

        async def attempt() -> T:
            token.raise_if_cancelled()
            return await operation()

        async def with_retry() -> T:
            outcome = await self._retry.execute_with_retry(
                attempt, strategy, resource_key=resource
            )
            execution.outcomes.append(outcome)
            return outcome.unwrap()

        breaker = self._registry.get_breaker(resource)
        bypass = not strategy.respect_circuit_breaker
        if isinstance(breaker, AdaptiveCircuitBreaker):
            execution.data = await breaker.execute(
                with_retry, cache_key=cache_key, resource=resource, bypass=bypass
            )
            # The adaptive breaker answers from cache while open
            execution.from_cache = not bypass and not execution.outcomes
        elif bypass:
            execution.data = await with_retry()
        else:
            execution.data = await breaker.execute(with_retry)
        return execution

    async def _succeed(
        self,
        execution: _Execution,
        resource: str,
        cache_key: str | None,
        user_id: str | None,
        started: float,
    ) -> QueryResult[Any]:
        if not execution.from_cache:
            if self._cache is not None and cache_key:
                await self._cache.set(
                    cache_key, execution.data, self._cache_config, {"resource": resource}
                )
            if self._recovery is not None:
                self._recovery.clear_recovery_attempts(resource, cache_key)
                if self._store_offline:
                    await self._recovery.store_offline_data(resource, execution.data, user_id)
            if self._policy is not None:
                self._policy.record_success()

        duration = self._record_metrics(
            resource, started, True, cache_hit=execution.from_cache
        )
        return QueryResult(
            success=True,
            data=execution.data,
            from_cache=execution.from_cache,
            is_stale=execution.from_cache,
            attempts=execution.attempts,
            duration_ms=duration,
            circuit_state=self._registry.get_breaker(resource).state,
        )

    async def _recover(
        self, error: Exception, context: RecoveryContext, started: float
    ) -> QueryResult[Any]:
        classified = classify(error)
        if self._policy is not None and is_policy_error(classified.category):
            await self._policy.record_policy_error(
                classified.category, classified.message, resource=context.resource
            )

        state = self._registry.get_breaker(context.resource).state
        if self._recovery is None:
            duration = self._record_metrics(
                context.resource, started, False, category=classified.category.value
            )
            return QueryResult(
                success=False,
                error=error,
                category=classified.category,
                retryable=classified.retryable,
                duration_ms=duration,
                circuit_state=state,
            )

        recovered = await self._recovery.handle_failure(error, context)
        duration = self._record_metrics(
            context.resource,
            started,
            recovered.success,
            category=classified.category.value,
            cache_hit=recovered.level in _CACHE_LEVELS,
            cache_lookup=self._cache is not None and bool(context.cache_key),
            from_fallback=recovered.success,
        )
        return QueryResult(
            success=recovered.success,
            data=recovered.data,
            error=error,
            category=classified.category,
            from_cache=recovered.is_cached,
            is_stale=recovered.is_stale,
            fallback_level=recovered.level,
            user_message=recovered.user_message,
            retryable=recovered.retryable,
            retry_delay_ms=recovered.retry_delay_ms,
            duration_ms=duration,
            circuit_state=state,
        )

    def _record_metrics(
        self,
        resource: str,
        started: float,
        success: bool,
        category: str | None = None,
        cache_hit: bool = False,
        cache_lookup: bool = False,
        from_fallback: bool = False,
    ) -> float:
        duration = max(0.0, (self._clock() - started) * 1000)
        if self._metrics is not None:
            self._metrics.record_query(
                resource,
                duration,
                success,
                category=category,
                cache_hit=cache_hit,
                cache_lookup=cache_lookup,
                from_fallback=from_fallback,
            )
        return duration

    def get_stats(self) -> dict[str, Any]:
        """Get current statistics from all components.

        Returns:
            Dict with component statistics
        """
        stats: dict[str, Any] = {
            "circuits": {name: s.to_dict() for name, s in self._registry.get_states().items()},
            "retry": self._retry.get_stats().to_dict(),
        }
        if self._dedup is not None:
            stats["dedup"] = self._dedup.get_stats().to_dict()
        if self._recovery is not None:
            recovery = self._recovery.get_recovery_stats()
            stats["recovery"] = {
                "active_recoveries": recovery.active_recoveries,
                "recent_recoveries": recovery.recent_recoveries,
                "total_attempts": recovery.total_attempts,
                "by_level": dict(recovery.by_level),
            }
        if self._policy is not None:
            stats["policy_recovery"] = self._policy.get_status().to_dict()
        return stats
