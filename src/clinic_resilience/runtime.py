"""
Resilience runtime.

Wires every component from a :class:`ResilienceConfig`, owns the
recurring maintenance tasks and exposes the admin controls.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, TypeVar

from clinic_resilience.alerting import (
    PerformanceAlertingSystem,
    SystemMetricsSampler,
    default_alert_rules,
    load_alert_rules,
)
from clinic_resilience.cache import MemoryQueryCache
from clinic_resilience.config import ResilienceConfig
from clinic_resilience.flags import InMemoryFeatureFlags
from clinic_resilience.resilience import (
    AdaptiveBreakerConfig,
    CancelReason,
    DiskOfflineStore,
    MemoryOfflineStore,
    PolicyErrorRecoveryManager,
    ProgressiveErrorRecovery,
    QueryDeduplicator,
    QueryPriority,
    QueryResult,
    RecurringTask,
    ResilientExecutor,
    ResourceRegistry,
    RetryEngine,
)
from clinic_resilience.telemetry import LogLevel, MetricsCollector, ResilienceLogger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    import httpx

    from clinic_resilience.alerting import AlertRule
    from clinic_resilience.cache import QueryCache, QueryKey
    from clinic_resilience.flags import FeatureFlagStore
    from clinic_resilience.resilience import OfflineStore, RetryStrategy

T = TypeVar("T")


class ResilienceRuntime:
    """Everything needed to protect clinic data queries.

    Example:
        >>> async with ResilienceRuntime(ResilienceConfig.from_yaml("resilience.yaml")) as rt:
        ...     result = await rt.execute(
        ...         fetch_appointments,
        ...         "appointments",
        ...         query=QueryKey("appointments.today", {"clinic": 3}, user_id="u1"),
        ...     )
    """

    def __init__(
        self,
        config: ResilienceConfig | None = None,
        cache: QueryCache | None = None,
        flags: FeatureFlagStore | None = None,
        offline_store: OfflineStore | None = None,
        rules: Sequence[AlertRule] | None = None,
        logger: ResilienceLogger | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize runtime.

        Args:
            config: Runtime configuration
            cache: Query cache; an in-memory cache when not given
            flags: Feature flag store; an in-memory store when not given
            offline_store: Snapshot store; from ``recovery.offline_path``
                or in memory when not given
            rules: Alert rules; read from the alerting config when not given
            logger: Structured logger
            clock: Time source (seconds)
            sleep: Async sleep used between retries
            http_client: Client for webhook alert actions
        """
        self.config = config or ResilienceConfig()
        self.logger = logger or ResilienceLogger(
            max_entries=self.config.logging.max_entries, clock=clock
        )
        self._clock = clock

        self.cache = cache or MemoryQueryCache(default_config=self.config.cache, clock=clock)
        self.flags = flags or InMemoryFeatureFlags()
        self.metrics = MetricsCollector(clock=clock)
        self.registry = ResourceRegistry(
            self.config.circuit_breaker,
            cache=self.cache,
            logger=self.logger,
            clock=clock,
            overrides=self.config.resources,
        )
        self.retry = RetryEngine(self.registry, logger=self.logger, clock=clock, sleep=sleep)
        self.deduplicator = QueryDeduplicator(self.config.dedup, logger=self.logger, clock=clock)
        self.recovery = ProgressiveErrorRecovery(
            cache=self.cache,
            offline_store=offline_store or self._default_offline_store(),
            config=self.config.recovery,
            logger=self.logger,
            clock=clock,
        )
        self.policy_recovery = PolicyErrorRecoveryManager(
            self.registry, logger=self.logger, clock=clock
        )
        self.alerting = PerformanceAlertingSystem(
            sampler=SystemMetricsSampler(
                metrics=self.metrics,
                registry=self.registry,
                cache=self.cache,
                deduplicator=self.deduplicator,
                window_ms=self.config.alerting.sample_window_ms,
                clock=clock,
            ),
            flags=self.flags,
            rules=self._load_rules() if rules is None else rules,
            logger=self.logger,
            clock=clock,
            http_client=http_client,
            webhook_timeout_seconds=self.config.alerting.webhook_timeout_seconds,
        )
        self.executor = ResilientExecutor(
            self.registry,
            self.retry,
            deduplicator=self.deduplicator,
            recovery=self.recovery,
            policy_recovery=self.policy_recovery,
            cache=self.cache,
            metrics=self.metrics,
            logger=self.logger,
            clock=clock,
            cache_config=self.config.cache,
        )
        self._tasks = self._build_tasks()

    @classmethod
    def configure_logging(cls, config: ResilienceConfig) -> None:
        """Apply the logging section to the ``clinic_resilience`` loggers."""
        ResilienceLogger.configure(
            level=LogLevel(config.logging.level), format=config.logging.format
        )

    def _default_offline_store(self) -> OfflineStore:
        path = self.config.recovery.offline_path
        if path:
            return DiskOfflineStore(path, clock=self._clock)
        return MemoryOfflineStore(clock=self._clock)

    def _load_rules(self) -> list[AlertRule]:
        alerting = self.config.alerting
        rules = default_alert_rules() if alerting.include_default_rules else []
        if alerting.rules_path:
            loaded = load_alert_rules(alerting.rules_path)
            loaded_ids = {rule.id for rule in loaded}
            rules = [rule for rule in rules if rule.id not in loaded_ids] + loaded
        return rules

    def _build_tasks(self) -> list[RecurringTask]:
        tasks = [
            RecurringTask(
                "dedup_sweep",
                self.config.dedup.sweep_interval_seconds,
                self.deduplicator.tick,
                self.logger,
            )
        ]
        breaker = self.config.circuit_breaker
        if isinstance(breaker, AdaptiveBreakerConfig):
            tasks.append(
                RecurringTask(
                    "load_monitor", breaker.load.interval_seconds, self.registry.tick, self.logger
                )
            )
        if self.config.alerting.enabled:
            tasks.append(
                RecurringTask(
                    "alert_evaluation",
                    self.config.alerting.evaluation_interval_seconds,
                    self.alerting.tick,
                    self.logger,
                )
            )
        return tasks

    @property
    def tasks(self) -> list[RecurringTask]:
        return list(self._tasks)

    @property
    def is_running(self) -> bool:
        return any(task.is_running for task in self._tasks)

    # Lifecycle

    def start(self) -> None:
        """Start the recurring tasks (idempotent)."""
        for task in self._tasks:
            task.start()
        self.logger.info("runtime", "Resilience runtime started", tasks=len(self._tasks))

    async def stop(self) -> None:
        """Stop the recurring tasks and cancel in-flight queries (idempotent)."""
        for task in self._tasks:
            await task.stop()
        cancelled = self.deduplicator.cancel_all(CancelReason.SHUTDOWN)
        self.logger.info("runtime", "Resilience runtime stopped", cancelled=cancelled)

    async def tick(self) -> None:
        """Run every recurring task once."""
        for task in self._tasks:
            await task.tick()

    async def __aenter__(self) -> ResilienceRuntime:
        self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    # Queries

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        resource: str,
        *,
        query: QueryKey | None = None,
        cache_key: str | None = None,
        strategy: RetryStrategy | str | None = None,
        priority: QueryPriority = QueryPriority.MEDIUM,
        user_id: str | None = None,
        requires_fresh_auth: bool = False,
    ) -> QueryResult[T]:
        """Execute a protected query (see :meth:`ResilientExecutor.execute`)."""
        return await self.executor.execute(
            operation,
            resource,
            query=query,
            cache_key=cache_key,
            strategy=strategy or self.config.retry_strategy,
            priority=priority,
            user_id=user_id,
            requires_fresh_auth=requires_fresh_auth,
        )

    # Admin controls

    def reset_circuit(self, resource: str) -> bool:
        """Manually close a resource's circuit."""
        return self.registry.reset(resource)

    def reset_all_circuits(self) -> int:
        return self.registry.reset_all()

    def disable_feature(self, feature: str) -> bool:
        disabled = self.flags.disable(feature)
        if disabled:
            self.logger.warning("runtime", "Feature manually disabled", feature=feature)
        return disabled

    def enable_feature(self, feature: str) -> bool:
        enabled = self.flags.enable(feature)
        if enabled:
            self.logger.info("runtime", "Feature manually enabled", feature=feature)
        return enabled

    def resolve_alert(self, alert_id: str, reason: str = "Manual resolution") -> bool:
        return self.alerting.resolve_alert(alert_id, reason)

    async def trigger_recovery(self) -> bool:
        """Run policy recovery now, ignoring its cooldown."""
        return await self.policy_recovery.manual_recovery()

    def cancel_query(self, query: QueryKey | str) -> bool:
        return self.deduplicator.cancel(query)

    def get_health(self) -> dict[str, Any]:
        """Read-only snapshot for dashboards."""
        return {
            "circuits": {
                name: snapshot.to_dict() for name, snapshot in self.registry.get_states().items()
            },
            "worst_circuit_state": self.registry.worst_state().value,
            "metrics": self.metrics.get_aggregated_metrics(5 * 60 * 1000).to_dict(),
            "alerting": self.alerting.get_alerting_metrics().to_dict(),
            "active_alerts": [alert.to_dict() for alert in self.alerting.get_active_alerts()],
            "executor": self.executor.get_stats(),
            "flags": self.flags.get_all_flags(),
            "tasks": {
                task.name: {
                    "running": task.is_running,
                    "runs": task.runs,
                    "failures": task.failures,
                }
                for task in self._tasks
            },
        }
