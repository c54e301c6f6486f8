"""
Progressive error recovery.

When an operation has finally failed, fallback sources are tried in a
fixed order and the first one that produces data wins:

1. Recent cache entry (stale but within a priority-dependent bound)
2. Expired cache entry (up to 30 minutes old)
3. Offline snapshot from durable local storage
4. Graceful degradation: no data, a user message and a retry hint

The error category decides which levels are eligible.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import random
import time
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from clinic_resilience.cache.key import ANONYMOUS
from clinic_resilience.errors import (
    ErrorCategory,
    ErrorSeverity,
    FallbackUnavailableError,
    classify,
    severity_for,
    user_message_for,
)
from clinic_resilience.telemetry import ResilienceLogger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from clinic_resilience.cache import QueryCache


class FallbackLevel(int, Enum):
    """Recovery levels, in the order they are tried."""

    CACHE_STALE = 1
    CACHE_EXPIRED = 2
    OFFLINE_MODE = 3
    GRACEFUL_DEGRADATION = 4


class QueryPriority(str, Enum):
    """How important fresh data is to the caller."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_EXPIRED_CACHE_EXCLUDED = {
    ErrorCategory.SCHEMA_MISMATCH,
    ErrorCategory.POLICY_INFINITE_RECURSION,
    ErrorCategory.POLICY_CIRCULAR_DEPENDENCY,
}

_OFFLINE_ELIGIBLE = {ErrorCategory.NETWORK, ErrorCategory.TIMEOUT}


@dataclass
class RecoveryConfig:
    """Configuration for progressive recovery.

    Attributes:
        stale_bound_critical_seconds: Max cache age served at level 1 for
            critical-priority queries
        stale_bound_seconds: Max cache age served at level 1 otherwise
        expired_bound_seconds: Max cache age served at level 2
        base_retry_delay_ms: First suggested retry delay at level 4
        max_retry_delay_ms: Cap for the level 4 retry delay
        max_jitter_ms: Random delay added to the level 4 retry delay
    """

    stale_bound_critical_seconds: float = 300.0
    stale_bound_seconds: float = 600.0
    expired_bound_seconds: float = 1800.0
    base_retry_delay_ms: float = 2000.0
    max_retry_delay_ms: float = 30000.0
    max_jitter_ms: float = 1000.0
    offline_path: str | None = None

    @classmethod
    def from_env(cls) -> RecoveryConfig:
        """Create configuration from environment variables."""
        return cls(
            stale_bound_critical_seconds=float(
                os.getenv("CLINIC_RESILIENCE_RECOVERY_STALE_CRITICAL_SECS", "300")
            ),
            stale_bound_seconds=float(os.getenv("CLINIC_RESILIENCE_RECOVERY_STALE_SECS", "600")),
            expired_bound_seconds=float(
                os.getenv("CLINIC_RESILIENCE_RECOVERY_EXPIRED_SECS", "1800")
            ),
            offline_path=os.getenv("CLINIC_RESILIENCE_OFFLINE_PATH"),
        )


@dataclass
class RecoveryContext:
    """What the failed call was about.

    Attributes:
        resource: Resource (table) that was queried
        cache_key: Cache entry holding earlier results of the query
        priority: Priority tier of the query
        user_id: Caller identity, scopes offline snapshots
        requires_fresh_auth: Query needed a fresh authorization check, so
            offline data must not be served
        original_operation: The operation that failed
    """

    resource: str
    cache_key: str | None = None
    priority: QueryPriority = QueryPriority.MEDIUM
    user_id: str | None = None
    requires_fresh_auth: bool = False
    original_operation: Callable[[], Awaitable[Any]] | None = None

    @property
    def attempt_key(self) -> str:
        return f"{self.resource}-{self.cache_key or ''}"


@dataclass
class RecoveryResult:
    """Outcome of progressive recovery.

    Attributes:
        success: Whether fallback data was produced
        level: Level that produced the result
        user_message: Message to show next to (or instead of) the data
        retryable: Whether retrying later makes sense
        retry_delay_ms: Suggested delay before retrying
        category: Category of the original error
        severity: How prominently to surface the message
        is_cached: Data comes from cache or an offline snapshot
        is_stale: Data may be out of date
        data_age_seconds: Age of the served data, if known
    """

    success: bool
    level: FallbackLevel
    user_message: str
    retryable: bool
    retry_delay_ms: float
    category: ErrorCategory
    severity: ErrorSeverity
    data: Any = None
    is_cached: bool = False
    is_stale: bool = False
    data_age_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "level": self.level.name,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "retry_delay_ms": self.retry_delay_ms,
            "category": self.category.value,
            "severity": self.severity.value,
            "is_cached": self.is_cached,
            "is_stale": self.is_stale,
            "data_age_seconds": self.data_age_seconds,
        }


@dataclass
class OfflineSnapshot:
    """Last-known-good data for a resource and user."""

    resource: str
    user_id: str
    data: Any
    stored_at: float


def offline_key(resource: str, user_id: str | None) -> str:
    return f"offline_{resource}_{user_id or ANONYMOUS}"


class OfflineStore(ABC):
    """Durable storage for offline snapshots."""

    @abstractmethod
    async def get(self, resource: str, user_id: str | None) -> OfflineSnapshot | None:
        """Load a snapshot, if one was stored."""
        ...

    @abstractmethod
    async def save(self, resource: str, user_id: str | None, data: Any) -> None:
        """Store a snapshot, replacing any earlier one."""
        ...


class MemoryOfflineStore(OfflineStore):
    """Offline snapshots kept in process memory."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._snapshots: dict[str, OfflineSnapshot] = {}
        self._clock = clock

    async def get(self, resource: str, user_id: str | None) -> OfflineSnapshot | None:
        return self._snapshots.get(offline_key(resource, user_id))

    async def save(self, resource: str, user_id: str | None, data: Any) -> None:
        self._snapshots[offline_key(resource, user_id)] = OfflineSnapshot(
            resource=resource,
            user_id=user_id or ANONYMOUS,
            data=data,
            stored_at=self._clock(),
        )


class DiskOfflineStore(OfflineStore):
    """Offline snapshots stored as JSON files.

    Example:
        >>> store = DiskOfflineStore("/var/lib/clinic/offline")
        >>> await store.save("appointments", "u1", [{"id": 7}])
        >>> (await store.get("appointments", "u1")).data
        [{'id': 7}]
    """

    def __init__(self, path: str | Path, clock: Callable[[], float] = time.time) -> None:
        """Initialize disk store.

        Args:
            path: Snapshot directory path
            clock: Timestamp source
        """
        self._path = Path(path)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._path.mkdir(parents=True, exist_ok=True)

    def _key_to_path(self, key: str) -> Path:
        key_hash = hashlib.sha256(key.encode()).hexdigest()
        return self._path / f"{key_hash}.json"

    async def get(self, resource: str, user_id: str | None) -> OfflineSnapshot | None:
        path = self._key_to_path(offline_key(resource, user_id))
        async with self._lock:
            if not path.exists():
                return None
            try:
                data = json.loads(path.read_text())
                return OfflineSnapshot(
                    resource=data["resource"],
                    user_id=data["user_id"],
                    data=data["data"],
                    stored_at=data["stored_at"],
                )
            except (json.JSONDecodeError, KeyError) as e:
                raise FallbackUnavailableError(f"Corrupt offline snapshot: {path.name}") from e

    async def save(self, resource: str, user_id: str | None, data: Any) -> None:
        key = offline_key(resource, user_id)
        path = self._key_to_path(key)
        payload = {
            "key": key,
            "resource": resource,
            "user_id": user_id or ANONYMOUS,
            "data": data,
            "stored_at": self._clock(),
        }
        async with self._lock:
            path.write_text(json.dumps(payload, default=str))


@dataclass
class _Strategy:
    level: FallbackLevel
    action: Callable[[], Awaitable[tuple[Any, float | None]]]
    user_message: str
    retry_delay_ms: float
    severity: ErrorSeverity


@dataclass
class _RecoveryEvent:
    timestamp: float
    resource: str
    level: FallbackLevel
    success: bool


@dataclass
class RecoveryStats:
    active_recoveries: int = 0
    recent_recoveries: int = 0
    total_attempts: int = 0
    by_level: dict[str, int] = field(default_factory=dict)


class ProgressiveErrorRecovery:
    """Cascades through fallback sources after a final failure.

    Example:
        >>> recovery = ProgressiveErrorRecovery(cache=cache, offline_store=store)
        >>> result = await recovery.handle_failure(
        ...     error, RecoveryContext("appointments", cache_key="appointments:today")
        ... )
        >>> result.level
        <FallbackLevel.CACHE_STALE: 1>
    """

    def __init__(
        self,
        cache: QueryCache | None = None,
        offline_store: OfflineStore | None = None,
        config: RecoveryConfig | None = None,
        logger: ResilienceLogger | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize recovery.

        Args:
            cache: Query cache for levels 1 and 2
            offline_store: Snapshot store for level 3
            config: Recovery configuration
            logger: Structured logger
            clock: Time source (seconds)
            rng: Random source for retry jitter
        """
        self._cache = cache
        self._offline = offline_store
        self._config = config or RecoveryConfig()
        self._logger = logger or ResilienceLogger()
        self._clock = clock
        self._rng = rng or random.Random()
        self._attempts: dict[str, int] = {}
        self._events: deque[_RecoveryEvent] = deque(maxlen=500)

    @property
    def offline_store(self) -> OfflineStore | None:
        return self._offline

    def _stale_bound(self, context: RecoveryContext) -> float:
        if context.priority == QueryPriority.CRITICAL:
            return self._config.stale_bound_critical_seconds
        return self._config.stale_bound_seconds

    def _strategies(
        self, category: ErrorCategory, context: RecoveryContext
    ) -> list[_Strategy]:
        strategies: list[_Strategy] = []
        lookup_cache: dict[str, Any] = {}

        async def cached() -> Any:
            if "lookup" not in lookup_cache:
                if self._cache is None or not context.cache_key:
                    raise FallbackUnavailableError("No cache configured for this query")
                lookup_cache["lookup"] = await self._cache.get(context.cache_key)
            lookup = lookup_cache["lookup"]
            if not lookup.hit:
                raise FallbackUnavailableError("No cached data")
            return lookup

        async def stale_cache() -> tuple[Any, float | None]:
            lookup = await cached()
            if lookup.age_seconds >= self._stale_bound(context):
                raise FallbackUnavailableError("Cached data too old for this priority")
            return lookup.data, lookup.age_seconds

        async def expired_cache() -> tuple[Any, float | None]:
            lookup = await cached()
            if lookup.age_seconds >= self._config.expired_bound_seconds:
                raise FallbackUnavailableError("Cached data expired")
            return lookup.data, lookup.age_seconds

        async def offline() -> tuple[Any, float | None]:
            if self._offline is None:
                raise FallbackUnavailableError("No offline store configured")
            snapshot = await self._offline.get(context.resource, context.user_id)
            if snapshot is None:
                raise FallbackUnavailableError("No offline data available")
            return snapshot.data, max(0.0, self._clock() - snapshot.stored_at)

        strategies.append(
            _Strategy(
                FallbackLevel.CACHE_STALE,
                stale_cache,
                "Showing recent data while reconnecting...",
                2000.0,
                ErrorSeverity.LOW,
            )
        )
        if category not in _EXPIRED_CACHE_EXCLUDED:
            strategies.append(
                _Strategy(
                    FallbackLevel.CACHE_EXPIRED,
                    expired_cache,
                    "Showing older data - some information may be outdated",
                    5000.0,
                    ErrorSeverity.MEDIUM,
                )
            )
        if category in _OFFLINE_ELIGIBLE and not context.requires_fresh_auth:
            strategies.append(
                _Strategy(
                    FallbackLevel.OFFLINE_MODE,
                    offline,
                    "Working offline - changes will sync when connection is restored",
                    10000.0,
                    ErrorSeverity.MEDIUM,
                )
            )
        return strategies

    def _degradation_delay(self, attempts: int) -> float:
        delay = min(
            self._config.base_retry_delay_ms * 2**attempts,
            self._config.max_retry_delay_ms,
        )
        return delay + self._rng.uniform(0, self._config.max_jitter_ms)

    async def handle_failure(
        self, error: BaseException | Any, context: RecoveryContext
    ) -> RecoveryResult:
        """Recover from a final failure.

        Args:
            error: The error the operation ended with
            context: What the failed call was about

        Returns:
            RecoveryResult, successful when a fallback produced data
        """
        classified = classify(error)
        key = context.attempt_key
        attempts = self._attempts.get(key, 0)
        self._attempts[key] = attempts + 1

        for strategy in self._strategies(classified.category, context):
            try:
                data, age = await strategy.action()
            except FallbackUnavailableError as e:
                self._logger.debug(
                    "recovery",
                    f"Level {strategy.level.name} unavailable: {e.message}",
                    resource=context.resource,
                )
                continue

            self._attempts.pop(key, None)
            self._record(context.resource, strategy.level, True)
            self._logger.info(
                "recovery",
                f"Recovered with {strategy.level.name}",
                resource=context.resource,
                fallback_level=strategy.level.value,
                error_category=classified.category.value,
            )
            return RecoveryResult(
                success=True,
                data=data,
                level=strategy.level,
                user_message=strategy.user_message,
                retryable=True,
                retry_delay_ms=strategy.retry_delay_ms,
                category=classified.category,
                severity=strategy.severity,
                is_cached=True,
                is_stale=True,
                data_age_seconds=age,
            )

        self._record(context.resource, FallbackLevel.GRACEFUL_DEGRADATION, False)
        self._logger.warning(
            "recovery",
            "No fallback data, degrading gracefully",
            error=error,
            resource=context.resource,
            error_category=classified.category.value,
            attempts=attempts + 1,
        )
        return RecoveryResult(
            success=False,
            level=FallbackLevel.GRACEFUL_DEGRADATION,
            user_message=user_message_for(classified.category, context.resource),
            retryable=classified.retryable,
            retry_delay_ms=self._degradation_delay(attempts),
            category=classified.category,
            severity=severity_for(classified.category),
        )

    def _record(self, resource: str, level: FallbackLevel, success: bool) -> None:
        self._events.append(_RecoveryEvent(self._clock(), resource, level, success))

    async def store_offline_data(
        self, resource: str, data: Any, user_id: str | None = None
    ) -> bool:
        """Store a last-known-good snapshot.

        Returns:
            False when no offline store is configured
        """
        if self._offline is None:
            return False
        await self._offline.save(resource, user_id, data)
        self._logger.debug("recovery", "Stored offline snapshot", resource=resource)
        return True

    def clear_recovery_attempts(self, resource: str, cache_key: str | None = None) -> None:
        """Forget attempts for a query after it succeeded."""
        self._attempts.pop(RecoveryContext(resource, cache_key).attempt_key, None)

    def get_attempts(self, context: RecoveryContext) -> int:
        return self._attempts.get(context.attempt_key, 0)

    def get_recovery_stats(self) -> RecoveryStats:
        """Recovery counters; ``recent_recoveries`` covers 5 minutes."""
        since = self._clock() - 300
        recent = [e for e in self._events if e.timestamp >= since]
        return RecoveryStats(
            active_recoveries=len(self._attempts),
            recent_recoveries=len(recent),
            total_attempts=sum(self._attempts.values()),
            by_level=dict(Counter(e.level.name for e in recent)),
        )

    def reset(self) -> None:
        self._attempts.clear()
        self._events.clear()
