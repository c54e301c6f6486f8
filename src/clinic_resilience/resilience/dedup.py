"""
Query deduplication.

Concurrent calls for the same canonical query share one execution. The
first caller starts it; later callers subscribe to the shared task. An
entry leaves the in-flight map when its last subscriber is done.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from clinic_resilience.cache.key import CacheKeyGenerator, QueryKey
from clinic_resilience.errors import DeduplicationTimeoutError, OperationCancelledError
from clinic_resilience.resilience.cancel import CancelReason, CancelToken
from clinic_resilience.telemetry import ResilienceLogger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")


@dataclass
class DeduplicatorConfig:
    """Configuration for the query deduplicator.

    Attributes:
        request_timeout_seconds: Shared executions are aborted after this
        sweep_interval_seconds: Cadence of the stale entry sweep
        enabled: When False every call executes on its own
    """

    request_timeout_seconds: float = 30.0
    sweep_interval_seconds: float = 60.0
    enabled: bool = True

    @classmethod
    def from_env(cls) -> DeduplicatorConfig:
        """Create configuration from environment variables."""
        return cls(
            request_timeout_seconds=float(
                os.getenv("CLINIC_RESILIENCE_DEDUP_TIMEOUT_SECS", "30")
            ),
            sweep_interval_seconds=float(
                os.getenv("CLINIC_RESILIENCE_DEDUP_SWEEP_SECS", "60")
            ),
            enabled=os.getenv("CLINIC_RESILIENCE_DEDUP_ENABLED", "true").lower() != "false",
        )


@dataclass
class InFlightRequest:
    """A shared execution and its subscribers."""

    key: str
    operation: str
    task: asyncio.Future[Any]
    token: CancelToken
    created_at: float
    subscribers: int = 1

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.created_at)


@dataclass
class DeduplicationStats:
    """Deduplicator counters and in-flight summary."""

    in_flight_count: int = 0
    total_subscribers: int = 0
    oldest_request_age_seconds: float = 0.0
    average_subscribers: float = 0.0
    total_requests: int = 0
    deduplicated_requests: int = 0
    cancelled_requests: int = 0
    timed_out_requests: int = 0
    swept_requests: int = 0
    by_operation: dict[str, int] = field(default_factory=dict)

    @property
    def savings_percentage(self) -> float:
        """Share of requests answered by an existing execution (0-100)."""
        if self.total_requests == 0:
            return 0.0
        return self.deduplicated_requests / self.total_requests * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "in_flight_count": self.in_flight_count,
            "total_subscribers": self.total_subscribers,
            "oldest_request_age_seconds": self.oldest_request_age_seconds,
            "average_subscribers": self.average_subscribers,
            "total_requests": self.total_requests,
            "deduplicated_requests": self.deduplicated_requests,
            "cancelled_requests": self.cancelled_requests,
            "timed_out_requests": self.timed_out_requests,
            "swept_requests": self.swept_requests,
            "savings_percentage": self.savings_percentage,
            "by_operation": dict(self.by_operation),
        }


def _consume_result(task: asyncio.Future[Any]) -> None:
    # Marks the exception retrieved when every subscriber has gone away
    if not task.cancelled():
        task.exception()


class QueryDeduplicator:
    """Coalesces concurrent identical queries into one execution.

    Example:
        >>> dedup = QueryDeduplicator()
        >>> key = QueryKey("patients.list", {"clinic": 3}, user_id="u1")
        >>> rows = await dedup.deduplicate(key, lambda token: fetch_patients(3))
    """

    def __init__(
        self,
        config: DeduplicatorConfig | None = None,
        logger: ResilienceLogger | None = None,
        clock: Callable[[], float] = time.time,
        key_generator: CacheKeyGenerator | None = None,
    ) -> None:
        """Initialize deduplicator.

        Args:
            config: Deduplicator configuration
            logger: Structured logger
            clock: Time source (seconds)
            key_generator: Key generator for ``QueryKey`` inputs
        """
        self._config = config or DeduplicatorConfig()
        self._logger = logger or ResilienceLogger()
        self._clock = clock
        self._keys = key_generator or CacheKeyGenerator(prefix="dedup")
        self._in_flight: dict[str, InFlightRequest] = {}
        self._stats = DeduplicationStats()

    @property
    def config(self) -> DeduplicatorConfig:
        return self._config

    def generate_key(self, query: QueryKey) -> str:
        """Canonical key for a query."""
        return self._keys.generate(query)

    def _resolve(self, key: QueryKey | str) -> str:
        return self.generate_key(key) if isinstance(key, QueryKey) else key

    async def deduplicate(
        self,
        key: QueryKey | str,
        executor: Callable[[CancelToken], Awaitable[T]],
        operation: str | None = None,
    ) -> T:
        """Execute, or join the in-flight execution for the same key.

        Args:
            key: Query identity or a pre-computed key
            executor: Receives the execution's cancel token
            operation: Operation name for statistics

        Returns:
            The shared result

        Raises:
            OperationCancelledError: The execution was cancelled
            DeduplicationTimeoutError: The execution exceeded the timeout
        """
        if isinstance(key, QueryKey):
            operation = operation or key.operation
        operation = operation or "unknown"
        resolved = self._resolve(key)

        self._stats.total_requests += 1
        self._stats.by_operation[operation] = self._stats.by_operation.get(operation, 0) + 1

        if not self._config.enabled:
            return await executor(CancelToken(self._logger))

        entry = self._in_flight.get(resolved)
        if entry is not None and not entry.task.done():
            entry.subscribers += 1
            self._stats.deduplicated_requests += 1
            self._logger.debug(
                "dedup",
                "Joined in-flight request",
                key=resolved,
                subscribers=entry.subscribers,
            )
        else:
            token = CancelToken(self._logger)
            task = asyncio.ensure_future(self._run(resolved, executor, token))
            task.add_done_callback(_consume_result)
            entry = InFlightRequest(
                key=resolved,
                operation=operation,
                task=task,
                token=token,
                created_at=self._clock(),
            )
            self._in_flight[resolved] = entry

        try:
            return await asyncio.shield(entry.task)
        finally:
            self._unsubscribe(entry)

    async def _run(
        self,
        key: str,
        executor: Callable[[CancelToken], Awaitable[T]],
        token: CancelToken,
    ) -> T:
        work = asyncio.ensure_future(executor(token))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {work, cancelled},
                timeout=self._config.request_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()

        if work in done:
            return work.result()

        work.cancel()
        await asyncio.gather(work, return_exceptions=True)

        if token.is_cancelled:
            reason = token.reason.value if token.reason else None
            raise OperationCancelledError(f"Request cancelled: {key}", reason=reason)

        token.cancel(CancelReason.TIMEOUT)
        self._stats.timed_out_requests += 1
        self._in_flight_remove(key)
        self._logger.warning(
            "dedup",
            "Shared request timed out",
            key=key,
            timeout_seconds=self._config.request_timeout_seconds,
        )
        raise DeduplicationTimeoutError(key, self._config.request_timeout_seconds)

    def _in_flight_remove(self, key: str, entry: InFlightRequest | None = None) -> None:
        current = self._in_flight.get(key)
        if current is not None and (entry is None or current is entry):
            del self._in_flight[key]

    def _unsubscribe(self, entry: InFlightRequest) -> None:
        entry.subscribers -= 1
        if entry.subscribers > 0:
            return
        self._in_flight_remove(entry.key, entry)
        if not entry.task.done():
            # Nobody is waiting any more
            entry.token.cancel(CancelReason.NO_SUBSCRIBERS)

    def cancel(self, key: QueryKey | str) -> bool:
        """Abort an in-flight execution and reject its subscribers.

        Returns:
            False if nothing was in flight for the key
        """
        resolved = self._resolve(key)
        entry = self._in_flight.pop(resolved, None)
        if entry is None:
            return False
        entry.token.cancel(CancelReason.USER_REQUEST)
        self._stats.cancelled_requests += 1
        self._logger.info(
            "dedup", "Request cancelled", key=resolved, subscribers=entry.subscribers
        )
        return True

    def cancel_all(self, reason: CancelReason = CancelReason.CANCEL_ALL) -> int:
        """Abort every in-flight execution.

        Returns:
            Number of executions cancelled
        """
        entries = list(self._in_flight.values())
        self._in_flight.clear()
        for entry in entries:
            entry.token.cancel(reason)
        self._stats.cancelled_requests += len(entries)
        if entries:
            self._logger.info("dedup", "Cancelled all in-flight requests", count=len(entries))
        return len(entries)

    async def tick(self) -> int:
        """Sweep aged entries that no longer have subscribers.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        stale = [
            entry
            for entry in self._in_flight.values()
            if entry.subscribers <= 0
            and entry.age_seconds(now) > self._config.request_timeout_seconds
        ]
        for entry in stale:
            self._in_flight_remove(entry.key, entry)
            entry.token.cancel(CancelReason.STALE)
        if stale:
            self._stats.swept_requests += len(stale)
            self._logger.warning("dedup", "Swept stale in-flight entries", count=len(stale))
        return len(stale)

    def is_in_flight(self, key: QueryKey | str) -> bool:
        return self._resolve(key) in self._in_flight

    def get_in_flight_count(self) -> int:
        return len(self._in_flight)

    def get_in_flight_requests(self) -> list[dict[str, Any]]:
        """Describe in-flight executions, oldest first."""
        now = self._clock()
        entries = sorted(self._in_flight.values(), key=lambda e: e.created_at)
        return [
            {
                "key": e.key,
                "operation": e.operation,
                "age_seconds": e.age_seconds(now),
                "subscribers": e.subscribers,
            }
            for e in entries
        ]

    def get_stats(self) -> DeduplicationStats:
        """Counters plus a summary of what is in flight."""
        now = self._clock()
        entries = list(self._in_flight.values())
        subscribers = sum(e.subscribers for e in entries)
        return DeduplicationStats(
            in_flight_count=len(entries),
            total_subscribers=subscribers,
            oldest_request_age_seconds=max((e.age_seconds(now) for e in entries), default=0.0),
            average_subscribers=subscribers / len(entries) if entries else 0.0,
            total_requests=self._stats.total_requests,
            deduplicated_requests=self._stats.deduplicated_requests,
            cancelled_requests=self._stats.cancelled_requests,
            timed_out_requests=self._stats.timed_out_requests,
            swept_requests=self._stats.swept_requests,
            by_operation=dict(self._stats.by_operation),
        )

    def reset(self) -> None:
        """Cancel everything in flight and zero the counters."""
        self.cancel_all(CancelReason.SHUTDOWN)
        self._stats = DeduplicationStats()
