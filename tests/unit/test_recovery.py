"""Tests for progressive error recovery."""

import pytest

from clinic_resilience.cache import MemoryQueryCache
from clinic_resilience.errors import ErrorCategory, ErrorSeverity, FallbackUnavailableError
from clinic_resilience.resilience import (
    DiskOfflineStore,
    FallbackLevel,
    MemoryOfflineStore,
    ProgressiveErrorRecovery,
    QueryPriority,
    RecoveryContext,
)

NETWORK_ERROR = Exception("network timeout")
SCHEMA_ERROR = Exception('column "dob" does not exist')


@pytest.fixture
def cache(clock) -> MemoryQueryCache:
    return MemoryQueryCache(clock=clock)


class TestCacheLevels:
    """Tests for the cache fallback levels."""

    @pytest.mark.asyncio
    async def test_recent_cache_is_served_stale(self, cache, clock, logger) -> None:
        """Test cache younger than ten minutes is served at level 1."""
        await cache.set("appointments:today", [{"id": 1}])
        clock.advance(120)
        recovery = ProgressiveErrorRecovery(cache=cache, logger=logger, clock=clock)

        result = await recovery.handle_failure(
            NETWORK_ERROR, RecoveryContext("appointments", cache_key="appointments:today")
        )

        assert result.success
        assert result.level == FallbackLevel.CACHE_STALE
        assert result.data == [{"id": 1}]
        assert result.retryable is True
        assert result.retry_delay_ms == 2000
        assert result.severity == ErrorSeverity.LOW
        assert result.is_cached and result.is_stale
        assert result.data_age_seconds == 120
        assert result.category == ErrorCategory.NETWORK

    @pytest.mark.asyncio
    async def test_critical_priority_has_tighter_bound(self, cache, clock, logger) -> None:
        """Test critical queries only accept five minutes at level 1."""
        await cache.set("settings:clinic", {"theme": "dark"})
        clock.advance(400)
        recovery = ProgressiveErrorRecovery(cache=cache, logger=logger, clock=clock)

        critical = await recovery.handle_failure(
            NETWORK_ERROR,
            RecoveryContext(
                "settings", cache_key="settings:clinic", priority=QueryPriority.CRITICAL
            ),
        )
        medium = await recovery.handle_failure(
            NETWORK_ERROR, RecoveryContext("settings", cache_key="settings:clinic")
        )

        assert critical.level == FallbackLevel.CACHE_EXPIRED
        assert medium.level == FallbackLevel.CACHE_STALE

    @pytest.mark.asyncio
    async def test_expired_cache(self, cache, clock, logger) -> None:
        """Test cache between ten and thirty minutes is served at level 2."""
        await cache.set("patients:list", [{"id": 2}])
        clock.advance(900)
        recovery = ProgressiveErrorRecovery(cache=cache, logger=logger, clock=clock)

        result = await recovery.handle_failure(
            NETWORK_ERROR, RecoveryContext("patients", cache_key="patients:list")
        )

        assert result.level == FallbackLevel.CACHE_EXPIRED
        assert result.retry_delay_ms == 5000
        assert result.severity == ErrorSeverity.MEDIUM
        assert "outdated" in result.user_message

    @pytest.mark.asyncio
    async def test_bounds_are_exclusive(self, cache, clock, logger) -> None:
        """Test an entry exactly at the stale bound moves to the next level."""
        await cache.set("patients:list", [])
        clock.advance(600)
        recovery = ProgressiveErrorRecovery(cache=cache, logger=logger, clock=clock)

        result = await recovery.handle_failure(
            NETWORK_ERROR, RecoveryContext("patients", cache_key="patients:list")
        )
        assert result.level == FallbackLevel.CACHE_EXPIRED

    @pytest.mark.asyncio
    async def test_schema_errors_skip_expired_cache(self, cache, clock, logger) -> None:
        """Test schema mismatches never serve expired data."""
        await cache.set("patients:list", [{"id": 2}])
        clock.advance(900)
        recovery = ProgressiveErrorRecovery(cache=cache, logger=logger, clock=clock)

        result = await recovery.handle_failure(
            SCHEMA_ERROR, RecoveryContext("patients", cache_key="patients:list")
        )

        assert not result.success
        assert result.level == FallbackLevel.GRACEFUL_DEGRADATION
        assert result.retryable is False
        assert result.severity == ErrorSeverity.HIGH

    @pytest.mark.asyncio
    async def test_cache_older_than_thirty_minutes(self, cache, clock, logger, rng) -> None:
        """Test very old cache is not served."""
        await cache.set("patients:list", [{"id": 2}])
        clock.advance(1800)
        recovery = ProgressiveErrorRecovery(cache=cache, logger=logger, clock=clock, rng=rng)

        result = await recovery.handle_failure(
            Exception("request timed out"),
            RecoveryContext("patients", cache_key="patients:list"),
        )
        assert result.level == FallbackLevel.GRACEFUL_DEGRADATION
        assert result.retryable is True


class TestOfflineLevel:
    """Tests for the offline snapshot level."""

    @pytest.mark.asyncio
    async def test_network_errors_use_offline_data(self, clock, logger) -> None:
        """Test a stored snapshot is served for network failures."""
        store = MemoryOfflineStore(clock=clock)
        recovery = ProgressiveErrorRecovery(offline_store=store, logger=logger, clock=clock)
        assert await recovery.store_offline_data("appointments", [{"id": 9}], user_id="u1")
        clock.advance(3600)

        result = await recovery.handle_failure(
            NETWORK_ERROR, RecoveryContext("appointments", user_id="u1")
        )

        assert result.level == FallbackLevel.OFFLINE_MODE
        assert result.data == [{"id": 9}]
        assert result.data_age_seconds == 3600
        assert result.retry_delay_ms == 10000
        assert "offline" in result.user_message.lower()

    @pytest.mark.asyncio
    async def test_snapshots_are_scoped_by_user(self, clock, logger) -> None:
        """Test another user's snapshot is not served."""
        store = MemoryOfflineStore(clock=clock)
        recovery = ProgressiveErrorRecovery(offline_store=store, logger=logger, clock=clock)
        await recovery.store_offline_data("appointments", [{"id": 9}], user_id="u1")

        result = await recovery.handle_failure(
            NETWORK_ERROR, RecoveryContext("appointments", user_id="u2")
        )
        assert result.level == FallbackLevel.GRACEFUL_DEGRADATION

    @pytest.mark.asyncio
    async def test_offline_requires_network_category(self, clock, logger) -> None:
        """Test permission failures never use offline data."""
        store = MemoryOfflineStore(clock=clock)
        recovery = ProgressiveErrorRecovery(offline_store=store, logger=logger, clock=clock)
        await recovery.store_offline_data("appointments", [{"id": 9}])

        result = await recovery.handle_failure(
            Exception("permission denied"), RecoveryContext("appointments")
        )
        assert result.level == FallbackLevel.GRACEFUL_DEGRADATION
        assert result.category == ErrorCategory.PERMISSION

    @pytest.mark.asyncio
    async def test_fresh_auth_blocks_offline(self, clock, logger) -> None:
        """Test queries needing fresh authorization skip offline data."""
        store = MemoryOfflineStore(clock=clock)
        recovery = ProgressiveErrorRecovery(offline_store=store, logger=logger, clock=clock)
        await recovery.store_offline_data("permissions", {"admin": True})

        result = await recovery.handle_failure(
            NETWORK_ERROR, RecoveryContext("permissions", requires_fresh_auth=True)
        )
        assert result.level == FallbackLevel.GRACEFUL_DEGRADATION

    @pytest.mark.asyncio
    async def test_store_without_backend(self, logger) -> None:
        """Test storing without an offline store reports False."""
        recovery = ProgressiveErrorRecovery(logger=logger)
        assert await recovery.store_offline_data("appointments", []) is False


class TestDiskOfflineStore:
    """Tests for DiskOfflineStore."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, tmp_path, clock) -> None:
        """Test snapshots survive a new store instance."""
        store = DiskOfflineStore(tmp_path / "offline", clock=clock)
        await store.save("appointments", "u1", [{"id": 7}])

        reopened = DiskOfflineStore(tmp_path / "offline", clock=clock)
        snapshot = await reopened.get("appointments", "u1")
        assert snapshot is not None
        assert snapshot.data == [{"id": 7}]
        assert snapshot.stored_at == clock()
        assert await reopened.get("appointments", "u2") is None

    @pytest.mark.asyncio
    async def test_corrupt_file(self, tmp_path, clock) -> None:
        """Test an unreadable snapshot raises FallbackUnavailableError."""
        store = DiskOfflineStore(tmp_path, clock=clock)
        await store.save("appointments", "u1", [])
        for path in tmp_path.glob("*.json"):
            path.write_text("{not json")

        with pytest.raises(FallbackUnavailableError):
            await store.get("appointments", "u1")


class TestDegradation:
    """Tests for graceful degradation."""

    @pytest.mark.asyncio
    async def test_delay_grows_with_attempts(self, logger, clock, rng) -> None:
        """Test the suggested delay backs off per resource and key."""
        recovery = ProgressiveErrorRecovery(logger=logger, clock=clock, rng=rng)
        context = RecoveryContext("patients", cache_key="patients:list")

        delays = []
        for _ in range(6):
            result = await recovery.handle_failure(NETWORK_ERROR, context)
            delays.append(result.retry_delay_ms)

        assert 2000 <= delays[0] <= 3000
        assert 4000 <= delays[1] <= 5000
        assert 8000 <= delays[2] <= 9000
        assert 30000 <= delays[5] <= 31000
        assert recovery.get_attempts(context) == 6

    @pytest.mark.asyncio
    async def test_user_message(self, logger) -> None:
        """Test the degradation message names the resource."""
        recovery = ProgressiveErrorRecovery(logger=logger)
        result = await recovery.handle_failure(
            Exception("something odd"), RecoveryContext("appointments")
        )
        assert result.user_message == "Unable to load appointments data. Please try again later."
        assert result.data is None
        assert result.to_dict()["level"] == "GRACEFUL_DEGRADATION"

    @pytest.mark.asyncio
    async def test_clear_attempts(self, logger, clock) -> None:
        """Test attempts are forgotten after a success."""
        recovery = ProgressiveErrorRecovery(logger=logger, clock=clock)
        context = RecoveryContext("patients", cache_key="patients:list")
        await recovery.handle_failure(NETWORK_ERROR, context)
        await recovery.handle_failure(NETWORK_ERROR, context)
        assert recovery.get_attempts(context) == 2

        recovery.clear_recovery_attempts("patients", "patients:list")
        assert recovery.get_attempts(context) == 0

    @pytest.mark.asyncio
    async def test_recovery_stats(self, cache, logger, clock) -> None:
        """Test stats cover recent recoveries by level."""
        await cache.set("patients:list", [])
        recovery = ProgressiveErrorRecovery(cache=cache, logger=logger, clock=clock)

        await recovery.handle_failure(
            NETWORK_ERROR, RecoveryContext("patients", cache_key="patients:list")
        )
        await recovery.handle_failure(NETWORK_ERROR, RecoveryContext("appointments"))

        stats = recovery.get_recovery_stats()
        assert stats.recent_recoveries == 2
        assert stats.active_recoveries == 1
        assert stats.by_level == {"CACHE_STALE": 1, "GRACEFUL_DEGRADATION": 1}

        clock.advance(301)
        assert recovery.get_recovery_stats().recent_recoveries == 0
