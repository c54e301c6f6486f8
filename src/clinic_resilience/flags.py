"""
Feature flag contract.

Alerting rolls features back through :class:`FeatureFlagStore`; the real
store lives in the application.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class FeatureFlagStore(ABC):
    """Feature flag store consumed by alert rollback actions."""

    @abstractmethod
    def disable(self, feature: str) -> bool:
        """Disable a feature. Returns False when the feature is unknown."""
        ...

    @abstractmethod
    def enable(self, feature: str) -> bool:
        """Enable a feature. Returns False when the feature is unknown."""
        ...

    @abstractmethod
    def get_all_flags(self) -> dict[str, bool]:
        """Current state of every known feature."""
        ...


class InMemoryFeatureFlags(FeatureFlagStore):
    """Dictionary-backed flag store.

    Example:
        >>> flags = InMemoryFeatureFlags({"query_deduplication": True})
        >>> flags.disable("query_deduplication")
        True
        >>> flags.is_enabled("query_deduplication")
        False
    """

    def __init__(self, flags: dict[str, bool] | None = None) -> None:
        self._flags: dict[str, bool] = dict(flags or {})

    def disable(self, feature: str) -> bool:
        if feature not in self._flags:
            return False
        self._flags[feature] = False
        return True

    def enable(self, feature: str) -> bool:
        if feature not in self._flags:
            return False
        self._flags[feature] = True
        return True

    def register(self, feature: str, enabled: bool = True) -> None:
        """Add a feature to the store."""
        self._flags[feature] = enabled

    def is_enabled(self, feature: str) -> bool:
        return self._flags.get(feature, False)

    def get_all_flags(self) -> dict[str, bool]:
        return dict(self._flags)
